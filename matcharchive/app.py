from flask import (
    Flask,
    render_template,
    redirect,
    url_for,
    request,
    flash,
    abort,
    send_from_directory,
    jsonify,
)
from flask_sqlalchemy import SQLAlchemy
from flask_login import (
    LoginManager,
    login_user,
    logout_user,
    login_required,
    current_user,
)
from datetime import datetime, date
import os
import io
import json
import click
import psutil
import secrets

from sqlalchemy import inspect, text
from werkzeug.utils import secure_filename
from PIL import Image, ImageOps


db = SQLAlchemy()
login_manager = LoginManager()

# endpoints reachable before a user has finished onboarding
ONBOARDING_EXEMPT = {'onboarding', 'logout', 'login', 'signup', 'index', 'static', 'media_file', 'keep_alive'}

# column upgrades for databases created by older releases: table -> [(column, DDL)]
SCHEMA_UPGRADES = {
    'user': [
        ('user_code', 'VARCHAR(6)'),
        ('primary_team_id', 'INTEGER'),
        ('email_notifications', 'BOOLEAN DEFAULT 0'),
        ('avatar_path', 'VARCHAR(500)'),
    ],
    'team': [
        ('hashtags', "TEXT DEFAULT '[]'"),
        ('recruiting_positions', "TEXT DEFAULT '{}'"),
        ('level', 'INTEGER DEFAULT 1'),
    ],
    'team_member': [
        ('merged_to', 'INTEGER'),
        ('merged_at', 'DATETIME'),
    ],
    'match': [
        ('is_home', 'BOOLEAN DEFAULT 1'),
        ('source_type', "VARCHAR(10) DEFAULT 'original'"),
        ('linked_match_id', 'INTEGER'),
        ('guest_team_id', 'INTEGER'),
        ('is_guest_opponent', 'BOOLEAN DEFAULT 0'),
    ],
    'venue': [
        ('deleted_at', 'DATETIME'),
    ],
}


def upgrade_schema():
    """Add columns newer models expect to tables created by older releases."""
    from .models import User, generate_code  # lazy import to avoid circular reference

    inspector = inspect(db.engine)
    tables = inspector.get_table_names()
    for table, columns in SCHEMA_UPGRADES.items():
        if table not in tables:
            continue
        existing = [c['name'] for c in inspector.get_columns(table)]
        for column, ddl in columns:
            if column not in existing:
                db.session.execute(text(f'ALTER TABLE "{table}" ADD COLUMN {column} {ddl}'))
                db.session.commit()
    if 'match' in tables:
        db.session.execute(text('UPDATE "match" SET source_type=\'original\' WHERE source_type IS NULL'))
        db.session.execute(text('UPDATE "match" SET is_home=1 WHERE is_home IS NULL'))
        db.session.commit()
    if 'user' in tables:
        rows = db.session.execute(text('SELECT id FROM "user" WHERE user_code IS NULL')).fetchall()
        for row in rows:
            code = generate_code()
            while db.session.query(User.id).filter_by(user_code=code).first():
                code = generate_code()
            db.session.execute(text('UPDATE "user" SET user_code=:code WHERE id=:id'), {'code': code, 'id': row[0]})
        db.session.commit()
    # tables added after the first release
    from .models import TeamMergeRequest, TeamMergeMatchMapping, TeamMergeDispute, UserBadge, Venue, GuestTeam
    for model in (GuestTeam, Venue, TeamMergeRequest, TeamMergeMatchMapping, TeamMergeDispute, UserBadge):
        model.__table__.create(bind=db.engine, checkfirst=True)


def create_app():
    app = Flask(__name__)
    db_file = os.environ.get('MATCH_ARCHIVE_DB_PATH', 'match_archive.db')
    log_db_file = os.environ.get('MATCH_ARCHIVE_LOG_DB_PATH', db_file.replace('.db', '_logs.db'))
    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{os.path.abspath(db_file)}'
    app.config['SQLALCHEMY_BINDS'] = {
        'logs': f'sqlite:///{os.path.abspath(log_db_file)}',
    }
    os.makedirs(app.instance_path, exist_ok=True)
    db_base = os.path.splitext(os.path.basename(db_file))[0]
    media_dir = os.environ.get('MATCH_ARCHIVE_MEDIA_DIR') or os.path.join(app.instance_path, f'{db_base}_media')
    os.makedirs(media_dir, exist_ok=True)
    app.config['MEDIA_STORAGE_DIR'] = media_dir
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('FLASK_SECRET', 'dev-secret-change-me')
    app.config['GEOCODER_URL'] = os.environ.get('GEOCODER_URL', 'https://nominatim.openstreetmap.org/search')
    app.config['KAKAO_REST_API_KEY'] = os.environ.get('KAKAO_REST_API_KEY')
    app.config['WEATHER_FORECAST_URL'] = os.environ.get('WEATHER_FORECAST_URL', 'https://api.open-meteo.com/v1/forecast')
    app.config['WEATHER_ARCHIVE_URL'] = os.environ.get('WEATHER_ARCHIVE_URL', 'https://archive-api.open-meteo.com/v1/archive')
    app.config['WEATHER_TIMEZONE'] = os.environ.get('WEATHER_TIMEZONE', 'Asia/Seoul')
    app.config['CRON_SECRET'] = os.environ.get('CRON_SECRET')

    db.init_app(app)
    login_manager.init_app(app)
    login_manager.login_view = 'login'

    with app.app_context():
        upgrade_schema()

    from .models import (
        User,
        Team,
        TeamMember,
        TeamInvite,
        GuestTeam,
        Venue,
        Match,
        MatchRecord,
        Goal,
        OpponentPlayer,
        RecordMergeRequest,
        TeamMergeRequest,
        TeamMergeDispute,
        Notification,
        SiteLog,
        TeamLog,
        POSITIONS,
        PREFERRED_FEET,
        WEEKDAYS,
        GOAL_TYPES,
        ATTENDANCE_STATUSES,
        MANAGER_ROLES,
        generate_code,
    )
    from . import teams as team_service
    from . import matches as match_service
    from . import merging
    from . import team_merge
    from . import notifications as notes
    from . import stats
    from . import geo
    from .teams import TeamError
    from .matches import MatchError
    from .merging import MergeError

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    # ---------- CLI ----------
    def new_user(email, password, **fields):
        code = generate_code()
        while db.session.query(User).filter_by(user_code=code).first():
            code = generate_code()
        u = User(email=email, user_code=code, **fields)
        u.set_password(password)
        db.session.add(u)
        return u

    @app.cli.command('db-init')
    def db_init():
        db.create_all()
        # Ensure a default admin account exists for first-time login
        if not db.session.query(User).filter_by(email="admin@example.com").first():
            new_user("admin@example.com", "admin123", name="Admin", nickname="admin", position='MF', is_admin=True)
            db.session.commit()
            print("Created default admin: admin@example.com / admin123")
        print("Database initialized.")

    @app.cli.command('create-admin')
    @click.option('--email', help='Email for the admin user')
    @click.option('--password', help='Password for the admin user')
    def create_admin(email, password):
        if not email:
            email = click.prompt("Admin email", default="admin@example.com")
        if not password:
            password = click.prompt("Password", hide_input=True, confirmation_prompt=True)
        if db.session.query(User).filter_by(email=email).first():
            print("User exists")
            return
        new_user(email, password, name="Admin", nickname="admin", position='MF', is_admin=True)
        db.session.commit()
        print("Admin created.")

    @app.cli.command('award-badges')
    def award_badges_command():
        total = 0
        for u in db.session.query(User).all():
            total += len(stats.award_badges(db.session, u))
        print(f"Awarded {total} badges.")

    # ---------- Helpers ----------
    def log_site(action, result, error=None):
        log = SiteLog(action=action, result=result, error=error,
                      user_id=current_user.id if current_user.is_authenticated else None)
        db.session.add(log)
        db.session.commit()

    def log_team(tid, action, result, error=None):
        log = TeamLog(team_id=tid, action=action, result=result, error=error,
                      user_id=current_user.id if current_user.is_authenticated else None)
        db.session.add(log)
        db.session.commit()

    def require_admin():
        if not current_user.is_authenticated or not current_user.is_admin:
            log_site('unauthorized_access', 'failure', 'admin')
            abort(403)

    def get_team_or_404(tid):
        team = db.session.get(Team, tid)
        if not team:
            abort(404)
        return team

    def get_match_or_404(mid):
        match = db.session.get(Match, mid)
        if not match:
            abort(404)
        return match

    def require_team_role(tid, roles=MANAGER_ROLES):
        membership = team_service.get_active_membership(db.session, tid, current_user.id)
        if not membership or (roles and membership.role not in roles):
            log_team(tid, 'unauthorized_access', 'failure', request.endpoint)
            abort(403)
        return membership

    def refuse(exc, tid=None, action=None):
        db.session.rollback()
        flash(str(exc), 'error')
        if tid and action:
            log_team(tid, action, 'failure', str(exc))
        elif action:
            log_site(action, 'failure', str(exc))

    def parse_datetime_local(value):
        if not value:
            return None
        value = value.strip()
        if not value:
            return None
        candidates = [value]
        if 'T' not in value and ' ' in value:
            candidates.append(value.replace(' ', 'T'))
        for candidate in candidates:
            try:
                return datetime.fromisoformat(candidate)
            except ValueError:
                continue
        for candidate in candidates:
            for fmt in ('%Y-%m-%d %H:%M', '%Y-%m-%dT%H:%M'):
                try:
                    return datetime.strptime(candidate, fmt)
                except ValueError:
                    continue
        return None

    def parse_date(value):
        value = (value or '').strip()
        if not value:
            return None
        try:
            return date.fromisoformat(value)
        except ValueError:
            return None

    def parse_int(value, default=None):
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def sanitize_image_upload(file_storage, prefix='img'):
        if not file_storage or not file_storage.filename:
            return None
        storage_dir = app.config.get('MEDIA_STORAGE_DIR')
        if not storage_dir:
            return None
        try:
            file_storage.stream.seek(0)
            image = Image.open(file_storage.stream)
            image = ImageOps.exif_transpose(image)
        except Exception:
            return None
        max_dim = 1600
        image.thumbnail((max_dim, max_dim))
        buffer = io.BytesIO()
        try:
            image.save(buffer, format='PNG')
        except Exception:
            return None
        buffer.seek(0)
        safe_prefix = ''.join(ch for ch in prefix if ch.isalnum()) or 'img'
        filename = f"{safe_prefix}_{datetime.utcnow().strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(4)}.png"
        os.makedirs(storage_dir, exist_ok=True)
        path = os.path.join(storage_dir, filename)
        with open(path, 'wb') as handle:
            handle.write(buffer.read())
        return filename

    def remove_media(filename):
        if not filename:
            return
        path = os.path.join(app.config['MEDIA_STORAGE_DIR'], secure_filename(os.path.basename(filename)))
        if os.path.exists(path):
            os.remove(path)

    def geocode(address):
        return geo.geocode_address(
            address,
            kakao_api_key=app.config.get('KAKAO_REST_API_KEY'),
            nominatim_url=app.config['GEOCODER_URL'],
        )

    def match_weather(match):
        venue = match.venue
        if not venue or venue.latitude is None or venue.longitude is None:
            return None
        return geo.get_weather(
            venue.latitude,
            venue.longitude,
            match.match_date,
            forecast_url=app.config['WEATHER_FORECAST_URL'],
            archive_url=app.config['WEATHER_ARCHIVE_URL'],
            timezone=app.config['WEATHER_TIMEZONE'],
        )

    def team_fields_from_form(form):
        return {
            'region': form.get('region'),
            'description': form.get('description'),
            'activity_time': form.get('activity_time'),
            'activity_days': form.getlist('activity_days'),
            'hashtags': form.get('hashtags'),
            'is_recruiting': bool(form.get('is_recruiting')),
            'recruiting_positions': {pos: form.get(f'recruit_{pos}') for pos in POSITIONS},
            'level': form.get('level'),
        }

    def match_fields_from_form(form):
        opponent_kind = form.get('opponent_kind', 'name')
        return {
            'match_date': parse_datetime_local(form.get('match_date')),
            'opponent_name': form.get('opponent_name'),
            'opponent_team_id': parse_int(form.get('opponent_team_id')) if opponent_kind == 'team' else None,
            'guest_team_id': parse_int(form.get('guest_team_id')) if opponent_kind == 'guest' else None,
            'venue_id': parse_int(form.get('venue_id')),
            'location': form.get('location'),
            'quarters': form.get('quarters') or 4,
            'is_home': form.get('is_home', '1') == '1',
        }

    def notification_link(note):
        if note.type in ('team_invite', 'merge_request'):
            return url_for('dashboard')
        if note.related_team_merge_id:
            return url_for('team_merge_request', rid=note.related_team_merge_id)
        if note.related_match_id:
            return url_for('view_match', mid=note.related_match_id)
        if note.type == 'join_request' and note.related_team_id:
            return url_for('manage_members', tid=note.related_team_id)
        if note.related_team_id:
            return url_for('view_team', tid=note.related_team_id)
        return url_for('notifications')

    app.jinja_env.globals['notification_link'] = notification_link
    app.jinja_env.globals['POSITIONS'] = POSITIONS
    app.jinja_env.globals['WEEKDAYS'] = WEEKDAYS

    @app.before_request
    def require_onboarding():
        if not current_user.is_authenticated or current_user.is_onboarded:
            return None
        if request.endpoint in ONBOARDING_EXEMPT or request.path.startswith('/api/'):
            return None
        return redirect(url_for('onboarding'))

    @app.context_processor
    def inject_navigation_counts():
        unread = 0
        pending_invites = 0
        if current_user.is_authenticated:
            unread = notes.get_unread_count(db.session, current_user.id)
            pending_invites = len(team_service.get_my_invites(db.session, current_user.id))
        return {
            'nav_unread_notifications': unread,
            'nav_pending_invites': pending_invites,
        }

    # ---------- Accounts ----------
    @app.route('/')
    def index():
        if current_user.is_authenticated:
            return redirect(url_for('dashboard'))
        recruiting = (
            db.session.query(Team)
            .filter(Team.is_recruiting.is_(True))
            .order_by(Team.created_at.desc())
            .limit(6)
            .all()
        )
        return render_template('index.html', recruiting=recruiting)

    @app.route('/signup', methods=['GET', 'POST'])
    def signup():
        if request.method == 'POST':
            email = (request.form.get('email') or '').strip().lower()
            name = (request.form.get('name') or '').strip()
            password = request.form.get('password') or ''
            confirm = request.form.get('password_confirm', '')
            if not email or not password:
                flash("Email and password are required", "error")
                return redirect(url_for('signup'))
            if len(password) < 6:
                flash("Password must be at least 6 characters", "error")
                log_site('signup', 'failure', 'password too short')
                return redirect(url_for('signup'))
            if password != confirm:
                flash("Passwords do not match", "error")
                log_site('signup', 'failure', 'password mismatch')
                return redirect(url_for('signup'))
            if db.session.query(User).filter_by(email=email).first():
                flash("Email already registered", "error")
                log_site('signup', 'failure', 'email exists')
                return redirect(url_for('signup'))
            u = new_user(email, password, name=name or None)
            db.session.commit()
            login_user(u)
            log_site('signup', 'success')
            return redirect(url_for('onboarding'))
        return render_template('auth/signup.html')

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        if request.method == 'POST':
            email = (request.form.get('email') or '').strip().lower()
            password = request.form.get('password') or ''
            u = db.session.query(User).filter_by(email=email).first()
            if u and u.check_password(password):
                login_user(u)
                log_site('login', 'success')
                return redirect(url_for('dashboard'))
            flash("Invalid credentials", "error")
            log_site('login', 'failure', email)
        return render_template('auth/login.html')

    @app.route('/logout')
    @login_required
    def logout():
        log_site('logout', 'success')
        logout_user()
        return redirect(url_for('login'))

    @app.route('/onboarding', methods=['GET', 'POST'])
    @login_required
    def onboarding():
        if request.method == 'POST':
            nickname = (request.form.get('nickname') or '').strip()
            position = request.form.get('position')
            if not nickname or position not in POSITIONS:
                flash('Nickname and position are required.', 'error')
                return redirect(url_for('onboarding'))
            current_user.nickname = nickname
            current_user.position = position
            foot = request.form.get('preferred_foot')
            current_user.preferred_foot = foot if foot in PREFERRED_FEET else None
            current_user.birth_date = parse_date(request.form.get('birth_date'))
            db.session.commit()
            log_site('onboarding', 'success')
            return redirect(url_for('dashboard'))
        return render_template('auth/onboarding.html', feet=PREFERRED_FEET)

    @app.route('/profile', methods=['GET', 'POST'])
    @login_required
    def profile():
        if request.method == 'POST':
            nickname = (request.form.get('nickname') or '').strip()
            position = request.form.get('position')
            if not nickname or position not in POSITIONS:
                flash('Nickname and position are required.', 'error')
                return redirect(url_for('profile'))
            current_user.nickname = nickname
            current_user.position = position
            current_user.name = (request.form.get('name') or '').strip() or None
            foot = request.form.get('preferred_foot')
            current_user.preferred_foot = foot if foot in PREFERRED_FEET else None
            current_user.birth_date = parse_date(request.form.get('birth_date'))
            current_user.nationality = (request.form.get('nationality') or '').strip() or None
            current_user.phone = (request.form.get('phone') or '').strip() or None
            current_user.bio = (request.form.get('bio') or '').strip() or None
            db.session.commit()
            flash('Profile updated.', 'success')
            log_site('profile_update', 'success')
            return redirect(url_for('profile'))
        return render_template(
            'profile.html',
            feet=PREFERRED_FEET,
            badges=stats.badges_with_status(db.session, current_user.id),
            career=stats.user_career(db.session, current_user.id),
            memberships=[m for m in current_user.memberships if m.status == 'active'],
        )

    @app.route('/profile/avatar', methods=['POST'])
    @login_required
    def upload_avatar():
        filename = sanitize_image_upload(request.files.get('avatar'), prefix='avatar')
        if not filename:
            flash('Upload a valid image file.', 'error')
            log_site('avatar_upload', 'failure', 'invalid image')
            return redirect(url_for('profile'))
        old = current_user.avatar_path
        current_user.avatar_path = filename
        db.session.commit()
        remove_media(old)
        flash('Profile picture updated.', 'success')
        log_site('avatar_upload', 'success')
        return redirect(url_for('profile'))

    @app.route('/profile/avatar/delete', methods=['POST'])
    @login_required
    def delete_avatar():
        old = current_user.avatar_path
        if not old:
            flash('No profile picture to delete.', 'error')
            return redirect(url_for('profile'))
        current_user.avatar_path = None
        db.session.commit()
        remove_media(old)
        flash('Profile picture removed.', 'success')
        log_site('avatar_delete', 'success')
        return redirect(url_for('profile'))

    @app.route('/settings', methods=['GET', 'POST'])
    @login_required
    def settings():
        if request.method == 'POST':
            current_user.is_public = bool(request.form.get('is_public'))
            current_user.email_notifications = bool(request.form.get('email_notifications'))
            new_password = request.form.get('new_password') or ''
            if new_password:
                if not current_user.check_password(request.form.get('current_password') or ''):
                    db.session.rollback()
                    flash('Current password is incorrect.', 'error')
                    log_site('password_change', 'failure', 'wrong password')
                    return redirect(url_for('settings'))
                if len(new_password) < 6:
                    db.session.rollback()
                    flash('Password must be at least 6 characters', 'error')
                    return redirect(url_for('settings'))
                current_user.set_password(new_password)
                log_site('password_change', 'success')
            db.session.commit()
            flash('Settings saved.', 'success')
            log_site('settings_update', 'success')
            return redirect(url_for('settings'))
        return render_template('settings.html')

    @app.route('/media/<path:filename>')
    @login_required
    def media_file(filename):
        media_dir = app.config.get('MEDIA_STORAGE_DIR')
        if not media_dir:
            abort(404)
        safe_name = secure_filename(os.path.basename(filename))
        path = os.path.join(media_dir, safe_name)
        if not os.path.exists(path):
            abort(404)
        return send_from_directory(media_dir, safe_name)

    @app.route('/dashboard')
    @login_required
    def dashboard():
        my_teams = team_service.user_teams(db.session, current_user.id)
        team = None
        requested = parse_int(request.args.get('team_id'))
        for candidate in my_teams:
            if candidate.id == requested:
                team = candidate
        if team is None:
            team = next((t for t in my_teams if t.id == current_user.primary_team_id), None)
        if team is None and my_teams:
            team = my_teams[0]
        context = {
            'my_teams': my_teams,
            'team': team,
            'invites': team_service.get_my_invites(db.session, current_user.id),
            'merge_requests': merging.get_my_merge_requests(db.session, current_user.id),
            'disputes': team_merge.get_my_pending_disputes(db.session, current_user.id),
            'notifications': notes.get_notifications(db.session, current_user.id, unread_only=True, limit=5),
            'next_match': None,
            'team_stats': None,
            'form': [],
            'membership': None,
        }
        if team:
            context['next_match'] = stats.next_match(db.session, team.id)
            context['team_stats'] = stats.team_statistics(db.session, team.id)
            context['form'] = stats.recent_form(db.session, team.id)
            context['membership'] = team_service.get_active_membership(db.session, team.id, current_user.id)
        return render_template('dashboard.html', **context)

    @app.route('/dashboard/primary-team', methods=['POST'])
    @login_required
    def set_primary_team():
        tid = parse_int(request.form.get('team_id'))
        if not tid or not team_service.get_active_membership(db.session, tid, current_user.id):
            abort(403)
        current_user.primary_team_id = tid
        db.session.commit()
        log_site('primary_team', 'success', f'team_id={tid}')
        return redirect(url_for('dashboard', team_id=tid))

    # ---------- Teams ----------
    @app.route('/teams')
    @login_required
    def teams():
        region = (request.args.get('region') or '').strip()
        query = (request.args.get('q') or '').strip()
        results = team_service.list_teams(db.session, region=region or None, query=query or None)
        return render_template('teams/index.html', teams=results, region=region, query=query)

    @app.route('/teams/new', methods=['GET', 'POST'])
    @login_required
    def new_team():
        if request.method == 'POST':
            fields = team_fields_from_form(request.form)
            emblem = sanitize_image_upload(request.files.get('emblem'), prefix='emblem')
            if emblem:
                fields['emblem_path'] = emblem
            try:
                team = team_service.create_team(db.session, current_user, request.form.get('name'), **fields)
            except TeamError as exc:
                refuse(exc, action='team_create')
                return redirect(url_for('new_team'))
            log_site('team_create', 'success', f'id={team.id}')
            log_team(team.id, 'team_create', 'success')
            flash('Team created.', 'success')
            return redirect(url_for('view_team', tid=team.id))
        return render_template('teams/form.html', team=None)

    @app.route('/teams/search')
    @login_required
    def search_team_code():
        team = team_service.search_team_by_code(db.session, request.args.get('code'))
        if not team:
            flash('No team found with that code.', 'error')
            return redirect(url_for('teams'))
        return redirect(url_for('view_team', tid=team.id))

    @app.route('/teams/<int:tid>')
    @login_required
    def view_team(tid):
        team = get_team_or_404(tid)
        membership = team_service.get_membership(db.session, tid, current_user.id)
        upcoming = (
            db.session.query(Match)
            .filter(Match.team_id == tid, Match.status == 'SCHEDULED')
            .order_by(Match.match_date.asc())
            .limit(5)
            .all()
        )
        return render_template(
            'teams/view.html',
            team=team,
            membership=membership,
            members=team_service.team_members(db.session, tid),
            upcoming=upcoming,
            form=stats.recent_form(db.session, tid),
            team_stats=stats.team_statistics(db.session, tid),
            is_manager=bool(membership and membership.is_manager),
        )

    @app.route('/teams/<int:tid>/settings', methods=['GET', 'POST'])
    @login_required
    def team_settings(tid):
        team = get_team_or_404(tid)
        require_team_role(tid)
        if request.method == 'POST':
            fields = team_fields_from_form(request.form)
            emblem = sanitize_image_upload(request.files.get('emblem'), prefix='emblem')
            old_emblem = team.emblem_path
            if emblem:
                fields['emblem_path'] = emblem
            try:
                team_service.update_team(db.session, team, current_user.id, name=request.form.get('name', ''), **fields)
            except TeamError as exc:
                refuse(exc, tid, 'team_update')
                return redirect(url_for('team_settings', tid=tid))
            if emblem and old_emblem:
                remove_media(old_emblem)
            log_team(tid, 'team_update', 'success')
            flash('Team updated.', 'success')
            return redirect(url_for('view_team', tid=tid))
        return render_template('teams/form.html', team=team)

    @app.route('/teams/<int:tid>/join', methods=['POST'])
    @login_required
    def join_team(tid):
        team = get_team_or_404(tid)
        try:
            team_service.request_join_team(db.session, team, current_user)
        except TeamError as exc:
            refuse(exc, tid, 'join_request')
            return redirect(url_for('view_team', tid=tid))
        log_team(tid, 'join_request', 'submitted')
        flash('Join request submitted for approval.', 'success')
        return redirect(url_for('view_team', tid=tid))

    @app.route('/teams/<int:tid>/leave', methods=['POST'])
    @login_required
    def leave_team(tid):
        team = get_team_or_404(tid)
        try:
            team_service.leave_team(db.session, team, current_user)
        except TeamError as exc:
            refuse(exc, tid, 'leave_team')
            return redirect(url_for('view_team', tid=tid))
        log_team(tid, 'leave_team', 'success')
        flash('You left the team.', 'info')
        return redirect(url_for('dashboard'))

    @app.route('/teams/<int:tid>/stats')
    @login_required
    def team_stats(tid):
        team = get_team_or_404(tid)
        return render_template(
            'teams/stats.html',
            team=team,
            team_stats=stats.team_statistics(db.session, tid),
            form=stats.recent_form(db.session, tid, limit=10),
            leaders=stats.team_leaderboards(db.session, tid),
        )

    @app.route('/teams/<int:tid>/logs')
    @login_required
    def team_logs(tid):
        team = get_team_or_404(tid)
        require_team_role(tid)
        logs = db.session.query(TeamLog).filter_by(team_id=tid).order_by(TeamLog.timestamp.desc()).all()
        for l in logs:
            l.user = db.session.get(User, l.user_id) if l.user_id else None
        return render_template('teams/logs.html', team=team, logs=logs)

    # ---------- Members ----------
    @app.route('/teams/<int:tid>/members')
    @login_required
    def manage_members(tid):
        team = get_team_or_404(tid)
        membership = require_team_role(tid)
        pending = (
            db.session.query(TeamMember)
            .filter_by(team_id=tid, status='pending')
            .order_by(TeamMember.joined_at.asc())
            .all()
        )
        return render_template(
            'teams/members.html',
            team=team,
            membership=membership,
            members=team_service.team_members(db.session, tid),
            pending=pending,
            invites=team_service.get_team_invites(db.session, tid),
        )

    @app.route('/teams/<int:tid>/members/<int:member_id>/approve', methods=['POST'])
    @login_required
    def approve_member(tid, member_id):
        team = get_team_or_404(tid)
        try:
            team_service.approve_member(db.session, team, member_id, current_user.id)
        except TeamError as exc:
            refuse(exc, tid, 'join_request_approve')
            return redirect(url_for('manage_members', tid=tid))
        log_team(tid, 'join_request_approve', 'success', f'member_id={member_id}')
        flash('Member approved.', 'success')
        return redirect(url_for('manage_members', tid=tid))

    @app.route('/teams/<int:tid>/members/<int:member_id>/reject', methods=['POST'])
    @login_required
    def reject_member(tid, member_id):
        team = get_team_or_404(tid)
        try:
            team_service.reject_member(db.session, team, member_id, current_user.id)
        except TeamError as exc:
            refuse(exc, tid, 'join_request_reject')
            return redirect(url_for('manage_members', tid=tid))
        log_team(tid, 'join_request_reject', 'success', f'member_id={member_id}')
        flash('Join request rejected.', 'info')
        return redirect(url_for('manage_members', tid=tid))

    @app.route('/teams/<int:tid>/members/<int:member_id>/role', methods=['POST'])
    @login_required
    def update_member_role(tid, member_id):
        team = get_team_or_404(tid)
        role = request.form.get('role')
        try:
            team_service.update_member_role(db.session, team, member_id, role, current_user.id)
        except TeamError as exc:
            refuse(exc, tid, 'member_role')
            return redirect(url_for('manage_members', tid=tid))
        log_team(tid, 'member_role', 'success', f'member_id={member_id} role={role}')
        flash('Role updated.', 'success')
        return redirect(url_for('manage_members', tid=tid))

    @app.route('/teams/<int:tid>/members/<int:member_id>/update', methods=['POST'])
    @login_required
    def update_member(tid, member_id):
        team = get_team_or_404(tid)
        try:
            team_service.update_member(
                db.session, team, member_id, current_user.id,
                back_number=request.form.get('back_number', ''),
                positions=request.form.getlist('positions'),
            )
        except (TeamError, ValueError) as exc:
            refuse(exc, tid, 'member_update')
            return redirect(url_for('manage_members', tid=tid))
        log_team(tid, 'member_update', 'success', f'member_id={member_id}')
        flash('Member updated.', 'success')
        return redirect(url_for('manage_members', tid=tid))

    @app.route('/teams/<int:tid>/members/<int:member_id>/remove', methods=['POST'])
    @login_required
    def remove_member(tid, member_id):
        team = get_team_or_404(tid)
        try:
            team_service.remove_member(db.session, team, member_id, current_user.id)
        except TeamError as exc:
            refuse(exc, tid, 'member_remove')
            return redirect(url_for('manage_members', tid=tid))
        log_team(tid, 'member_remove', 'success', f'member_id={member_id}')
        flash('Member removed.', 'info')
        return redirect(url_for('manage_members', tid=tid))

    @app.route('/teams/<int:tid>/guests', methods=['POST'])
    @login_required
    def add_guest_member(tid):
        team = get_team_or_404(tid)
        try:
            guest = team_service.add_guest_member(
                db.session, team, current_user.id,
                request.form.get('guest_name'),
                back_number=request.form.get('back_number'),
            )
        except (TeamError, ValueError) as exc:
            refuse(exc, tid, 'guest_add')
            return redirect(url_for('manage_members', tid=tid))
        log_team(tid, 'guest_add', 'success', f'member_id={guest.id}')
        flash('Guest added.', 'success')
        return redirect(url_for('manage_members', tid=tid))

    # ---------- Invites ----------
    @app.route('/teams/<int:tid>/invites', methods=['POST'])
    @login_required
    def team_invites(tid):
        team = get_team_or_404(tid)
        try:
            invite = team_service.create_team_invite(db.session, team, current_user, request.form.get('user_code'))
        except TeamError as exc:
            refuse(exc, tid, 'invite_create')
            return redirect(url_for('manage_members', tid=tid))
        log_team(tid, 'invite_create', 'success', f'invitee_id={invite.invitee_id}')
        flash('Invite sent.', 'success')
        return redirect(url_for('manage_members', tid=tid))

    @app.route('/invites/<int:iid>/cancel', methods=['POST'])
    @login_required
    def cancel_team_invite(iid):
        invite = db.session.get(TeamInvite, iid)
        if not invite:
            abort(404)
        tid = invite.team_id
        try:
            team_service.cancel_team_invite(db.session, iid, current_user.id)
        except TeamError as exc:
            refuse(exc, tid, 'invite_cancel')
            return redirect(url_for('manage_members', tid=tid))
        log_team(tid, 'invite_cancel', 'success', f'id={iid}')
        flash('Invite cancelled.', 'info')
        return redirect(url_for('manage_members', tid=tid))

    @app.route('/invites/<int:iid>/accept', methods=['POST'])
    @login_required
    def accept_team_invite(iid):
        try:
            member = team_service.accept_team_invite(db.session, iid, current_user)
        except TeamError as exc:
            refuse(exc, action='invite_accept')
            return redirect(url_for('dashboard'))
        log_team(member.team_id, 'invite_accept', 'success', f'id={iid}')
        flash('Welcome to the team!', 'success')
        return redirect(url_for('view_team', tid=member.team_id))

    @app.route('/invites/<int:iid>/reject', methods=['POST'])
    @login_required
    def reject_team_invite(iid):
        try:
            invite = team_service.reject_team_invite(db.session, iid, current_user)
        except TeamError as exc:
            refuse(exc, action='invite_reject')
            return redirect(url_for('dashboard'))
        log_team(invite.team_id, 'invite_reject', 'success', f'id={iid}')
        flash('Invite declined.', 'info')
        return redirect(url_for('dashboard'))

    # ---------- Guest teams ----------
    @app.route('/teams/<int:tid>/guest-teams', methods=['GET', 'POST'])
    @login_required
    def guest_teams(tid):
        team = get_team_or_404(tid)
        require_team_role(tid)
        if request.method == 'POST':
            emblem = sanitize_image_upload(request.files.get('emblem'), prefix='guest')
            try:
                guest_team = team_service.create_guest_team(
                    db.session, team, current_user.id, request.form.get('name'),
                    region=request.form.get('region'), notes=request.form.get('notes'), emblem_path=emblem,
                )
            except TeamError as exc:
                refuse(exc, tid, 'guest_team_create')
                return redirect(url_for('guest_teams', tid=tid))
            log_team(tid, 'guest_team_create', 'success', f'id={guest_team.id}')
            flash('Guest team added.', 'success')
            return redirect(url_for('guest_teams', tid=tid))
        return render_template('teams/guest_teams.html', team=team,
                               guest_teams=team_service.list_guest_teams(db.session, tid))

    @app.route('/guest-teams/<int:gid>/update', methods=['POST'])
    @login_required
    def update_guest_team(gid):
        guest_team = db.session.get(GuestTeam, gid)
        if not guest_team:
            abort(404)
        tid = guest_team.team_id
        emblem = sanitize_image_upload(request.files.get('emblem'), prefix='guest')
        try:
            team_service.update_guest_team(
                db.session, guest_team, current_user.id, request.form.get('name'),
                region=request.form.get('region'), notes=request.form.get('notes'), emblem_path=emblem,
            )
        except TeamError as exc:
            refuse(exc, tid, 'guest_team_update')
            return redirect(url_for('guest_teams', tid=tid))
        log_team(tid, 'guest_team_update', 'success', f'id={gid}')
        flash('Guest team updated.', 'success')
        return redirect(url_for('guest_teams', tid=tid))

    @app.route('/guest-teams/<int:gid>/delete', methods=['POST'])
    @login_required
    def delete_guest_team(gid):
        guest_team = db.session.get(GuestTeam, gid)
        if not guest_team:
            abort(404)
        tid = guest_team.team_id
        try:
            team_service.delete_guest_team(db.session, guest_team, current_user.id)
        except TeamError as exc:
            refuse(exc, tid, 'guest_team_delete')
            return redirect(url_for('guest_teams', tid=tid))
        log_team(tid, 'guest_team_delete', 'success', f'id={gid}')
        flash('Guest team deleted.', 'info')
        return redirect(url_for('guest_teams', tid=tid))

    # ---------- Venues ----------
    def venue_form():
        return {
            'name': request.form.get('name'),
            'address': request.form.get('address'),
            'address_detail': request.form.get('address_detail'),
            'postal_code': request.form.get('postal_code'),
            'latitude': request.form.get('latitude'),
            'longitude': request.form.get('longitude'),
            'is_primary': bool(request.form.get('is_primary')),
            'geocode': geocode,
        }

    @app.route('/teams/<int:tid>/venues', methods=['GET', 'POST'])
    @login_required
    def venues(tid):
        team = get_team_or_404(tid)
        membership = require_team_role(tid, roles=None)
        if request.method == 'POST':
            try:
                venue = team_service.create_venue(db.session, team, current_user.id, **venue_form())
            except TeamError as exc:
                refuse(exc, tid, 'venue_create')
                return redirect(url_for('venues', tid=tid))
            log_team(tid, 'venue_create', 'success', f'id={venue.id}')
            flash('Venue added.', 'success')
            return redirect(url_for('venues', tid=tid))
        return render_template('teams/venues.html', team=team, membership=membership,
                               venues=team_service.list_venues(db.session, tid))

    @app.route('/venues/<int:vid>/update', methods=['POST'])
    @login_required
    def update_venue(vid):
        venue = db.session.get(Venue, vid)
        if not venue:
            abort(404)
        tid = venue.team_id
        try:
            team_service.update_venue(db.session, venue, current_user.id, **venue_form())
        except TeamError as exc:
            refuse(exc, tid, 'venue_update')
            return redirect(url_for('venues', tid=tid))
        log_team(tid, 'venue_update', 'success', f'id={vid}')
        flash('Venue updated.', 'success')
        return redirect(url_for('venues', tid=tid))

    @app.route('/venues/<int:vid>/primary', methods=['POST'])
    @login_required
    def set_primary_venue(vid):
        venue = db.session.get(Venue, vid)
        if not venue:
            abort(404)
        tid = venue.team_id
        try:
            team_service.set_primary_venue(db.session, venue, current_user.id)
        except TeamError as exc:
            refuse(exc, tid, 'venue_primary')
            return redirect(url_for('venues', tid=tid))
        log_team(tid, 'venue_primary', 'success', f'id={vid}')
        return redirect(url_for('venues', tid=tid))

    @app.route('/venues/<int:vid>/delete', methods=['POST'])
    @login_required
    def delete_venue(vid):
        venue = db.session.get(Venue, vid)
        if not venue:
            abort(404)
        tid = venue.team_id
        try:
            team_service.delete_venue(db.session, venue, current_user.id)
        except TeamError as exc:
            refuse(exc, tid, 'venue_delete')
            return redirect(url_for('venues', tid=tid))
        log_team(tid, 'venue_delete', 'success', f'id={vid}')
        flash('Venue deleted.', 'info')
        return redirect(url_for('venues', tid=tid))

    # ---------- Matches ----------
    @app.route('/matches')
    @login_required
    def matches():
        team_ids = [t.id for t in team_service.user_teams(db.session, current_user.id)]
        rows = []
        if team_ids:
            rows = (
                db.session.query(Match)
                .filter(Match.team_id.in_(team_ids))
                .order_by(Match.match_date.desc())
                .all()
            )
        upcoming = sorted((m for m in rows if m.status == 'SCHEDULED'), key=lambda m: m.match_date)
        past = [m for m in rows if m.status != 'SCHEDULED']
        return render_template('matches/index.html', upcoming=upcoming, past=past)

    @app.route('/teams/<int:tid>/matches/new', methods=['GET', 'POST'])
    @login_required
    def new_match(tid):
        team = get_team_or_404(tid)
        require_team_role(tid)
        if request.method == 'POST':
            try:
                match = match_service.create_match(db.session, team, current_user.id,
                                                   **match_fields_from_form(request.form))
            except (MatchError, ValueError) as exc:
                refuse(exc, tid, 'match_create')
                return redirect(url_for('new_match', tid=tid))
            log_team(tid, 'match_create', 'success', f'id={match.id}')
            flash('Match created.', 'success')
            return redirect(url_for('view_match', mid=match.id))
        return render_template(
            'matches/form.html',
            team=team,
            match=None,
            guest_teams=team_service.list_guest_teams(db.session, tid),
            venues=team_service.list_venues(db.session, tid),
        )

    @app.route('/teams/<int:tid>/matches/manage')
    @login_required
    def manage_matches(tid):
        team = get_team_or_404(tid)
        require_team_role(tid)
        rows = db.session.query(Match).filter_by(team_id=tid).order_by(Match.match_date.desc()).all()
        return render_template('matches/manage.html', team=team, matches=rows)

    @app.route('/matches/<int:mid>')
    @login_required
    def view_match(mid):
        match = get_match_or_404(mid)
        membership = team_service.get_active_membership(db.session, match.team_id, current_user.id)
        is_manager = bool(membership and membership.is_manager)
        attendance = match_service.get_match_attendance(db.session, mid)
        my_attendance = None
        if membership:
            my_attendance = next((a for a in attendance if a.team_member_id == membership.id), None)
        lineup_ids = {r.team_member_id for r in match.records}
        return render_template(
            'matches/view.html',
            match=match,
            membership=membership,
            is_manager=is_manager,
            members=team_service.team_members(db.session, match.team_id),
            lineup_ids=lineup_ids,
            records=sorted(match.records, key=lambda r: (r.team_member.back_number or 999, r.id)),
            attendance=attendance,
            my_attendance=my_attendance,
            attendance_summary=match_service.attendance_summary(db.session, mid),
            previous=match_service.previous_meetings(db.session, match),
            weather=match_weather(match),
            goal_types=GOAL_TYPES,
            attendance_statuses=ATTENDANCE_STATUSES,
            implied_score=match_service.goal_score(match),
        )

    @app.route('/matches/<int:mid>/edit', methods=['GET', 'POST'])
    @login_required
    def edit_match(mid):
        match = get_match_or_404(mid)
        require_team_role(match.team_id)
        if request.method == 'POST':
            try:
                match_service.update_match(db.session, match, **match_fields_from_form(request.form))
            except (MatchError, ValueError) as exc:
                refuse(exc, match.team_id, 'match_update')
                return redirect(url_for('edit_match', mid=mid))
            log_team(match.team_id, 'match_update', 'success', f'id={mid}')
            flash('Match updated.', 'success')
            return redirect(url_for('view_match', mid=mid))
        return render_template(
            'matches/form.html',
            team=match.team,
            match=match,
            guest_teams=team_service.list_guest_teams(db.session, match.team_id),
            venues=team_service.list_venues(db.session, match.team_id),
        )

    @app.route('/matches/<int:mid>/delete', methods=['POST'])
    @login_required
    def delete_match(mid):
        match = get_match_or_404(mid)
        tid = match.team_id
        require_team_role(tid)
        match_service.delete_match(db.session, match)
        log_team(tid, 'match_delete', 'success', f'id={mid}')
        flash('Match deleted.', 'info')
        return redirect(url_for('manage_matches', tid=tid))

    @app.route('/api/matches/<int:mid>', methods=['GET', 'DELETE'])
    @login_required
    def api_match(mid):
        match = db.session.get(Match, mid)
        if not match:
            return jsonify({'error': 'Match not found'}), 404
        if request.method == 'DELETE':
            if not team_service.is_manager(db.session, match.team_id, current_user.id):
                log_team(match.team_id, 'match_delete', 'failure', 'forbidden')
                return jsonify({'error': 'Forbidden'}), 403
            tid = match.team_id
            match_service.delete_match(db.session, match)
            log_team(tid, 'match_delete', 'success', f'id={mid} via api')
            return {'success': True}
        return {
            'id': match.id,
            'team_id': match.team_id,
            'opponent_name': match.opponent_name,
            'match_date': match.match_date.isoformat(),
            'status': match.status,
            'home_score': match.home_score,
            'away_score': match.away_score,
            'is_home': match.is_home,
            'quarters': match.quarters,
            'source_type': match.source_type,
            'linked_match_id': match.linked_match_id,
        }

    def match_action(mid, action, func, success_message=None):
        """Run a manager-only match mutation, flashing any MatchError."""
        match = get_match_or_404(mid)
        require_team_role(match.team_id)
        try:
            detail = func(match)
        except (MatchError, ValueError) as exc:
            refuse(exc, match.team_id, action)
            return redirect(url_for('view_match', mid=mid))
        log_team(match.team_id, action, 'success', detail if isinstance(detail, str) else f'match_id={mid}')
        if success_message:
            flash(success_message, 'success')
        return redirect(url_for('view_match', mid=mid))

    @app.route('/matches/<int:mid>/lineup', methods=['POST'])
    @login_required
    def save_lineup(mid):
        return match_action(
            mid, 'lineup_save',
            lambda m: match_service.save_lineup(db.session, m, request.form.getlist('member_ids')),
            'Lineup saved.',
        )

    @app.route('/matches/<int:mid>/records/<int:rid>', methods=['POST'])
    @login_required
    def update_record(mid, rid):
        record = db.session.get(MatchRecord, rid)
        if not record or record.match_id != mid:
            abort(404)
        return match_action(
            mid, 'record_update',
            lambda m: match_service.update_record(
                db.session, record,
                quarters_played=request.form.get('quarters_played'),
                is_mom=bool(request.form.get('is_mom')),
                clean_sheet=bool(request.form.get('clean_sheet')),
                position_played=request.form.get('position_played', ''),
            ) and f'record_id={rid}',
        )

    @app.route('/matches/<int:mid>/goals', methods=['POST'])
    @login_required
    def add_goal(mid):
        return match_action(
            mid, 'goal_add',
            lambda m: match_service.add_goal(
                db.session, m,
                scoring_team=request.form.get('scoring_team', 'HOME'),
                scorer_id=request.form.get('scorer_id'),
                assist_id=request.form.get('assist_id'),
                quarter=request.form.get('quarter', 1),
                goal_type=request.form.get('goal_type', 'NORMAL'),
            ),
            'Goal recorded.',
        )

    @app.route('/matches/<int:mid>/goals/<int:gid>/delete', methods=['POST'])
    @login_required
    def delete_goal(mid, gid):
        goal = db.session.get(Goal, gid)
        if not goal or goal.match_id != mid:
            abort(404)
        return match_action(
            mid, 'goal_delete',
            lambda m: match_service.delete_goal(db.session, goal) or f'goal_id={gid}',
            'Goal removed.',
        )

    @app.route('/matches/<int:mid>/score', methods=['POST'])
    @login_required
    def update_score(mid):
        return match_action(
            mid, 'score_update',
            lambda m: match_service.update_match_score(
                db.session, m, request.form.get('home_score', 0), request.form.get('away_score', 0),
            ) and f'score={m.home_score}-{m.away_score}',
            'Score saved.',
        )

    @app.route('/matches/<int:mid>/finish', methods=['POST'])
    @login_required
    def finish_match(mid):
        match = get_match_or_404(mid)
        require_team_role(match.team_id)
        try:
            mismatch = match_service.finish_match(db.session, match)
        except MatchError as exc:
            refuse(exc, match.team_id, 'match_finish')
            return redirect(url_for('view_match', mid=mid))
        if mismatch:
            log_team(match.team_id, 'match_finish', 'score_mismatch',
                     f'goals={mismatch[0]}-{mismatch[1]} entered={match.home_score}-{match.away_score}')
        else:
            log_team(match.team_id, 'match_finish', 'success', f'id={mid}')
        for record in match.records:
            if record.team_member.user:
                stats.award_badges(db.session, record.team_member.user)
        flash('Match finished.', 'success')
        return redirect(url_for('view_match', mid=mid))

    @app.route('/matches/<int:mid>/cancel', methods=['POST'])
    @login_required
    def cancel_match(mid):
        return match_action(
            mid, 'match_cancel',
            lambda m: match_service.cancel_match(db.session, m),
            'Match cancelled.',
        )

    @app.route('/matches/<int:mid>/attendance', methods=['POST'])
    @login_required
    def update_attendance(mid):
        match = get_match_or_404(mid)
        status = request.form.get('status')
        try:
            match_service.update_attendance(db.session, match, current_user.id, status)
        except MatchError as exc:
            refuse(exc, match.team_id, 'attendance')
            return redirect(url_for('view_match', mid=mid))
        log_team(match.team_id, 'attendance', 'success', f'match_id={mid} status={status}')
        return redirect(url_for('view_match', mid=mid))

    @app.route('/matches/<int:mid>/attendance/<int:member_id>', methods=['POST'])
    @login_required
    def set_member_attendance(mid, member_id):
        member = db.session.get(TeamMember, member_id)
        if not member:
            abort(404)
        return match_action(
            mid, 'attendance_override',
            lambda m: match_service.set_attendance(db.session, m, member, request.form.get('status'))
            and f'member_id={member_id}',
        )

    @app.route('/matches/<int:mid>/opponents', methods=['POST'])
    @login_required
    def add_opponent_player(mid):
        return match_action(
            mid, 'opponent_add',
            lambda m: match_service.add_opponent_player(
                db.session, m, request.form.get('name'),
                number=request.form.get('number'), position=request.form.get('position'),
            ),
        )

    def get_opponent_or_404(mid, pid):
        player = db.session.get(OpponentPlayer, pid)
        if not player or player.match_id != mid:
            abort(404)
        return player

    @app.route('/matches/<int:mid>/opponents/<int:pid>/update', methods=['POST'])
    @login_required
    def update_opponent_player(mid, pid):
        player = get_opponent_or_404(mid, pid)
        return match_action(
            mid, 'opponent_update',
            lambda m: match_service.update_opponent_player(
                db.session, player, name=request.form.get('name'),
                number=request.form.get('number', ''), position=request.form.get('position', ''),
            ),
        )

    @app.route('/matches/<int:mid>/opponents/<int:pid>/toggle', methods=['POST'])
    @login_required
    def toggle_opponent_player(mid, pid):
        player = get_opponent_or_404(mid, pid)
        return match_action(
            mid, 'opponent_toggle',
            lambda m: match_service.toggle_opponent_player(db.session, player),
        )

    @app.route('/matches/<int:mid>/opponents/<int:pid>/delete', methods=['POST'])
    @login_required
    def delete_opponent_player(mid, pid):
        player = get_opponent_or_404(mid, pid)
        return match_action(
            mid, 'opponent_delete',
            lambda m: match_service.delete_opponent_player(db.session, player),
        )

    @app.route('/players/<int:member_id>')
    @login_required
    def player_profile(member_id):
        member = db.session.get(TeamMember, member_id)
        if not member:
            abort(404)
        user = member.user
        if user and not user.is_public and user.id != current_user.id \
                and not team_service.get_active_membership(db.session, member.team_id, current_user.id):
            abort(403)
        year = parse_int(request.args.get('year'))
        return render_template(
            'players/view.html',
            member=member,
            player_stats=stats.player_statistics(db.session, member_id),
            monthly=stats.monthly_statistics(db.session, member_id, year),
            seasons=stats.career_by_year(db.session, member_id),
            recent=stats.recent_matches(db.session, member_id),
            badges=stats.badges_with_status(db.session, user.id) if user else [],
            year=year,
        )

    # ---------- Record merge ----------
    @app.route('/teams/<int:tid>/merge-records')
    @login_required
    def merge_records(tid):
        team = get_team_or_404(tid)
        require_team_role(tid)
        return render_template(
            'teams/merge_records.html',
            team=team,
            guests=merging.get_team_guest_members(db.session, tid),
            requests=merging.get_team_record_merge_requests(db.session, tid),
            members=team_service.team_members(db.session, tid, include_guests=False),
        )

    @app.route('/api/guest-members/<int:member_id>/stats')
    @login_required
    def guest_member_stats(member_id):
        guest = db.session.get(TeamMember, member_id)
        if not guest:
            return jsonify({'error': 'Not found'}), 404
        if not team_service.is_manager(db.session, guest.team_id, current_user.id):
            return jsonify({'error': 'Forbidden'}), 403
        try:
            return merging.get_guest_member_stats(db.session, member_id)
        except MergeError as exc:
            return jsonify({'error': str(exc)}), 400

    @app.route('/teams/<int:tid>/merge-records/request', methods=['POST'])
    @login_required
    def create_record_merge_request(tid):
        get_team_or_404(tid)
        try:
            req = merging.create_record_merge_request(
                db.session, tid, parse_int(request.form.get('guest_member_id')),
                request.form.get('user_code'), current_user.id,
            )
        except MergeError as exc:
            refuse(exc, tid, 'record_merge_request')
            return redirect(url_for('merge_records', tid=tid))
        log_team(tid, 'record_merge_request', 'success', f'id={req.id}')
        flash('Merge request sent.', 'success')
        return redirect(url_for('merge_records', tid=tid))

    @app.route('/teams/<int:tid>/merge-records/direct', methods=['POST'])
    @login_required
    def direct_merge(tid):
        get_team_or_404(tid)
        try:
            result = merging.process_direct_merge(
                db.session, tid, parse_int(request.form.get('guest_member_id')),
                parse_int(request.form.get('target_user_id')), current_user.id,
            )
        except MergeError as exc:
            refuse(exc, tid, 'record_merge_direct')
            return redirect(url_for('merge_records', tid=tid))
        log_team(tid, 'record_merge_direct', 'success', json.dumps(result))
        flash(f"Merged {result['records_updated'] + result['records_merged']} match records.", 'success')
        return redirect(url_for('merge_records', tid=tid))

    @app.route('/merge-requests/<int:rid>/accept', methods=['POST'])
    @login_required
    def accept_record_merge_request(rid):
        req = db.session.get(RecordMergeRequest, rid)
        if not req:
            abort(404)
        tid = req.team_id
        try:
            result = merging.process_record_merge(db.session, rid, current_user)
        except MergeError as exc:
            refuse(exc, tid, 'record_merge_accept')
            return redirect(url_for('dashboard'))
        log_team(tid, 'record_merge_accept', 'success', json.dumps(result))
        flash('Guest records merged into your account.', 'success')
        return redirect(url_for('view_team', tid=tid))

    @app.route('/merge-requests/<int:rid>/reject', methods=['POST'])
    @login_required
    def reject_record_merge_request(rid):
        try:
            req = merging.reject_merge_request(db.session, rid, current_user)
        except MergeError as exc:
            refuse(exc, action='record_merge_reject')
            return redirect(url_for('dashboard'))
        log_team(req.team_id, 'record_merge_reject', 'success', f'id={rid}')
        flash('Merge request declined.', 'info')
        return redirect(url_for('dashboard'))

    @app.route('/merge-requests/<int:rid>/cancel', methods=['POST'])
    @login_required
    def cancel_record_merge_request(rid):
        req = db.session.get(RecordMergeRequest, rid)
        if not req:
            abort(404)
        tid = req.team_id
        try:
            merging.cancel_merge_request(db.session, rid, current_user.id)
        except MergeError as exc:
            refuse(exc, tid, 'record_merge_cancel')
            return redirect(url_for('merge_records', tid=tid))
        log_team(tid, 'record_merge_cancel', 'success', f'id={rid}')
        flash('Merge request cancelled.', 'info')
        return redirect(url_for('merge_records', tid=tid))

    # ---------- Team merge ----------
    @app.route('/teams/<int:tid>/merge-teams')
    @login_required
    def merge_teams(tid):
        team = get_team_or_404(tid)
        require_team_role(tid)
        code = (request.args.get('code') or '').strip()
        target = None
        related = None
        suggestions = {}
        if code:
            target = team_service.search_team_by_code(db.session, code)
            if not target:
                flash('No team found with that code.', 'error')
            elif target.id == tid:
                flash('You cannot merge with your own team.', 'error')
                target = None
            else:
                related = team_merge.find_related_matches(db.session, tid, target.id, request.args.get('name'))
                suggestions = {m['source_match_id']: m for m in team_merge.default_mappings(related)}
        return render_template(
            'teams/merge_teams.html',
            team=team,
            code=code,
            target=target,
            related=related,
            suggestions=suggestions,
            guest_teams=team_service.list_guest_teams(db.session, tid),
            incoming=team_merge.get_team_merge_requests(db.session, tid, 'incoming'),
            outgoing=team_merge.get_team_merge_requests(db.session, tid, 'outgoing'),
        )

    @app.route('/teams/<int:tid>/merge-teams/request', methods=['POST'])
    @login_required
    def create_team_merge_request(tid):
        get_team_or_404(tid)
        target_id = parse_int(request.form.get('target_team_id'))
        mappings = []
        for raw_id in request.form.getlist('match_ids'):
            match_id = parse_int(raw_id)
            if not match_id:
                continue
            mappings.append({
                'source_match_id': match_id,
                'mapping_type': request.form.get(f'mapping_type_{match_id}', 'create_new'),
                'existing_match_id': parse_int(request.form.get(f'existing_{match_id}')),
            })
        try:
            req = team_merge.create_team_merge_request(
                db.session, tid, target_id, current_user, mappings,
                guest_team_id=parse_int(request.form.get('guest_team_id')),
            )
        except MergeError as exc:
            refuse(exc, tid, 'team_merge_request')
            return redirect(url_for('merge_teams', tid=tid))
        log_team(tid, 'team_merge_request', 'success', f'id={req.id}')
        flash('Merge request sent.', 'success')
        return redirect(url_for('team_merge_request', rid=req.id))

    @app.route('/team-merges/<int:rid>')
    @login_required
    def team_merge_request(rid):
        details = team_merge.get_merge_request_details(db.session, rid)
        if not details:
            abort(404)
        req = details['request']
        side = None
        if team_service.is_manager(db.session, req.requester_team_id, current_user.id):
            side = 'requester'
        elif team_service.is_manager(db.session, req.target_team_id, current_user.id):
            side = 'target'
        if not side:
            log_site('unauthorized_access', 'failure', f'team_merge={rid}')
            abort(403)
        return render_template('teams/team_merge_request.html', side=side, **details)

    @app.route('/disputes/<int:did>/submit', methods=['POST'])
    @login_required
    def submit_dispute_score(did):
        dispute = db.session.get(TeamMergeDispute, did)
        if not dispute:
            abort(404)
        rid = dispute.mapping.merge_request_id
        try:
            result = team_merge.submit_dispute_score(
                db.session, did, current_user,
                request.form.get('home_score'), request.form.get('away_score'),
            )
        except (MergeError, ValueError, TypeError) as exc:
            refuse(exc, action='dispute_submit')
            return redirect(url_for('team_merge_request', rid=rid))
        log_site('dispute_submit', 'success', json.dumps(result))
        if result['resolved']:
            flash('Both teams agree. The dispute is resolved.', 'success')
        elif result['waiting_for'] == 'score_mismatch':
            flash('The scores submitted by the two teams still differ.', 'warning')
        else:
            flash('Score submitted. Waiting for the other team.', 'info')
        return redirect(url_for('team_merge_request', rid=rid))

    @app.route('/team-merges/<int:rid>/approve', methods=['POST'])
    @login_required
    def approve_team_merge(rid):
        req = db.session.get(TeamMergeRequest, rid)
        if not req:
            abort(404)
        tid = req.target_team_id
        try:
            result = team_merge.process_team_merge(db.session, rid, current_user)
        except MergeError as exc:
            refuse(exc, tid, 'team_merge_approve')
            return redirect(url_for('team_merge_request', rid=rid))
        log_team(tid, 'team_merge_approve', 'success', json.dumps(result))
        flash(f"Merge complete: {result['matches_created']} created, {result['matches_linked']} linked.", 'success')
        return redirect(url_for('team_merge_request', rid=rid))

    @app.route('/team-merges/<int:rid>/reject', methods=['POST'])
    @login_required
    def reject_team_merge(rid):
        req = db.session.get(TeamMergeRequest, rid)
        if not req:
            abort(404)
        try:
            team_merge.reject_team_merge(db.session, rid, current_user)
        except MergeError as exc:
            refuse(exc, req.target_team_id, 'team_merge_reject')
            return redirect(url_for('team_merge_request', rid=rid))
        log_team(req.target_team_id, 'team_merge_reject', 'success', f'id={rid}')
        flash('Merge request rejected.', 'info')
        return redirect(url_for('merge_teams', tid=req.target_team_id))

    @app.route('/team-merges/<int:rid>/cancel', methods=['POST'])
    @login_required
    def cancel_team_merge(rid):
        req = db.session.get(TeamMergeRequest, rid)
        if not req:
            abort(404)
        try:
            team_merge.cancel_team_merge(db.session, rid, current_user)
        except MergeError as exc:
            refuse(exc, req.requester_team_id, 'team_merge_cancel')
            return redirect(url_for('team_merge_request', rid=rid))
        log_team(req.requester_team_id, 'team_merge_cancel', 'success', f'id={rid}')
        flash('Merge request cancelled.', 'info')
        return redirect(url_for('merge_teams', tid=req.requester_team_id))

    # ---------- Notifications ----------
    @app.route('/notifications')
    @login_required
    def notifications():
        unread_only = request.args.get('filter') == 'unread'
        items = notes.get_notifications(db.session, current_user.id, unread_only=unread_only, limit=100)
        return render_template('notifications.html', items=items, unread_only=unread_only)

    @app.route('/notifications/<int:nid>/read', methods=['POST'])
    @login_required
    def read_notification(nid):
        note = db.session.get(Notification, nid)
        if not note or note.user_id != current_user.id:
            abort(404)
        notes.mark_as_read(db.session, current_user.id, nid)
        return redirect(notification_link(note))

    @app.route('/notifications/read-all', methods=['POST'])
    @login_required
    def read_all_notifications():
        count = notes.mark_all_as_read(db.session, current_user.id)
        log_site('notifications_read_all', 'success', f'count={count}')
        return redirect(url_for('notifications'))

    @app.route('/notifications/<int:nid>/delete', methods=['POST'])
    @login_required
    def delete_notification(nid):
        if not notes.delete_notification(db.session, current_user.id, nid):
            abort(404)
        return redirect(url_for('notifications'))

    @app.route('/notifications/delete-read', methods=['POST'])
    @login_required
    def delete_read_notifications():
        count = notes.delete_read(db.session, current_user.id)
        log_site('notifications_delete_read', 'success', f'count={count}')
        return redirect(url_for('notifications'))

    @app.route('/api/notifications/unread')
    @login_required
    def api_unread_notifications():
        return {'count': notes.get_unread_count(db.session, current_user.id)}

    # ---------- Maintenance ----------
    @app.route('/api/cron/keep-alive')
    def keep_alive():
        secret = app.config.get('CRON_SECRET')
        if secret and request.headers.get('Authorization') != f'Bearer {secret}':
            log_site('keep_alive', 'failure', 'unauthorized')
            return jsonify({'error': 'Unauthorized'}), 401
        started = datetime.utcnow()
        db.session.execute(text('SELECT 1'))
        team_count = db.session.query(Team).count()
        process = psutil.Process(os.getpid())
        elapsed_ms = int((datetime.utcnow() - started).total_seconds() * 1000)
        log_site('keep_alive', 'success', f'{elapsed_ms}ms')
        return {
            'success': True,
            'timestamp': started.isoformat(),
            'teams': team_count,
            'response_time_ms': elapsed_ms,
            'memory_rss': process.memory_info().rss,
        }

    # ---------- Admin ----------
    @app.route('/admin/logs')
    @login_required
    def site_logs():
        require_admin()
        log_site('view_site_logs', 'success')
        logs = db.session.query(SiteLog).order_by(SiteLog.timestamp.desc()).limit(500).all()
        for l in logs:
            l.user = db.session.get(User, l.user_id) if l.user_id else None
        return render_template('admin/site_logs.html', logs=logs)

    @app.route('/admin/panel')
    @login_required
    def admin_panel():
        require_admin()
        log_site('view_admin_panel', 'success')
        process = psutil.Process(os.getpid())
        db_path = db.engine.url.database
        db_size = os.path.getsize(db_path) if db_path and os.path.exists(db_path) else 0
        cpu_usage = psutil.cpu_percent(interval=0.1)
        mem_usage = process.memory_info().rss
        uptime_seconds = int((datetime.utcnow() - datetime.fromtimestamp(psutil.boot_time())).total_seconds())

        def fmt_bytes(num):
            for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
                if num < 1024.0:
                    return f"{num:.2f} {unit}"
                num /= 1024.0
            return f"{num:.2f} PB"

        counts = {
            'users': db.session.query(User).count(),
            'teams': db.session.query(Team).count(),
            'matches': db.session.query(Match).count(),
            'open_team_merges': db.session.query(TeamMergeRequest)
            .filter(TeamMergeRequest.status.in_(('pending', 'dispute'))).count(),
        }
        return render_template(
            'admin/panel.html',
            encryption_type='PBKDF2-SHA256',
            db_size=fmt_bytes(db_size),
            ram_usage=fmt_bytes(mem_usage),
            cpu_usage=cpu_usage,
            uptime=uptime_seconds,
            counts=counts,
        )

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(debug=True)
