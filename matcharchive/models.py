from .app import db
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy import UniqueConstraint
import json
import os
import secrets
import string
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# Roles and statuses used across the roster and match tables
MEMBER_ROLES = ('OWNER', 'MANAGER', 'MEMBER')
MANAGER_ROLES = ('OWNER', 'MANAGER')
MEMBER_STATUSES = ('pending', 'active', 'left', 'merged')
POSITIONS = ('FW', 'MF', 'DF', 'GK')
PREFERRED_FEET = ('left', 'right', 'both')
MATCH_STATUSES = ('SCHEDULED', 'FINISHED', 'CANCELED')
GOAL_TYPES = ('NORMAL', 'PK', 'FREEKICK', 'OWN_GOAL')
SCORING_TEAMS = ('HOME', 'AWAY')
ATTENDANCE_STATUSES = ('attending', 'maybe', 'absent')
WEEKDAYS = ('MON', 'TUE', 'WED', 'THU', 'FRI', 'SAT', 'SUN')

CODE_ALPHABET = string.ascii_uppercase + string.digits
PASSWORD_ITERATIONS = 390000


def generate_code(length=6):
    """Return a random upper-case alphanumeric code (team and user codes)."""
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _json_list(raw):
    try:
        value = json.loads(raw or '[]')
    except ValueError:
        return []
    return value if isinstance(value, list) else []


def _json_dict(raw):
    try:
        value = json.loads(raw or '{}')
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def _derive_password_hash(password, salt_hex):
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=bytes.fromhex(salt_hex),
        iterations=PASSWORD_ITERATIONS,
    )
    return kdf.derive(password.encode()).hex()


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.Text, nullable=True)
    salt = db.Column(db.String(32), nullable=True)
    name = db.Column(db.String(120), nullable=True)
    nickname = db.Column(db.String(60), nullable=True)
    position = db.Column(db.String(2), nullable=True)
    preferred_foot = db.Column(db.String(5), nullable=True)
    birth_date = db.Column(db.Date, nullable=True)
    nationality = db.Column(db.String(60), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    bio = db.Column(db.Text, nullable=True)
    is_public = db.Column(db.Boolean, default=True)
    email_notifications = db.Column(db.Boolean, default=False)
    avatar_path = db.Column(db.String(500), nullable=True)
    user_code = db.Column(db.String(6), unique=True, default=generate_code)
    # Plain integer: teams also reference users, so no FK cycle here
    primary_team_id = db.Column(db.Integer, nullable=True)
    is_admin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def set_password(self, pw):
        self.salt = os.urandom(16).hex()
        self.password_hash = _derive_password_hash(pw, self.salt)

    def check_password(self, pw):
        if not self.password_hash or not self.salt:
            return False
        return secrets.compare_digest(self.password_hash, _derive_password_hash(pw, self.salt))

    @property
    def is_onboarded(self):
        return bool(self.nickname and self.position)

    @property
    def display_name(self):
        return self.nickname or self.name or self.email.split('@')[0]


class Team(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    region = db.Column(db.String(120), nullable=True)
    emblem_path = db.Column(db.String(500), nullable=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    code = db.Column(db.String(6), unique=True, nullable=False, default=generate_code)
    description = db.Column(db.Text, nullable=True)
    activity_time = db.Column(db.String(60), nullable=True)
    activity_days = db.Column(db.Text, default='[]')  # JSON list of WEEKDAYS
    hashtags = db.Column(db.Text, default='[]')
    is_recruiting = db.Column(db.Boolean, default=False)
    recruiting_positions = db.Column(db.Text, default='{}')  # {"FW": 2, ...}
    level = db.Column(db.Integer, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    owner = db.relationship('User', foreign_keys=[owner_id])

    def activity_days_list(self):
        return _json_list(self.activity_days)

    def hashtags_list(self):
        return _json_list(self.hashtags)

    def recruiting_positions_dict(self):
        return _json_dict(self.recruiting_positions)

    @property
    def member_count(self):
        return sum(1 for m in self.members if m.status == 'active' and not m.is_guest)


class TeamMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    # Null for guest members
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    role = db.Column(db.String(10), nullable=False, default='MEMBER')
    status = db.Column(db.String(10), nullable=False, default='active')
    is_guest = db.Column(db.Boolean, default=False)
    guest_name = db.Column(db.String(120), nullable=True)
    back_number = db.Column(db.Integer, nullable=True)
    positions = db.Column(db.Text, default='[]')
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)
    merged_to = db.Column(db.Integer, db.ForeignKey('team_member.id'), nullable=True)
    merged_at = db.Column(db.DateTime, nullable=True)

    team = db.relationship(
        'Team',
        backref=db.backref('members', cascade='all, delete-orphan')
    )
    user = db.relationship(
        'User',
        backref=db.backref('memberships', cascade='all, delete-orphan')
    )

    def positions_list(self):
        return _json_list(self.positions)

    @property
    def is_manager(self):
        return self.status == 'active' and self.role in MANAGER_ROLES

    @property
    def display_name(self):
        if self.is_guest:
            return self.guest_name or 'Guest'
        return self.user.display_name if self.user else 'Unknown'


class GuestTeam(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    region = db.Column(db.String(120), nullable=True)
    emblem_path = db.Column(db.String(500), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    team = db.relationship(
        'Team',
        backref=db.backref('guest_teams', cascade='all, delete-orphan')
    )

    __table_args__ = (UniqueConstraint('team_id', 'name', name='_guest_team_name_uc'),)


class Venue(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    address = db.Column(db.String(300), nullable=False)
    address_detail = db.Column(db.String(300), nullable=True)
    postal_code = db.Column(db.String(20), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    is_primary = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    # Soft delete keeps historical matches pointing at the venue
    deleted_at = db.Column(db.DateTime, nullable=True)

    team = db.relationship(
        'Team',
        backref=db.backref('venues', cascade='all, delete-orphan')
    )


class Match(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    opponent_name = db.Column(db.String(120), nullable=False, default='TBD')
    opponent_team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=True)
    guest_team_id = db.Column(db.Integer, db.ForeignKey('guest_team.id'), nullable=True)
    is_guest_opponent = db.Column(db.Boolean, default=False)
    match_date = db.Column(db.DateTime, nullable=False)
    location = db.Column(db.String(300), nullable=True)
    venue_id = db.Column(db.Integer, db.ForeignKey('venue.id'), nullable=True)
    status = db.Column(db.String(10), nullable=False, default='SCHEDULED')
    quarters = db.Column(db.Integer, default=4)
    home_score = db.Column(db.Integer, default=0)
    away_score = db.Column(db.Integer, default=0)
    is_home = db.Column(db.Boolean, default=True)
    # 'original' for matches entered by the team, 'merged' for copies made by a team merge
    source_type = db.Column(db.String(10), default='original')
    linked_match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    team = db.relationship(
        'Team',
        foreign_keys=[team_id],
        backref=db.backref('matches', cascade='all, delete-orphan')
    )
    opponent_team = db.relationship('Team', foreign_keys=[opponent_team_id])
    guest_team = db.relationship('GuestTeam', foreign_keys=[guest_team_id])
    venue = db.relationship('Venue', foreign_keys=[venue_id])
    linked_match = db.relationship('Match', remote_side=[id], foreign_keys=[linked_match_id])

    @property
    def result_label(self):
        home = self.home_score or 0
        away = self.away_score or 0
        if home > away:
            return 'W'
        if home < away:
            return 'L'
        return 'D'


class MatchRecord(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False)
    team_member_id = db.Column(db.Integer, db.ForeignKey('team_member.id'), nullable=False)
    quarters_played = db.Column(db.Integer, default=0)
    goals = db.Column(db.Integer, default=0)
    assists = db.Column(db.Integer, default=0)
    is_mom = db.Column(db.Boolean, default=False)
    clean_sheet = db.Column(db.Boolean, default=False)
    position_played = db.Column(db.String(2), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    match = db.relationship(
        'Match',
        backref=db.backref('records', cascade='all, delete-orphan')
    )
    team_member = db.relationship(
        'TeamMember',
        backref=db.backref('records', cascade='all, delete-orphan')
    )

    __table_args__ = (UniqueConstraint('match_id', 'team_member_id', name='_match_member_record_uc'),)


class OpponentPlayer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    number = db.Column(db.Integer, nullable=True)
    position = db.Column(db.String(2), nullable=True)
    is_playing = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    match = db.relationship(
        'Match',
        backref=db.backref('opponent_players', cascade='all, delete-orphan')
    )


class Goal(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False)
    # HOME goals reference team members, AWAY goals reference opponent players
    team_member_id = db.Column(db.Integer, db.ForeignKey('team_member.id'), nullable=True)
    assist_member_id = db.Column(db.Integer, db.ForeignKey('team_member.id'), nullable=True)
    opponent_player_id = db.Column(db.Integer, db.ForeignKey('opponent_player.id'), nullable=True)
    assist_opponent_id = db.Column(db.Integer, db.ForeignKey('opponent_player.id'), nullable=True)
    scoring_team = db.Column(db.String(4), nullable=False, default='HOME')
    quarter = db.Column(db.Integer, nullable=False, default=1)
    type = db.Column(db.String(10), nullable=False, default='NORMAL')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    match = db.relationship(
        'Match',
        backref=db.backref('goals', cascade='all, delete-orphan', order_by='Goal.quarter')
    )
    scorer = db.relationship('TeamMember', foreign_keys=[team_member_id])
    assister = db.relationship('TeamMember', foreign_keys=[assist_member_id])
    opponent_scorer = db.relationship('OpponentPlayer', foreign_keys=[opponent_player_id])
    opponent_assister = db.relationship('OpponentPlayer', foreign_keys=[assist_opponent_id])


class MatchAttendance(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False)
    team_member_id = db.Column(db.Integer, db.ForeignKey('team_member.id'), nullable=False)
    status = db.Column(db.String(10), nullable=False, default='maybe')
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    match = db.relationship(
        'Match',
        backref=db.backref('attendance', cascade='all, delete-orphan')
    )
    team_member = db.relationship(
        'TeamMember',
        backref=db.backref('attendance', cascade='all, delete-orphan')
    )

    __table_args__ = (UniqueConstraint('match_id', 'team_member_id', name='_match_member_attendance_uc'),)


class TeamInvite(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    inviter_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    invitee_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(10), nullable=False, default='pending')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    team = db.relationship(
        'Team',
        backref=db.backref('invites', cascade='all, delete-orphan')
    )
    inviter = db.relationship('User', foreign_keys=[inviter_id])
    invitee = db.relationship('User', foreign_keys=[invitee_id])


class RecordMergeRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    guest_member_id = db.Column(db.Integer, db.ForeignKey('team_member.id'), nullable=False)
    inviter_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    invitee_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(10), nullable=False, default='pending')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)

    team = db.relationship(
        'Team',
        backref=db.backref('record_merge_requests', cascade='all, delete-orphan')
    )
    guest_member = db.relationship('TeamMember', foreign_keys=[guest_member_id])
    inviter = db.relationship('User', foreign_keys=[inviter_id])
    invitee = db.relationship('User', foreign_keys=[invitee_id])


class TeamMergeRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    requester_team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    requester_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    target_team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    guest_team_id = db.Column(db.Integer, db.ForeignKey('guest_team.id'), nullable=True)
    approver_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    status = db.Column(db.String(10), nullable=False, default='pending')
    matches_created = db.Column(db.Integer, default=0)
    matches_linked = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)

    requester_team = db.relationship('Team', foreign_keys=[requester_team_id])
    target_team = db.relationship('Team', foreign_keys=[target_team_id])
    guest_team = db.relationship('GuestTeam', foreign_keys=[guest_team_id])
    requester_user = db.relationship('User', foreign_keys=[requester_user_id])
    approver_user = db.relationship('User', foreign_keys=[approver_user_id])


class TeamMergeMatchMapping(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    merge_request_id = db.Column(db.Integer, db.ForeignKey('team_merge_request.id'), nullable=False)
    source_match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False)
    source_team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=False)
    mapping_type = db.Column(db.String(15), nullable=False)  # create_new, link_existing, skip, dispute
    existing_match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=True)
    created_match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=True)
    status = db.Column(db.String(10), nullable=False, default='pending')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    merge_request = db.relationship(
        'TeamMergeRequest',
        backref=db.backref('mappings', cascade='all, delete-orphan', order_by='TeamMergeMatchMapping.id')
    )
    source_match = db.relationship('Match', foreign_keys=[source_match_id])
    existing_match = db.relationship('Match', foreign_keys=[existing_match_id])
    created_match = db.relationship('Match', foreign_keys=[created_match_id])
    source_team = db.relationship('Team', foreign_keys=[source_team_id])


class TeamMergeDispute(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    mapping_id = db.Column(db.Integer, db.ForeignKey('team_merge_match_mapping.id'), nullable=False)
    # All scores are stated from the requester team's point of view
    requester_home_score = db.Column(db.Integer, nullable=False, default=0)
    requester_away_score = db.Column(db.Integer, nullable=False, default=0)
    target_home_score = db.Column(db.Integer, nullable=True)
    target_away_score = db.Column(db.Integer, nullable=True)
    requester_submitted_home = db.Column(db.Integer, nullable=True)
    requester_submitted_away = db.Column(db.Integer, nullable=True)
    requester_submitted_at = db.Column(db.DateTime, nullable=True)
    requester_submitted_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    target_submitted_home = db.Column(db.Integer, nullable=True)
    target_submitted_away = db.Column(db.Integer, nullable=True)
    target_submitted_at = db.Column(db.DateTime, nullable=True)
    target_submitted_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    status = db.Column(db.String(10), nullable=False, default='pending')
    resolved_home_score = db.Column(db.Integer, nullable=True)
    resolved_away_score = db.Column(db.Integer, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    mapping = db.relationship(
        'TeamMergeMatchMapping',
        backref=db.backref('dispute', cascade='all, delete-orphan', uselist=False)
    )


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    type = db.Column(db.String(30), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, default=False)
    related_team_id = db.Column(db.Integer, db.ForeignKey('team.id'), nullable=True)
    related_invite_id = db.Column(db.Integer, nullable=True)
    related_merge_request_id = db.Column(db.Integer, nullable=True)
    related_match_id = db.Column(db.Integer, nullable=True)
    related_team_merge_id = db.Column(db.Integer, nullable=True)
    related_dispute_id = db.Column(db.Integer, nullable=True)
    extra = db.Column(db.Text, default='{}')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    read_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship(
        'User',
        backref=db.backref('notifications', cascade='all, delete-orphan')
    )
    team = db.relationship('Team', foreign_keys=[related_team_id])

    def extra_dict(self):
        return _json_dict(self.extra)


class UserBadge(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    badge_type = db.Column(db.String(30), nullable=False)
    earned_at = db.Column(db.DateTime, default=datetime.utcnow)
    extra = db.Column(db.Text, default='{}')

    user = db.relationship(
        'User',
        backref=db.backref('badges', cascade='all, delete-orphan')
    )

    __table_args__ = (UniqueConstraint('user_id', 'badge_type', name='_user_badge_uc'),)


class SiteLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    user_id = db.Column(db.Integer, nullable=True)
    # relationship loaded manually to avoid cross-db foreign key


class TeamLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    user_id = db.Column(db.Integer, nullable=True)
