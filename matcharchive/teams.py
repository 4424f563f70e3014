import json
from datetime import datetime
from sqlalchemy import or_
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
    MANAGER_ROLES,
    generate_code,
    POSITIONS,
    WEEKDAYS,
)
from .notifications import create_notification, notify_team_managers, delete_by_relation
from .stats import award_badges


class TeamError(ValueError):
    """A roster operation was refused; the message is shown to the user."""


# --- lookups ---
def get_membership(session, team_id, user_id):
    if not user_id:
        return None
    return (
        session.query(TeamMember)
        .filter_by(team_id=team_id, user_id=user_id, is_guest=False)
        .first()
    )


def get_active_membership(session, team_id, user_id):
    member = get_membership(session, team_id, user_id)
    if member and member.status == 'active':
        return member
    return None


def is_manager(session, team_id, user_id) -> bool:
    member = get_active_membership(session, team_id, user_id)
    return bool(member and member.role in MANAGER_ROLES)


def is_owner(session, team_id, user_id) -> bool:
    member = get_active_membership(session, team_id, user_id)
    return bool(member and member.role == 'OWNER')


def get_user_by_code(session, code):
    code = (code or '').strip().upper()
    if not code:
        return None
    return session.query(User).filter(User.user_code == code).first()


def user_teams(session, user_id):
    """Teams the user is an active member of, oldest membership first."""
    return [
        m.team
        for m in session.query(TeamMember)
        .filter_by(user_id=user_id, status='active', is_guest=False)
        .order_by(TeamMember.joined_at.asc())
        .all()
    ]


def _require_manager(session, team_id, user_id, message='Only team managers can do that.'):
    if not is_manager(session, team_id, user_id):
        raise TeamError(message)


def _clean_list(values, allowed=None):
    cleaned = []
    for value in values or []:
        value = (value or '').strip()
        if not value or value in cleaned:
            continue
        if allowed and value not in allowed:
            continue
        cleaned.append(value)
    return cleaned


def _parse_hashtags(raw):
    if isinstance(raw, (list, tuple)):
        parts = raw
    else:
        parts = (raw or '').replace(',', ' ').split()
    return _clean_list([p.lstrip('#') for p in parts])


def _parse_recruiting(raw):
    positions = {}
    for pos, count in (raw or {}).items():
        if pos not in POSITIONS:
            continue
        try:
            count = int(count)
        except (TypeError, ValueError):
            continue
        if count > 0:
            positions[pos] = count
    return positions


def _apply_team_fields(team, fields):
    if 'region' in fields:
        team.region = (fields.get('region') or '').strip() or None
    if 'description' in fields:
        team.description = (fields.get('description') or '').strip() or None
    if 'activity_time' in fields:
        team.activity_time = (fields.get('activity_time') or '').strip() or None
    if 'activity_days' in fields:
        team.activity_days = json.dumps(_clean_list(fields.get('activity_days'), WEEKDAYS))
    if 'hashtags' in fields:
        team.hashtags = json.dumps(_parse_hashtags(fields.get('hashtags')))
    if 'is_recruiting' in fields:
        team.is_recruiting = bool(fields.get('is_recruiting'))
    if 'recruiting_positions' in fields:
        team.recruiting_positions = json.dumps(_parse_recruiting(fields.get('recruiting_positions')))
    if 'level' in fields and fields.get('level') not in (None, ''):
        level = int(fields['level'])
        team.level = max(1, min(level, 5))
    if 'emblem_path' in fields and fields.get('emblem_path'):
        team.emblem_path = fields['emblem_path']


def _unique_team_code(session):
    while True:
        code = generate_code()
        if not session.query(Team).filter_by(code=code).first():
            return code


# --- teams ---
def create_team(session, owner: User, name, **fields) -> Team:
    name = (name or '').strip()
    if not name:
        raise TeamError('Team name is required.')
    team = Team(name=name, owner_id=owner.id, code=_unique_team_code(session))
    _apply_team_fields(team, fields)
    session.add(team)
    session.flush()
    session.add(TeamMember(team_id=team.id, user_id=owner.id, role='OWNER', status='active'))
    if not owner.primary_team_id:
        owner.primary_team_id = team.id
    session.commit()
    award_badges(session, owner)
    return team


def update_team(session, team: Team, actor_id, name=None, **fields) -> Team:
    _require_manager(session, team.id, actor_id, 'You do not have permission to edit this team.')
    if name is not None:
        name = name.strip()
        if not name:
            raise TeamError('Team name is required.')
        team.name = name
    _apply_team_fields(team, fields)
    session.commit()
    return team


def list_teams(session, region=None, query=None):
    q = session.query(Team)
    if region:
        q = q.filter(Team.region.ilike(f'%{region.strip()}%'))
    if query:
        pattern = f'%{query.strip()}%'
        q = q.filter(or_(Team.name.ilike(pattern), Team.description.ilike(pattern)))
    return q.order_by(Team.created_at.desc()).all()


def search_team_by_code(session, code):
    code = (code or '').strip().upper()
    if not code:
        return None
    return session.query(Team).filter_by(code=code).first()


def team_members(session, team_id, include_guests=True):
    q = session.query(TeamMember).filter_by(team_id=team_id, status='active')
    if not include_guests:
        q = q.filter(TeamMember.is_guest.is_(False))
    members = q.all()
    role_order = {'OWNER': 0, 'MANAGER': 1, 'MEMBER': 2}
    members.sort(key=lambda m: (m.is_guest, role_order.get(m.role, 3), m.back_number or 999, m.id))
    return members


# --- members ---
def request_join_team(session, team: Team, user: User) -> TeamMember:
    member = get_membership(session, team.id, user.id)
    if member and member.status == 'active':
        raise TeamError('You are already a member of this team.')
    if member and member.status == 'pending':
        raise TeamError('You have already requested to join this team.')
    if member:
        # former members keep their history and rejoin through approval
        member.status = 'pending'
        member.role = 'MEMBER'
    else:
        member = TeamMember(team_id=team.id, user_id=user.id, role='MEMBER', status='pending')
        session.add(member)
    session.flush()
    notify_team_managers(
        session, team.id, 'join_request',
        {'team_name': team.name, 'user_name': user.display_name},
    )
    session.commit()
    return member


def _get_member(session, team, member_id):
    member = session.get(TeamMember, member_id)
    if not member or member.team_id != team.id:
        raise TeamError('Member not found.')
    return member


def approve_member(session, team: Team, member_id, actor_id) -> TeamMember:
    _require_manager(session, team.id, actor_id)
    member = _get_member(session, team, member_id)
    if member.status != 'pending':
        raise TeamError('This request has already been processed.')
    member.status = 'active'
    member.joined_at = datetime.utcnow()
    create_notification(session, member.user_id, 'join_accepted', {'team_name': team.name}, team_id=team.id)
    session.commit()
    return member


def reject_member(session, team: Team, member_id, actor_id):
    _require_manager(session, team.id, actor_id)
    member = _get_member(session, team, member_id)
    if member.status != 'pending':
        raise TeamError('This request has already been processed.')
    user_id = member.user_id
    # a returning player's row still owns their match history
    _detach_or_delete(session, member)
    create_notification(session, user_id, 'join_rejected', {'team_name': team.name}, team_id=team.id)
    session.commit()


def add_guest_member(session, team: Team, actor_id, name, back_number=None) -> TeamMember:
    _require_manager(session, team.id, actor_id)
    name = (name or '').strip()
    if not name:
        raise TeamError('Guest name is required.')
    member = TeamMember(
        team_id=team.id,
        user_id=None,
        is_guest=True,
        guest_name=name,
        role='MEMBER',
        status='active',
        back_number=int(back_number) if back_number not in (None, '') else None,
    )
    session.add(member)
    session.commit()
    return member


def update_member_role(session, team: Team, member_id, role, actor_id) -> TeamMember:
    if not is_owner(session, team.id, actor_id):
        raise TeamError('Only the team owner can change roles.')
    if role not in ('MANAGER', 'MEMBER'):
        raise TeamError('Invalid role.')
    member = _get_member(session, team, member_id)
    if member.role == 'OWNER':
        raise TeamError("The owner's role cannot be changed.")
    if member.is_guest:
        raise TeamError('Guests cannot be managers.')
    member.role = role
    session.commit()
    return member


def update_member(session, team: Team, member_id, actor_id, back_number=None, positions=None) -> TeamMember:
    member = _get_member(session, team, member_id)
    if member.user_id != actor_id:
        _require_manager(session, team.id, actor_id)
    if back_number is not None:
        member.back_number = int(back_number) if back_number != '' else None
    if positions is not None:
        member.positions = json.dumps(_clean_list(positions, POSITIONS))
    session.commit()
    return member


def _has_history(session, member):
    if session.query(MatchRecord).filter_by(team_member_id=member.id).count():
        return True
    return bool(
        session.query(Goal)
        .filter(or_(Goal.team_member_id == member.id, Goal.assist_member_id == member.id))
        .count()
    )


def _detach_or_delete(session, member):
    if _has_history(session, member):
        member.status = 'left'
        member.role = 'MEMBER'
    else:
        session.delete(member)


def remove_member(session, team: Team, member_id, actor_id):
    _require_manager(session, team.id, actor_id)
    member = _get_member(session, team, member_id)
    if member.role == 'OWNER':
        raise TeamError('The team owner cannot be removed.')
    _detach_or_delete(session, member)
    session.commit()


def leave_team(session, team: Team, user: User):
    member = get_active_membership(session, team.id, user.id)
    if not member:
        raise TeamError('You are not a member of this team.')
    if member.role == 'OWNER':
        raise TeamError('The owner cannot leave the team.')
    _detach_or_delete(session, member)
    if user.primary_team_id == team.id:
        user.primary_team_id = None
    session.commit()


# --- invites ---
def create_team_invite(session, team: Team, inviter: User, user_code) -> TeamInvite:
    _require_manager(session, team.id, inviter.id, 'Only team managers can invite players.')
    invitee = get_user_by_code(session, user_code)
    if not invitee:
        raise TeamError('No user exists with that code.')
    if invitee.id == inviter.id:
        raise TeamError('You cannot invite yourself.')
    existing_member = get_membership(session, team.id, invitee.id)
    if existing_member and existing_member.status == 'active':
        raise TeamError('That user is already a member of the team.')
    if existing_member and existing_member.status == 'pending':
        raise TeamError('That user has already requested to join.')
    existing = (
        session.query(TeamInvite)
        .filter_by(team_id=team.id, invitee_id=invitee.id)
        .order_by(TeamInvite.created_at.desc())
        .first()
    )
    if existing and existing.status == 'pending':
        raise TeamError('An invite has already been sent to that user.')
    if existing:
        session.delete(existing)
    invite = TeamInvite(team_id=team.id, inviter_id=inviter.id, invitee_id=invitee.id, status='pending')
    session.add(invite)
    session.flush()
    create_notification(
        session, invitee.id, 'team_invite',
        {'team_name': team.name, 'inviter_name': inviter.display_name},
        team_id=team.id, invite_id=invite.id,
    )
    session.commit()
    return invite


def _get_pending_invite_for(session, invite_id, user_id):
    invite = session.get(TeamInvite, invite_id)
    if not invite or invite.invitee_id != user_id or invite.status != 'pending':
        raise TeamError('Invalid invite.')
    return invite


def accept_team_invite(session, invite_id, user: User) -> TeamMember:
    invite = _get_pending_invite_for(session, invite_id, user.id)
    member = get_membership(session, invite.team_id, user.id)
    if member:
        member.status = 'active'
        member.joined_at = datetime.utcnow()
    else:
        member = TeamMember(team_id=invite.team_id, user_id=user.id, role='MEMBER', status='active')
        session.add(member)
    invite.status = 'accepted'
    if not user.primary_team_id:
        user.primary_team_id = invite.team_id
    delete_by_relation(session, user.id, 'invite', invite.id)
    create_notification(
        session, invite.inviter_id, 'invite_accepted',
        {'team_name': invite.team.name, 'user_name': user.display_name},
        team_id=invite.team_id,
    )
    session.commit()
    return member


def reject_team_invite(session, invite_id, user: User):
    invite = _get_pending_invite_for(session, invite_id, user.id)
    invite.status = 'rejected'
    delete_by_relation(session, user.id, 'invite', invite.id)
    create_notification(
        session, invite.inviter_id, 'invite_rejected',
        {'team_name': invite.team.name, 'user_name': user.display_name},
        team_id=invite.team_id,
    )
    session.commit()
    return invite


def cancel_team_invite(session, invite_id, actor_id):
    invite = session.get(TeamInvite, invite_id)
    if not invite or invite.status != 'pending':
        raise TeamError('Invalid invite.')
    _require_manager(session, invite.team_id, actor_id)
    delete_by_relation(session, invite.invitee_id, 'invite', invite.id)
    session.delete(invite)
    session.commit()


def get_my_invites(session, user_id):
    return (
        session.query(TeamInvite)
        .filter_by(invitee_id=user_id, status='pending')
        .order_by(TeamInvite.created_at.desc())
        .all()
    )


def get_team_invites(session, team_id):
    return (
        session.query(TeamInvite)
        .filter_by(team_id=team_id, status='pending')
        .order_by(TeamInvite.created_at.desc())
        .all()
    )


# --- guest teams ---
def list_guest_teams(session, team_id):
    return session.query(GuestTeam).filter_by(team_id=team_id).order_by(GuestTeam.name).all()


def _check_guest_team_name(session, team_id, name, exclude_id=None):
    name = (name or '').strip()
    if not name:
        raise TeamError('Team name is required.')
    q = session.query(GuestTeam).filter_by(team_id=team_id, name=name)
    if exclude_id:
        q = q.filter(GuestTeam.id != exclude_id)
    if q.first():
        raise TeamError('A guest team with that name already exists.')
    return name


def create_guest_team(session, team: Team, actor_id, name, region=None, notes=None, emblem_path=None) -> GuestTeam:
    _require_manager(session, team.id, actor_id, 'You do not have permission to do that.')
    name = _check_guest_team_name(session, team.id, name)
    guest_team = GuestTeam(
        team_id=team.id,
        name=name,
        region=(region or '').strip() or None,
        notes=(notes or '').strip() or None,
        emblem_path=emblem_path,
    )
    session.add(guest_team)
    session.commit()
    return guest_team


def update_guest_team(session, guest_team: GuestTeam, actor_id, name, region=None, notes=None, emblem_path=None):
    _require_manager(session, guest_team.team_id, actor_id, 'You do not have permission to do that.')
    guest_team.name = _check_guest_team_name(session, guest_team.team_id, name, exclude_id=guest_team.id)
    guest_team.region = (region or '').strip() or None
    guest_team.notes = (notes or '').strip() or None
    if emblem_path:
        guest_team.emblem_path = emblem_path
    session.commit()
    return guest_team


def delete_guest_team(session, guest_team: GuestTeam, actor_id):
    _require_manager(session, guest_team.team_id, actor_id, 'You do not have permission to do that.')
    # matches keep their opponent name but lose the link
    for match in session.query(Match).filter_by(guest_team_id=guest_team.id).all():
        match.guest_team_id = None
        match.is_guest_opponent = False
    session.delete(guest_team)
    session.commit()


# --- venues ---
def list_venues(session, team_id):
    return (
        session.query(Venue)
        .filter(Venue.team_id == team_id, Venue.deleted_at.is_(None))
        .order_by(Venue.is_primary.desc(), Venue.name.asc())
        .all()
    )


def _parse_coord(value):
    if value in (None, ''):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise TeamError('Invalid coordinates.')


def _clear_primary(session, team_id, keep_id):
    for venue in session.query(Venue).filter(Venue.team_id == team_id, Venue.is_primary.is_(True)).all():
        if venue.id != keep_id:
            venue.is_primary = False


def _apply_venue_fields(venue, name, address, address_detail, postal_code, latitude, longitude, geocode):
    name = (name or '').strip()
    address = (address or '').strip()
    if not name or not address:
        raise TeamError('Venue name and address are required.')
    venue.name = name
    venue.address = address
    venue.address_detail = (address_detail or '').strip() or None
    venue.postal_code = (postal_code or '').strip() or None
    lat = _parse_coord(latitude)
    lng = _parse_coord(longitude)
    if (lat is None or lng is None) and geocode:
        found = geocode(address)
        if found:
            lat, lng = found
    venue.latitude = lat
    venue.longitude = lng


def create_venue(session, team: Team, actor_id, name, address, address_detail=None, postal_code=None,
                 latitude=None, longitude=None, is_primary=False, geocode=None) -> Venue:
    """Add a venue. ``geocode`` maps an address to ``(lat, lng)`` when coordinates are missing."""
    _require_manager(session, team.id, actor_id, 'You do not have permission to do that.')
    venue = Venue(team_id=team.id)
    _apply_venue_fields(venue, name, address, address_detail, postal_code, latitude, longitude, geocode)
    venue.is_primary = bool(is_primary)
    session.add(venue)
    session.flush()
    if venue.is_primary:
        _clear_primary(session, team.id, venue.id)
    session.commit()
    return venue


def update_venue(session, venue: Venue, actor_id, name, address, address_detail=None, postal_code=None,
                 latitude=None, longitude=None, is_primary=None, geocode=None) -> Venue:
    _require_manager(session, venue.team_id, actor_id, 'You do not have permission to do that.')
    if venue.deleted_at:
        raise TeamError('Venue not found.')
    _apply_venue_fields(venue, name, address, address_detail, postal_code, latitude, longitude, geocode)
    if is_primary is not None:
        venue.is_primary = bool(is_primary)
        if venue.is_primary:
            _clear_primary(session, venue.team_id, venue.id)
    session.commit()
    return venue


def set_primary_venue(session, venue: Venue, actor_id) -> Venue:
    _require_manager(session, venue.team_id, actor_id, 'You do not have permission to do that.')
    if venue.deleted_at:
        raise TeamError('Venue not found.')
    venue.is_primary = True
    _clear_primary(session, venue.team_id, venue.id)
    session.commit()
    return venue


def delete_venue(session, venue: Venue, actor_id):
    _require_manager(session, venue.team_id, actor_id, 'You do not have permission to do that.')
    if venue.deleted_at:
        raise TeamError('Venue not found.')
    venue.deleted_at = datetime.utcnow()
    venue.is_primary = False
    session.commit()
