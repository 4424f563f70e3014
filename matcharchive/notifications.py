import json
from datetime import datetime
from .models import Notification, TeamMember, MANAGER_ROLES

# title and message templates per notification type; formatted with the data dict
NOTIFICATION_MESSAGES = {
    'team_invite': ('Team invite', '{team_name} invited you to join the team.'),
    'invite_accepted': ('Invite accepted', '{user_name} accepted the invite to {team_name}.'),
    'invite_rejected': ('Invite declined', '{user_name} declined the invite to {team_name}.'),
    'merge_request': ('Record merge request', '{team_name} wants to merge the records of guest "{guest_name}" into your account.'),
    'merge_accepted': ('Record merge accepted', '{user_name} accepted the record merge for "{guest_name}".'),
    'merge_rejected': ('Record merge declined', '{user_name} declined the record merge for "{guest_name}".'),
    'join_request': ('Join request', '{user_name} asked to join {team_name}.'),
    'join_accepted': ('Join request approved', 'You are now a member of {team_name}.'),
    'join_rejected': ('Join request declined', 'Your request to join {team_name} was declined.'),
    'match_created': ('New match', '{team_name} scheduled a match against {opponent_name} on {match_date}.'),
    'team_merge_request': ('Team merge request', '{team_name} wants to link match history with your team.'),
    'team_merge_dispute': ('Score dispute', '{team_name} reported a different score for a shared match. Submit your score.'),
    'team_merge_score_submit': ('Dispute score submitted', '{team_name} submitted a score ({home_score}-{away_score}) for a disputed match.'),
    'team_merge_resolved': ('Dispute resolved', 'The disputed match was settled at {home_score}-{away_score}.'),
    'team_merge_approved': ('Team merge approved', '{team_name} approved the match history merge.'),
    'team_merge_rejected': ('Team merge declined', '{team_name} declined the match history merge.'),
    'team_merge_cancelled': ('Team merge cancelled', '{team_name} cancelled the match history merge request.'),
}

RELATION_FIELDS = {
    'invite': 'related_invite_id',
    'merge_request': 'related_merge_request_id',
    'team_merge': 'related_team_merge_id',
    'dispute': 'related_dispute_id',
}


class _Defaults(dict):
    def __missing__(self, key):
        return ''


def render_message(ntype, data=None):
    """Return ``(title, message)`` for a notification type."""
    title, template = NOTIFICATION_MESSAGES.get(ntype, ('Notification', ''))
    return title, template.format_map(_Defaults(data or {}))


def create_notification(session, user_id, ntype, data=None, team_id=None, invite_id=None,
                        merge_request_id=None, match_id=None, team_merge_id=None,
                        dispute_id=None):
    """Queue a notification on the session. The caller commits."""
    title, message = render_message(ntype, data)
    note = Notification(
        user_id=user_id,
        type=ntype,
        title=title,
        message=message,
        related_team_id=team_id,
        related_invite_id=invite_id,
        related_merge_request_id=merge_request_id,
        related_match_id=match_id,
        related_team_merge_id=team_merge_id,
        related_dispute_id=dispute_id,
        extra=json.dumps(data or {}, default=str),
    )
    session.add(note)
    return note


def _active_user_ids(session, team_id, roles=None, exclude_user_id=None):
    q = session.query(TeamMember).filter(
        TeamMember.team_id == team_id,
        TeamMember.status == 'active',
        TeamMember.user_id.isnot(None),
    )
    if roles:
        q = q.filter(TeamMember.role.in_(roles))
    return [m.user_id for m in q.all() if m.user_id != exclude_user_id]


def notify_team_managers(session, team_id, ntype, data=None, exclude_user_id=None, **related):
    notes = []
    for uid in _active_user_ids(session, team_id, MANAGER_ROLES, exclude_user_id):
        notes.append(create_notification(session, uid, ntype, data, team_id=team_id, **related))
    return notes


def notify_team_members(session, team_id, ntype, data=None, exclude_user_id=None, **related):
    notes = []
    for uid in _active_user_ids(session, team_id, None, exclude_user_id):
        notes.append(create_notification(session, uid, ntype, data, team_id=team_id, **related))
    return notes


def get_notifications(session, user_id, unread_only=False, limit=50):
    q = session.query(Notification).filter_by(user_id=user_id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    q = q.order_by(Notification.created_at.desc(), Notification.id.desc())
    if limit:
        q = q.limit(limit)
    return q.all()


def get_unread_count(session, user_id) -> int:
    return (
        session.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .count()
    )


def mark_as_read(session, user_id, notification_id) -> bool:
    note = session.get(Notification, notification_id)
    if not note or note.user_id != user_id:
        return False
    if not note.is_read:
        note.is_read = True
        note.read_at = datetime.utcnow()
        session.commit()
    return True


def mark_all_as_read(session, user_id) -> int:
    now = datetime.utcnow()
    unread = (
        session.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .all()
    )
    for note in unread:
        note.is_read = True
        note.read_at = now
    session.commit()
    return len(unread)


def delete_notification(session, user_id, notification_id) -> bool:
    note = session.get(Notification, notification_id)
    if not note or note.user_id != user_id:
        return False
    session.delete(note)
    session.commit()
    return True


def delete_read(session, user_id) -> int:
    count = (
        session.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(True))
        .delete(synchronize_session=False)
    )
    session.commit()
    return count


def delete_by_relation(session, user_id, relation, related_id) -> int:
    """Drop a user's notifications pointing at an invite / merge request once it is handled.

    Does not commit; it runs as part of the caller's transaction.
    """
    field = RELATION_FIELDS.get(relation)
    if not field:
        raise ValueError(f'unknown relation {relation!r}')
    return (
        session.query(Notification)
        .filter(Notification.user_id == user_id, getattr(Notification, field) == related_id)
        .delete(synchronize_session=False)
    )
