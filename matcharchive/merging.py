"""Guest record merging.

A guest member is a roster placeholder for someone without an account. Once
the player signs up, their guest statistics are folded into the real
membership, either through a request the player accepts or directly by a
team manager when the player is already on the roster.
"""
from datetime import datetime
from .models import (
    TeamMember,
    MatchRecord,
    MatchAttendance,
    Goal,
    RecordMergeRequest,
)
from .notifications import create_notification, delete_by_relation
from .teams import get_membership, get_active_membership, get_user_by_code, is_manager


class MergeError(ValueError):
    """Merge refused or failed; the message is safe to show to the user."""


def get_team_guest_members(session, team_id):
    guests = (
        session.query(TeamMember)
        .filter(
            TeamMember.team_id == team_id,
            TeamMember.is_guest.is_(True),
            TeamMember.status != 'merged',
        )
        .order_by(TeamMember.joined_at.desc())
        .all()
    )
    rows = []
    for guest in guests:
        records = guest.records
        rows.append({
            'member': guest,
            'total_matches': len(records),
            'total_goals': sum(r.goals or 0 for r in records),
            'total_assists': sum(r.assists or 0 for r in records),
        })
    return rows


def get_guest_member_stats(session, guest_member_id):
    guest = session.get(TeamMember, guest_member_id)
    if not guest or not guest.is_guest:
        raise MergeError('Invalid guest record.')
    records = sorted(guest.records, key=lambda r: r.match.match_date, reverse=True)
    return {
        'member_id': guest.id,
        'guest_name': guest.guest_name,
        'match_count': len(records),
        'total_goals': sum(r.goals or 0 for r in records),
        'total_assists': sum(r.assists or 0 for r in records),
        'records': [
            {
                'match_id': r.match_id,
                'match_date': r.match.match_date.isoformat(),
                'opponent_name': r.match.opponent_name,
                'goals': r.goals or 0,
                'assists': r.assists or 0,
                'quarters_played': r.quarters_played or 0,
                'is_mom': bool(r.is_mom),
            }
            for r in records
        ],
    }


def check_user_team_membership(session, team_id, user_id):
    member = get_membership(session, team_id, user_id)
    return {
        'is_member': bool(member and member.status == 'active'),
        'status': member.status if member else None,
        'member_id': member.id if member else None,
    }


def _load_guest(session, team_id, guest_member_id):
    guest = session.get(TeamMember, guest_member_id)
    if not guest or guest.team_id != team_id or not guest.is_guest:
        raise MergeError('Invalid guest record.')
    if guest.status == 'merged':
        raise MergeError('These records have already been merged.')
    return guest


def create_record_merge_request(session, team_id, guest_member_id, user_code, inviter_id) -> RecordMergeRequest:
    if not is_manager(session, team_id, inviter_id):
        raise MergeError('Only team managers can create record merge requests.')
    invitee = get_user_by_code(session, user_code)
    if not invitee:
        raise MergeError('No user exists with that code.')
    guest = _load_guest(session, team_id, guest_member_id)
    pending = (
        session.query(RecordMergeRequest)
        .filter_by(guest_member_id=guest.id, status='pending')
        .first()
    )
    if pending:
        raise MergeError('A merge request for this guest is already pending.')
    req = RecordMergeRequest(
        team_id=team_id,
        guest_member_id=guest.id,
        inviter_id=inviter_id,
        invitee_id=invitee.id,
        status='pending',
    )
    session.add(req)
    session.flush()
    create_notification(
        session, invitee.id, 'merge_request',
        {'team_name': guest.team.name, 'guest_name': guest.guest_name},
        team_id=team_id, merge_request_id=req.id,
    )
    session.commit()
    return req


def _transfer_records(session, guest, target):
    """Move everything recorded against ``guest`` onto ``target``. Does not commit."""
    result = {
        'records_updated': 0,
        'records_merged': 0,
        'goals_updated': 0,
        'assists_updated': 0,
    }
    for rec in list(guest.records):
        existing = (
            session.query(MatchRecord)
            .filter_by(match_id=rec.match_id, team_member_id=target.id)
            .first()
        )
        if existing:
            existing.goals = (existing.goals or 0) + (rec.goals or 0)
            existing.assists = (existing.assists or 0) + (rec.assists or 0)
            existing.quarters_played = max(existing.quarters_played or 0, rec.quarters_played or 0)
            existing.is_mom = bool(existing.is_mom or rec.is_mom)
            existing.clean_sheet = bool(existing.clean_sheet or rec.clean_sheet)
            session.delete(rec)
            result['records_merged'] += 1
        else:
            rec.team_member = target
            result['records_updated'] += 1
    session.flush()

    for goal in session.query(Goal).filter(Goal.team_member_id == guest.id).all():
        goal.scorer = target
        result['goals_updated'] += 1
    for goal in session.query(Goal).filter(Goal.assist_member_id == guest.id).all():
        goal.assister = target
        result['assists_updated'] += 1

    for row in list(guest.attendance):
        clash = (
            session.query(MatchAttendance)
            .filter_by(match_id=row.match_id, team_member_id=target.id)
            .first()
        )
        if clash:
            session.delete(row)
        else:
            row.team_member = target

    guest.status = 'merged'
    guest.merged_to = target.id
    guest.merged_at = datetime.utcnow()
    session.flush()
    result['new_member_id'] = target.id
    return result


def process_record_merge(session, request_id, user):
    """Accept a record merge request on behalf of the invitee.

    Runs as one transaction: the invitee's membership is found, created or
    reactivated, the guest's records move onto it and the request is closed.
    """
    req = session.get(RecordMergeRequest, request_id)
    if not req:
        raise MergeError('Merge request not found.')
    if req.invitee_id != user.id:
        raise MergeError('Only the invited user can accept this request.')
    if req.status != 'pending':
        raise MergeError('This request has already been processed.')
    guest = req.guest_member
    if not guest or guest.status == 'merged':
        raise MergeError('These records have already been merged.')
    try:
        member = get_membership(session, req.team_id, user.id)
        if member is None:
            member = TeamMember(team_id=req.team_id, user_id=user.id, role='MEMBER', status='active')
            session.add(member)
        elif member.status != 'active':
            member.status = 'active'
            member.joined_at = datetime.utcnow()
        session.flush()
        result = _transfer_records(session, guest, member)
        req.status = 'accepted'
        req.processed_at = datetime.utcnow()
        if not user.primary_team_id:
            user.primary_team_id = req.team_id
        delete_by_relation(session, user.id, 'merge_request', req.id)
        create_notification(
            session, req.inviter_id, 'merge_accepted',
            {'user_name': user.display_name, 'guest_name': guest.guest_name, 'team_name': req.team.name},
            team_id=req.team_id, merge_request_id=req.id,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return result


def process_direct_merge(session, team_id, guest_member_id, target_user_id, actor_id):
    """Merge a guest into an existing active member without a request."""
    if not is_manager(session, team_id, actor_id):
        raise MergeError('Only team managers can merge records directly.')
    target = get_active_membership(session, team_id, target_user_id)
    if not target:
        raise MergeError('The target user is not an active member of the team. Send a merge request instead.')
    guest = _load_guest(session, team_id, guest_member_id)
    try:
        result = _transfer_records(session, guest, target)
        # pending requests for this guest are moot now
        for req in session.query(RecordMergeRequest).filter_by(guest_member_id=guest.id, status='pending').all():
            req.status = 'cancelled'
            req.processed_at = datetime.utcnow()
            delete_by_relation(session, req.invitee_id, 'merge_request', req.id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return result


def reject_merge_request(session, request_id, user):
    req = session.get(RecordMergeRequest, request_id)
    if not req or req.invitee_id != user.id or req.status != 'pending':
        raise MergeError('Invalid merge request.')
    req.status = 'rejected'
    req.processed_at = datetime.utcnow()
    delete_by_relation(session, user.id, 'merge_request', req.id)
    create_notification(
        session, req.inviter_id, 'merge_rejected',
        {'user_name': user.display_name, 'guest_name': req.guest_member.guest_name, 'team_name': req.team.name},
        team_id=req.team_id, merge_request_id=req.id,
    )
    session.commit()
    return req


def cancel_merge_request(session, request_id, actor_id):
    req = session.get(RecordMergeRequest, request_id)
    if not req or req.status != 'pending':
        raise MergeError('Invalid merge request.')
    if not is_manager(session, req.team_id, actor_id):
        raise MergeError('Only team managers can cancel merge requests.')
    req.status = 'cancelled'
    req.processed_at = datetime.utcnow()
    delete_by_relation(session, req.invitee_id, 'merge_request', req.id)
    session.commit()
    return req


def get_my_merge_requests(session, user_id):
    return (
        session.query(RecordMergeRequest)
        .filter_by(invitee_id=user_id, status='pending')
        .order_by(RecordMergeRequest.created_at.desc())
        .all()
    )


def get_team_record_merge_requests(session, team_id):
    return (
        session.query(RecordMergeRequest)
        .filter_by(team_id=team_id, status='pending')
        .order_by(RecordMergeRequest.created_at.desc())
        .all()
    )
