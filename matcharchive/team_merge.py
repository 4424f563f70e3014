"""Linking the match histories of two teams that played each other.

Both teams usually record the same fixture independently. A merge request
pairs up those records: matches only one side has are mirrored into the
other team, matches both sides have are linked, and matches whose scores
disagree go through a dispute where each side submits the score until they
agree.
"""
from datetime import datetime
from sqlalchemy import or_
from .models import (
    Team,
    Match,
    GuestTeam,
    TeamMember,
    TeamMergeRequest,
    TeamMergeMatchMapping,
    TeamMergeDispute,
    MANAGER_ROLES,
)
from .merging import MergeError
from .notifications import notify_team_managers
from .teams import is_manager

MAPPING_TYPES = ('create_new', 'link_existing', 'skip', 'dispute')
OPEN_STATUSES = ('pending', 'dispute')


def _is_merged(match):
    return bool(match.linked_match_id) or match.source_type == 'merged'


def _same_day(a, b):
    return a.date() == b.date()


def find_related_matches(session, my_team_id, target_team_id, name=None):
    """List my matches against the target and the target's matches against me.

    Each entry carries a ``conflict_type``: ``score_match`` when both teams
    recorded the fixture with mirrored scores, ``score_mismatch`` when they
    disagree and ``no_conflict`` when only one side has it.
    """
    my_team = session.get(Team, my_team_id)
    target = session.get(Team, target_team_id)
    if not my_team or not target:
        return None
    name = (name or target.name).strip()
    pattern = f'%{name}%'

    guest_ids = [
        g.id for g in session.query(GuestTeam)
        .filter(GuestTeam.team_id == my_team_id, GuestTeam.name.ilike(pattern))
        .all()
    ]
    clauses = [Match.opponent_name.ilike(pattern), Match.opponent_team_id == target_team_id]
    if guest_ids:
        clauses.append(Match.guest_team_id.in_(guest_ids))
    my_matches = (
        session.query(Match)
        .filter(Match.team_id == my_team_id, or_(*clauses))
        .order_by(Match.match_date.desc())
        .all()
    )
    target_matches = (
        session.query(Match)
        .filter(
            Match.team_id == target_team_id,
            or_(Match.opponent_name.ilike(f'%{my_team.name}%'), Match.opponent_team_id == my_team_id),
        )
        .order_by(Match.match_date.desc())
        .all()
    )

    related = []
    already_merged = 0
    for match in my_matches:
        if _is_merged(match):
            already_merged += 1
            continue
        conflicting = next(
            (tm for tm in target_matches if not _is_merged(tm) and _same_day(tm.match_date, match.match_date)),
            None,
        )
        conflict_type = 'no_conflict'
        if conflicting:
            if match.home_score == conflicting.away_score and match.away_score == conflicting.home_score:
                conflict_type = 'score_match'
            else:
                conflict_type = 'score_mismatch'
        related.append({
            'match': match,
            'source_team': 'requester',
            'conflict_type': conflict_type,
            'conflicting_match': conflicting,
            'is_home': match.is_home if match.is_home is not None else True,
        })

    for match in target_matches:
        if _is_merged(match):
            already_merged += 1
            continue
        if any(_same_day(r['match'].match_date, match.match_date) for r in related):
            continue
        related.append({
            'match': match,
            'source_team': 'target',
            'conflict_type': 'no_conflict',
            'conflicting_match': None,
            'is_home': match.is_home if match.is_home is not None else True,
        })

    return {
        'team': target,
        'related_matches': related,
        'total_matches': len(related),
        'conflicting_matches': sum(1 for r in related if r['conflict_type'] == 'score_mismatch'),
        'already_merged_matches': already_merged,
    }


def default_mappings(related):
    """Suggested mapping for each entry returned by :func:`find_related_matches`."""
    mappings = []
    for entry in related['related_matches']:
        existing = entry['conflicting_match']
        mapping_type = {
            'score_match': 'link_existing',
            'score_mismatch': 'dispute',
        }.get(entry['conflict_type'], 'create_new')
        mappings.append({
            'source_match_id': entry['match'].id,
            'mapping_type': mapping_type,
            'existing_match_id': existing.id if existing else None,
        })
    return mappings


def _open_request_between(session, team_a, team_b):
    return (
        session.query(TeamMergeRequest)
        .filter(
            TeamMergeRequest.status.in_(OPEN_STATUSES),
            or_(
                (TeamMergeRequest.requester_team_id == team_a) & (TeamMergeRequest.target_team_id == team_b),
                (TeamMergeRequest.requester_team_id == team_b) & (TeamMergeRequest.target_team_id == team_a),
            ),
        )
        .first()
    )


def create_team_merge_request(session, my_team_id, target_team_id, user, mappings, guest_team_id=None):
    if not is_manager(session, my_team_id, user.id):
        raise MergeError('Only team managers can create merge requests.')
    if my_team_id == target_team_id:
        raise MergeError('You cannot merge with your own team.')
    my_team = session.get(Team, my_team_id)
    target = session.get(Team, target_team_id)
    if not my_team or not target:
        raise MergeError('Team not found.')
    if _open_request_between(session, my_team_id, target_team_id):
        raise MergeError('A merge request between these teams is already open.')
    if guest_team_id:
        guest_team = session.get(GuestTeam, guest_team_id)
        if not guest_team or guest_team.team_id != my_team_id:
            raise MergeError('Invalid guest team.')
    if not mappings:
        raise MergeError('Select at least one match to merge.')

    team_ids = {my_team_id, target_team_id}
    has_dispute = any(m.get('mapping_type') == 'dispute' for m in mappings)
    req = TeamMergeRequest(
        requester_team_id=my_team_id,
        requester_user_id=user.id,
        target_team_id=target_team_id,
        guest_team_id=guest_team_id or None,
        status='dispute' if has_dispute else 'pending',
    )
    session.add(req)
    session.flush()
    for raw in mappings:
        mapping_type = raw.get('mapping_type')
        if mapping_type not in MAPPING_TYPES:
            session.rollback()
            raise MergeError('Invalid mapping type.')
        source = session.get(Match, int(raw['source_match_id']))
        if not source or source.team_id not in team_ids:
            session.rollback()
            raise MergeError('Invalid match selected.')
        existing = None
        if raw.get('existing_match_id'):
            existing = session.get(Match, int(raw['existing_match_id']))
            if not existing or existing.team_id not in team_ids or existing.team_id == source.team_id:
                session.rollback()
                raise MergeError('Invalid match selected.')
        if mapping_type == 'link_existing' and not existing:
            session.rollback()
            raise MergeError('Linking requires a match from the other team.')
        mapping = TeamMergeMatchMapping(
            merge_request_id=req.id,
            source_match_id=source.id,
            source_team_id=source.team_id,
            mapping_type=mapping_type,
            existing_match_id=existing.id if existing else None,
            status='dispute' if mapping_type == 'dispute' else 'pending',
        )
        session.add(mapping)
        session.flush()
        if mapping_type == 'dispute':
            requester_match, target_match = source, existing
            if source.team_id == target_team_id:
                requester_match, target_match = existing, source
            session.add(TeamMergeDispute(
                mapping_id=mapping.id,
                requester_home_score=(requester_match.home_score or 0) if requester_match else 0,
                requester_away_score=(requester_match.away_score or 0) if requester_match else 0,
                # the target's record is flipped onto the requester's side
                target_home_score=target_match.away_score if target_match else None,
                target_away_score=target_match.home_score if target_match else None,
            ))
    notify_team_managers(
        session, target_team_id, 'team_merge_request',
        {'team_name': my_team.name, 'disputes': sum(1 for m in mappings if m.get('mapping_type') == 'dispute')},
        team_merge_id=req.id,
    )
    if has_dispute:
        notify_team_managers(
            session, target_team_id, 'team_merge_dispute',
            {'team_name': my_team.name}, team_merge_id=req.id,
        )
    session.commit()
    return req


def _side_for(session, req, user_id):
    if is_manager(session, req.requester_team_id, user_id):
        return 'requester'
    if is_manager(session, req.target_team_id, user_id):
        return 'target'
    return None


def submit_dispute_score(session, dispute_id, user, home_score, away_score):
    """Record one side's view of a disputed score, stated from the requester's side.

    The dispute resolves once both sides have submitted the same score.
    """
    dispute = session.get(TeamMergeDispute, dispute_id)
    if not dispute:
        raise MergeError('Dispute not found.')
    if dispute.status != 'pending':
        raise MergeError('This dispute is already closed.')
    mapping = dispute.mapping
    req = mapping.merge_request
    if req.status not in OPEN_STATUSES:
        raise MergeError('This merge request is already closed.')
    side = _side_for(session, req, user.id)
    if not side:
        raise MergeError('Only managers of either team can submit a score.')
    home_score = int(home_score)
    away_score = int(away_score)
    if home_score < 0 or away_score < 0:
        raise MergeError('Scores cannot be negative.')

    now = datetime.utcnow()
    setattr(dispute, f'{side}_submitted_home', home_score)
    setattr(dispute, f'{side}_submitted_away', away_score)
    setattr(dispute, f'{side}_submitted_at', now)
    setattr(dispute, f'{side}_submitted_by', user.id)

    result = {'resolved': False, 'final_score': None, 'submitted_by': side, 'waiting_for': None}
    both = dispute.requester_submitted_home is not None and dispute.target_submitted_home is not None
    if both and (dispute.requester_submitted_home, dispute.requester_submitted_away) == (
            dispute.target_submitted_home, dispute.target_submitted_away):
        dispute.status = 'resolved'
        dispute.resolved_home_score = home_score
        dispute.resolved_away_score = away_score
        dispute.resolved_at = now
        mapping.mapping_type = 'link_existing' if mapping.existing_match_id else 'create_new'
        mapping.status = 'pending'
        session.flush()
        open_disputes = [
            m for m in req.mappings
            if m.dispute is not None and m.dispute.status == 'pending'
        ]
        if not open_disputes:
            req.status = 'pending'
        data = {'home_score': home_score, 'away_score': away_score}
        for team_id in (req.requester_team_id, req.target_team_id):
            notify_team_managers(session, team_id, 'team_merge_resolved', data,
                                 team_merge_id=req.id, dispute_id=dispute.id)
        result['resolved'] = True
        result['final_score'] = (home_score, away_score)
    else:
        if side == 'requester':
            other_team_id = req.target_team_id
            waiting = 'target_team' if dispute.target_submitted_home is None else 'score_mismatch'
            team_name = req.requester_team.name
        else:
            other_team_id = req.requester_team_id
            waiting = 'requester_team' if dispute.requester_submitted_home is None else 'score_mismatch'
            team_name = req.target_team.name
        notify_team_managers(
            session, other_team_id, 'team_merge_score_submit',
            {'team_name': team_name, 'home_score': home_score, 'away_score': away_score},
            team_merge_id=req.id, dispute_id=dispute.id,
        )
        result['waiting_for'] = waiting
    session.commit()
    return result


def _requester_match(req, *matches):
    for match in matches:
        if match is not None and match.team_id == req.requester_team_id:
            return match
    return None


def _mirror_match(session, source, other_team):
    mirrored = Match(
        team_id=other_team.id,
        opponent_name=source.team.name,
        opponent_team_id=source.team_id,
        match_date=source.match_date,
        location=source.location,
        status=source.status,
        quarters=source.quarters,
        home_score=source.away_score,
        away_score=source.home_score,
        is_home=not source.is_home if source.is_home is not None else False,
        source_type='merged',
        linked_match_id=source.id,
    )
    session.add(mirrored)
    session.flush()
    source.linked_match_id = mirrored.id
    source.opponent_team_id = other_team.id
    return mirrored


def process_team_merge(session, request_id, approver):
    """Apply an approved merge in one transaction. Returns the created / linked counts."""
    req = session.get(TeamMergeRequest, request_id)
    if not req:
        raise MergeError('Merge request not found.')
    if not is_manager(session, req.target_team_id, approver.id):
        raise MergeError('Only managers of the target team can approve.')
    if req.status == 'dispute':
        raise MergeError('Resolve all score disputes before approving.')
    if req.status != 'pending':
        raise MergeError('This merge request has already been processed.')
    created = linked = 0
    try:
        for mapping in req.mappings:
            source = mapping.source_match
            if mapping.mapping_type == 'skip':
                mapping.status = 'skipped'
                continue
            if mapping.mapping_type == 'dispute' or mapping.status == 'dispute':
                raise MergeError('Resolve all score disputes before approving.')
            if source is None or _is_merged(source):
                mapping.status = 'skipped'
                continue
            dispute = mapping.dispute
            if dispute is not None and dispute.status != 'resolved':
                dispute = None
            if mapping.mapping_type == 'create_new':
                if dispute is not None:
                    if source.team_id == req.requester_team_id:
                        source.home_score = dispute.resolved_home_score
                        source.away_score = dispute.resolved_away_score
                    else:
                        source.home_score = dispute.resolved_away_score
                        source.away_score = dispute.resolved_home_score
                other_team = req.target_team if source.team_id == req.requester_team_id else req.requester_team
                mirrored = _mirror_match(session, source, other_team)
                mapping.created_match_id = mirrored.id
                created += 1
            else:
                existing = mapping.existing_match
                if existing is None or _is_merged(existing):
                    mapping.status = 'skipped'
                    continue
                source.linked_match_id = existing.id
                existing.linked_match_id = source.id
                source.opponent_team_id = existing.team_id
                existing.opponent_team_id = source.team_id
                if dispute is not None:
                    mine = _requester_match(req, source, existing)
                    theirs = existing if mine is source else source
                    mine.home_score = dispute.resolved_home_score
                    mine.away_score = dispute.resolved_away_score
                    theirs.home_score = dispute.resolved_away_score
                    theirs.away_score = dispute.resolved_home_score
                linked += 1
            mapping.status = 'processed'
        if req.guest_team_id:
            # the guest placeholder for the target becomes the registered team
            for match in session.query(Match).filter_by(team_id=req.requester_team_id, guest_team_id=req.guest_team_id).all():
                match.guest_team_id = None
                match.is_guest_opponent = False
                match.opponent_team_id = req.target_team_id
                match.opponent_name = req.target_team.name
        req.status = 'approved'
        req.approver_user_id = approver.id
        req.matches_created = created
        req.matches_linked = linked
        req.processed_at = datetime.utcnow()
        notify_team_managers(
            session, req.requester_team_id, 'team_merge_approved',
            {'team_name': req.target_team.name, 'matches_created': created, 'matches_linked': linked},
            team_merge_id=req.id,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return {'matches_created': created, 'matches_linked': linked}


def _close(session, req, status):
    req.status = status
    req.processed_at = datetime.utcnow()
    for mapping in req.mappings:
        if mapping.dispute is not None and mapping.dispute.status == 'pending':
            mapping.dispute.status = 'cancelled'


def reject_team_merge(session, request_id, user):
    req = session.get(TeamMergeRequest, request_id)
    if not req:
        raise MergeError('Merge request not found.')
    if not is_manager(session, req.target_team_id, user.id):
        raise MergeError('You do not have permission to do that.')
    if req.status not in OPEN_STATUSES:
        raise MergeError('This merge request has already been processed.')
    _close(session, req, 'rejected')
    notify_team_managers(
        session, req.requester_team_id, 'team_merge_rejected',
        {'team_name': req.target_team.name}, team_merge_id=req.id,
    )
    session.commit()
    return req


def cancel_team_merge(session, request_id, user):
    req = session.get(TeamMergeRequest, request_id)
    if not req:
        raise MergeError('Merge request not found.')
    if not is_manager(session, req.requester_team_id, user.id):
        raise MergeError('You do not have permission to do that.')
    if req.status not in OPEN_STATUSES:
        raise MergeError('This merge request has already been processed.')
    _close(session, req, 'cancelled')
    notify_team_managers(
        session, req.target_team_id, 'team_merge_cancelled',
        {'team_name': req.requester_team.name}, team_merge_id=req.id,
    )
    session.commit()
    return req


def get_team_merge_requests(session, team_id, direction='all'):
    q = session.query(TeamMergeRequest)
    if direction == 'incoming':
        q = q.filter(TeamMergeRequest.target_team_id == team_id)
    elif direction == 'outgoing':
        q = q.filter(TeamMergeRequest.requester_team_id == team_id)
    else:
        q = q.filter(or_(
            TeamMergeRequest.target_team_id == team_id,
            TeamMergeRequest.requester_team_id == team_id,
        ))
    return q.order_by(TeamMergeRequest.created_at.desc(), TeamMergeRequest.id.desc()).all()


def get_merge_request_details(session, request_id):
    req = session.get(TeamMergeRequest, request_id)
    if not req:
        return None
    mappings = list(req.mappings)
    return {
        'request': req,
        'mappings': mappings,
        'disputes': [m.dispute for m in mappings if m.dispute is not None],
        'mappings_count': len(mappings),
        'disputes_count': sum(1 for m in mappings if m.dispute is not None and m.dispute.status == 'pending'),
    }


def get_my_pending_disputes(session, user_id):
    team_ids = [
        m.team_id for m in session.query(TeamMember)
        .filter(
            TeamMember.user_id == user_id,
            TeamMember.status == 'active',
            TeamMember.role.in_(MANAGER_ROLES),
        )
        .all()
    ]
    if not team_ids:
        return []
    disputes = (
        session.query(TeamMergeDispute)
        .join(TeamMergeMatchMapping, TeamMergeDispute.mapping_id == TeamMergeMatchMapping.id)
        .join(TeamMergeRequest, TeamMergeMatchMapping.merge_request_id == TeamMergeRequest.id)
        .filter(
            TeamMergeDispute.status == 'pending',
            TeamMergeRequest.status.in_(OPEN_STATUSES),
            or_(
                TeamMergeRequest.requester_team_id.in_(team_ids),
                TeamMergeRequest.target_team_id.in_(team_ids),
            ),
        )
        .order_by(TeamMergeDispute.created_at.desc())
        .all()
    )
    rows = []
    for dispute in disputes:
        req = dispute.mapping.merge_request
        my_role = 'requester' if req.requester_team_id in team_ids else 'target'
        submitted = getattr(dispute, f'{my_role}_submitted_home') is not None
        target_score = '-'
        if dispute.target_home_score is not None:
            target_score = f'{dispute.target_home_score}-{dispute.target_away_score}'
        rows.append({
            'dispute': dispute,
            'dispute_id': dispute.id,
            'request_id': req.id,
            'match_date': dispute.mapping.source_match.match_date,
            'requester_team_name': req.requester_team.name,
            'target_team_name': req.target_team.name,
            'requester_score': f'{dispute.requester_home_score}-{dispute.requester_away_score}',
            'target_score': target_score,
            'my_role': my_role,
            'has_submitted': submitted,
        })
    return rows
