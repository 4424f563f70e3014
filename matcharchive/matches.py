from datetime import datetime
from typing import Iterable, Optional
from .models import (
    Team,
    Match,
    MatchRecord,
    MatchAttendance,
    Goal,
    GuestTeam,
    OpponentPlayer,
    TeamMember,
    Venue,
    ATTENDANCE_STATUSES,
    GOAL_TYPES,
    SCORING_TEAMS,
    POSITIONS,
)
from .notifications import notify_team_members

MAX_QUARTERS = 8


class MatchError(ValueError):
    """Invalid match, lineup, goal or attendance change."""


# --- matches ---
def _apply_match_fields(session, match: Match, team: Team, match_date, opponent_name=None,
                        opponent_team_id=None, guest_team_id=None, venue_id=None, location=None,
                        quarters=None, is_home=True):
    if not match_date:
        raise MatchError('Match date is required.')
    match.match_date = match_date
    match.guest_team_id = None
    match.opponent_team_id = None
    match.is_guest_opponent = False
    if guest_team_id:
        guest_team = session.get(GuestTeam, int(guest_team_id))
        if not guest_team or guest_team.team_id != team.id:
            raise MatchError('Invalid guest team.')
        match.guest_team_id = guest_team.id
        match.is_guest_opponent = True
        match.opponent_name = guest_team.name
    elif opponent_team_id:
        opponent = session.get(Team, int(opponent_team_id))
        if not opponent or opponent.id == team.id:
            raise MatchError('Invalid opponent team.')
        match.opponent_team_id = opponent.id
        match.opponent_name = opponent.name
    else:
        match.opponent_name = (opponent_name or '').strip() or 'TBD'
    match.venue_id = None
    if venue_id:
        venue = session.get(Venue, int(venue_id))
        if not venue or venue.team_id != team.id or venue.deleted_at:
            raise MatchError('Invalid venue.')
        match.venue_id = venue.id
        location = location or venue.address
    match.location = (location or '').strip() or None
    if quarters not in (None, ''):
        quarters = int(quarters)
        if quarters < 1 or quarters > MAX_QUARTERS:
            raise MatchError('Quarters must be between 1 and 8.')
        match.quarters = quarters
    match.is_home = bool(is_home)


def create_match(session, team: Team, creator_id, **fields) -> Match:
    """Schedule a match and tell the team about it."""
    match = Match(team_id=team.id, status='SCHEDULED', quarters=4, home_score=0, away_score=0)
    _apply_match_fields(session, match, team, **fields)
    session.add(match)
    session.flush()
    notify_team_members(
        session, team.id, 'match_created',
        {
            'team_name': team.name,
            'opponent_name': match.opponent_name,
            'match_date': match.match_date.strftime('%Y-%m-%d %H:%M'),
        },
        exclude_user_id=creator_id,
        match_id=match.id,
    )
    session.commit()
    return match


def update_match(session, match: Match, **fields) -> Match:
    _apply_match_fields(session, match, match.team, **fields)
    session.commit()
    return match


def delete_match(session, match: Match):
    # the other team's copy keeps its data but loses the link
    for linked in session.query(Match).filter(Match.linked_match_id == match.id).all():
        linked.linked_match_id = None
    session.delete(match)
    session.commit()


def get_record(session, match_id, member_id) -> Optional[MatchRecord]:
    return (
        session.query(MatchRecord)
        .filter_by(match_id=match_id, team_member_id=member_id)
        .first()
    )


def _team_member_ids(session, team_id):
    return {
        m.id for m in session.query(TeamMember).filter_by(team_id=team_id, status='active').all()
    }


# --- lineup ---
def save_lineup(session, match: Match, member_ids: Iterable[int]):
    """Replace the match's lineup with ``member_ids``.

    Existing rows for members that stay in the lineup keep their stats;
    rows for members dropped from the lineup are deleted.
    """
    wanted = []
    for raw in member_ids:
        mid = int(raw)
        if mid not in wanted:
            wanted.append(mid)
    allowed = _team_member_ids(session, match.team_id)
    unknown = [mid for mid in wanted if mid not in allowed]
    if unknown:
        raise MatchError('Lineup contains players who are not active team members.')
    existing = {r.team_member_id: r for r in match.records}
    for mid, rec in existing.items():
        if mid not in wanted:
            session.delete(rec)
    for mid in wanted:
        if mid not in existing:
            session.add(MatchRecord(match_id=match.id, team_member_id=mid))
    session.commit()
    return session.query(MatchRecord).filter_by(match_id=match.id).all()


def update_record(session, record: MatchRecord, quarters_played=None, is_mom=None,
                  clean_sheet=None, position_played=None):
    match = record.match
    if quarters_played is not None:
        quarters_played = int(quarters_played)
        if quarters_played < 0 or quarters_played > (match.quarters or 4):
            raise MatchError('Quarters played is out of range.')
        record.quarters_played = quarters_played
    if position_played is not None:
        if position_played and position_played not in POSITIONS:
            raise MatchError('Invalid position.')
        record.position_played = position_played or None
    if clean_sheet is not None:
        record.clean_sheet = bool(clean_sheet)
    if is_mom is not None:
        if is_mom:
            # one man of the match per match
            for other in match.records:
                if other.id != record.id and other.is_mom:
                    other.is_mom = False
        record.is_mom = bool(is_mom)
    session.commit()
    return record


# --- goals ---
def add_goal(session, match: Match, scoring_team='HOME', scorer_id=None, assist_id=None,
             quarter=1, goal_type='NORMAL') -> Goal:
    if scoring_team not in SCORING_TEAMS:
        raise MatchError('Invalid scoring team.')
    if goal_type not in GOAL_TYPES:
        raise MatchError('Invalid goal type.')
    quarter = int(quarter or 1)
    if quarter < 1 or quarter > (match.quarters or 4):
        raise MatchError('Quarter is out of range.')
    scorer_id = int(scorer_id) if scorer_id else None
    assist_id = int(assist_id) if assist_id else None
    if scorer_id and assist_id and scorer_id == assist_id:
        raise MatchError('A player cannot assist their own goal.')
    goal = Goal(match_id=match.id, scoring_team=scoring_team, quarter=quarter, type=goal_type)
    if scoring_team == 'HOME':
        allowed = _team_member_ids(session, match.team_id)
        for mid in (scorer_id, assist_id):
            if mid and mid not in allowed:
                raise MatchError('Player is not a member of this team.')
        goal.team_member_id = scorer_id
        goal.assist_member_id = assist_id
    else:
        opponents = {p.id for p in match.opponent_players}
        for pid in (scorer_id, assist_id):
            if pid and pid not in opponents:
                raise MatchError('Player is not in the opponent lineup.')
        goal.opponent_player_id = scorer_id
        goal.assist_opponent_id = assist_id
    session.add(goal)
    if scoring_team == 'HOME':
        if scorer_id and goal_type != 'OWN_GOAL':
            rec = get_record(session, match.id, scorer_id)
            if rec:
                rec.goals = (rec.goals or 0) + 1
        if assist_id:
            rec = get_record(session, match.id, assist_id)
            if rec:
                rec.assists = (rec.assists or 0) + 1
    session.commit()
    return goal


def delete_goal(session, goal: Goal):
    match_id = goal.match_id
    if goal.team_member_id and goal.type != 'OWN_GOAL':
        rec = get_record(session, match_id, goal.team_member_id)
        if rec and (rec.goals or 0) > 0:
            rec.goals -= 1
    if goal.assist_member_id:
        rec = get_record(session, match_id, goal.assist_member_id)
        if rec and (rec.assists or 0) > 0:
            rec.assists -= 1
    session.delete(goal)
    session.commit()


def goal_score(match: Match):
    """Score implied by the recorded goals as ``(home, away)``."""
    home = sum(1 for g in match.goals if g.scoring_team == 'HOME')
    away = sum(1 for g in match.goals if g.scoring_team == 'AWAY')
    return home, away


# --- score / status ---
def update_match_score(session, match: Match, home_score, away_score):
    home_score = int(home_score)
    away_score = int(away_score)
    if home_score < 0 or away_score < 0:
        raise MatchError('Scores cannot be negative.')
    match.home_score = home_score
    match.away_score = away_score
    session.commit()
    return match


def finish_match(session, match: Match):
    """Mark the match finished. Returns the goal-implied score when it differs from the entered one."""
    if match.status == 'CANCELED':
        raise MatchError('A cancelled match cannot be finished.')
    implied = goal_score(match)
    mismatch = None
    if match.goals and implied != (match.home_score or 0, match.away_score or 0):
        mismatch = implied
    match.status = 'FINISHED'
    session.commit()
    return mismatch


def cancel_match(session, match: Match):
    if match.status == 'FINISHED':
        raise MatchError('A finished match cannot be cancelled.')
    match.status = 'CANCELED'
    session.commit()
    return match


# --- opponent lineup ---
def add_opponent_player(session, match: Match, name, number=None, position=None) -> OpponentPlayer:
    name = (name or '').strip()
    if not name:
        raise MatchError('Player name is required.')
    player = OpponentPlayer(
        match_id=match.id,
        name=name,
        number=int(number) if number not in (None, '') else None,
        position=position if position in POSITIONS else None,
        is_playing=True,
    )
    session.add(player)
    session.commit()
    return player


def update_opponent_player(session, player: OpponentPlayer, name=None, number=None, position=None):
    if name is not None:
        name = name.strip()
        if not name:
            raise MatchError('Player name is required.')
        player.name = name
    if number is not None:
        player.number = int(number) if number != '' else None
    if position is not None:
        player.position = position if position in POSITIONS else None
    session.commit()
    return player


def toggle_opponent_player(session, player: OpponentPlayer):
    player.is_playing = not player.is_playing
    session.commit()
    return player


def delete_opponent_player(session, player: OpponentPlayer):
    for goal in session.query(Goal).filter(
        (Goal.opponent_player_id == player.id) | (Goal.assist_opponent_id == player.id)
    ).all():
        if goal.opponent_player_id == player.id:
            goal.opponent_player_id = None
        if goal.assist_opponent_id == player.id:
            goal.assist_opponent_id = None
    session.delete(player)
    session.commit()


# --- attendance ---
def active_membership(session, team_id, user_id) -> Optional[TeamMember]:
    return (
        session.query(TeamMember)
        .filter_by(team_id=team_id, user_id=user_id, status='active')
        .first()
    )


def set_attendance(session, match: Match, member: TeamMember, status):
    """Upsert ``member``'s attendance and keep the lineup in step with it."""
    if status not in ATTENDANCE_STATUSES:
        raise MatchError('Invalid attendance status.')
    if member.team_id != match.team_id or member.status != 'active':
        raise MatchError('Not a member of this team.')
    row = (
        session.query(MatchAttendance)
        .filter_by(match_id=match.id, team_member_id=member.id)
        .first()
    )
    if row:
        row.status = status
        row.updated_at = datetime.utcnow()
    else:
        row = MatchAttendance(match_id=match.id, team_member_id=member.id, status=status)
        session.add(row)
    rec = get_record(session, match.id, member.id)
    if status == 'attending':
        if not rec:
            session.add(MatchRecord(match_id=match.id, team_member_id=member.id))
    elif rec and not (rec.goals or 0) and not (rec.assists or 0):
        session.delete(rec)
    session.commit()
    return row


def update_attendance(session, match: Match, user_id, status):
    member = active_membership(session, match.team_id, user_id)
    if not member:
        raise MatchError('Not a member of this team.')
    return set_attendance(session, match, member, status)


def get_match_attendance(session, match_id):
    return (
        session.query(MatchAttendance)
        .filter_by(match_id=match_id)
        .order_by(MatchAttendance.updated_at.desc())
        .all()
    )


def get_attending_members(session, match_id):
    return [
        a.team_member_id
        for a in session.query(MatchAttendance).filter_by(match_id=match_id, status='attending').all()
    ]


def attendance_summary(session, match_id):
    summary = {status: 0 for status in ATTENDANCE_STATUSES}
    for row in get_match_attendance(session, match_id):
        summary[row.status] = summary.get(row.status, 0) + 1
    return summary


def previous_meetings(session, match: Match, limit=5):
    """Finished matches of the same team against the same opponent."""
    q = session.query(Match).filter(
        Match.team_id == match.team_id,
        Match.id != match.id,
        Match.status == 'FINISHED',
    )
    if match.opponent_team_id:
        q = q.filter(Match.opponent_team_id == match.opponent_team_id)
    elif match.guest_team_id:
        q = q.filter(Match.guest_team_id == match.guest_team_id)
    else:
        q = q.filter(Match.opponent_name == match.opponent_name)
    return q.order_by(Match.match_date.desc()).limit(limit).all()
