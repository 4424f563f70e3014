import json
import math
from collections import OrderedDict
from datetime import datetime
from .models import Match, MatchRecord, Team, TeamMember, UserBadge

# badge type -> (name, description)
BADGE_DEFINITIONS = OrderedDict([
    ('first_goal', ('First Goal', 'Scored a first goal.')),
    ('first_assist', ('First Assist', 'Recorded a first assist.')),
    ('first_mom', ('First MOM', 'Named man of the match for the first time.')),
    ('streak_5', ('5 In A Row', 'Played 5 consecutive matches.')),
    ('streak_10', ('10 In A Row', 'Played 10 consecutive matches.')),
    ('streak_20', ('20 In A Row', 'Played 20 consecutive matches.')),
    ('team_founder', ('Team Founder', 'Founded a team.')),
    ('multi_team_5', ('Journeyman', 'Active in 5 or more teams.')),
    ('veteran_1year', ('1 Year Veteran', 'Member for more than a year.')),
    ('veteran_2year', ('2 Year Veteran', 'Member for more than two years.')),
    ('matches_10', ('10 Matches', 'Played 10 matches.')),
    ('matches_50', ('50 Matches', 'Played 50 matches.')),
    ('matches_100', ('100 Matches', 'Played 100 matches.')),
    ('goals_10', ('10 Goals', 'Scored 10 goals.')),
    ('goals_50', ('50 Goals', 'Scored 50 goals.')),
    ('assists_10', ('10 Assists', 'Recorded 10 assists.')),
    ('assists_50', ('50 Assists', 'Recorded 50 assists.')),
    ('hat_trick', ('Hat Trick', 'Scored 3 goals in a single match.')),
    ('poker', ('Poker', 'Scored 4 or more goals in a single match.')),
])


def _round1(value):
    # half-up to one decimal
    return math.floor(value * 10 + 0.5) / 10


def match_result(home_score, away_score):
    home = home_score or 0
    away = away_score or 0
    if home > away:
        return 'W'
    if home < away:
        return 'L'
    return 'D'


def match_rating(goals, assists, quarters):
    return min(10, _round1(6 + 1.5 * (goals or 0) + (assists or 0) + 0.3 * (quarters or 0)))


# --- team level ---
def team_statistics(session, team_id):
    matches = (
        session.query(Match)
        .filter_by(team_id=team_id, status='FINISHED')
        .all()
    )
    total = len(matches)
    stats = {
        'total_matches': total,
        'wins': 0,
        'draws': 0,
        'losses': 0,
        'win_rate': 0,
        'goals_scored': 0,
        'goals_conceded': 0,
        'average_goals': 0,
    }
    if not total:
        return stats
    for m in matches:
        stats['goals_scored'] += m.home_score or 0
        stats['goals_conceded'] += m.away_score or 0
        result = match_result(m.home_score, m.away_score)
        if result == 'W':
            stats['wins'] += 1
        elif result == 'D':
            stats['draws'] += 1
        else:
            stats['losses'] += 1
    stats['win_rate'] = _round1(stats['wins'] / total * 100)
    stats['average_goals'] = _round1(stats['goals_scored'] / total)
    return stats


def recent_form(session, team_id, limit=5):
    matches = (
        session.query(Match)
        .filter_by(team_id=team_id, status='FINISHED')
        .order_by(Match.match_date.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            'match_id': m.id,
            'result': match_result(m.home_score, m.away_score),
            'home_score': m.home_score or 0,
            'away_score': m.away_score or 0,
            'opponent_name': m.opponent_name,
            'match_date': m.match_date,
        }
        for m in matches
    ]


def next_match(session, team_id, now=None):
    now = now or datetime.utcnow()
    return (
        session.query(Match)
        .filter(Match.team_id == team_id, Match.status == 'SCHEDULED', Match.match_date >= now)
        .order_by(Match.match_date.asc())
        .first()
    )


def team_leaderboards(session, team_id, limit=5):
    """Top scorers, assisters and appearances over finished matches."""
    rows = (
        session.query(MatchRecord)
        .join(Match, MatchRecord.match_id == Match.id)
        .filter(Match.team_id == team_id, Match.status == 'FINISHED')
        .all()
    )
    totals = {}
    for rec in rows:
        entry = totals.setdefault(rec.team_member_id, {
            'member': rec.team_member,
            'goals': 0,
            'assists': 0,
            'appearances': 0,
        })
        entry['goals'] += rec.goals or 0
        entry['assists'] += rec.assists or 0
        entry['appearances'] += 1
    entries = list(totals.values())

    def top(key):
        ranked = [e for e in entries if e[key] > 0]
        ranked.sort(key=lambda e: (-e[key], e['member'].display_name))
        return ranked[:limit]

    return {
        'scorers': top('goals'),
        'assisters': top('assists'),
        'appearances': top('appearances'),
    }


# --- player level ---
def _finished_records(session, member_ids):
    if not member_ids:
        return []
    return (
        session.query(MatchRecord)
        .join(Match, MatchRecord.match_id == Match.id)
        .filter(MatchRecord.team_member_id.in_(member_ids), Match.status == 'FINISHED')
        .order_by(Match.match_date.desc())
        .all()
    )


def _summarize(records):
    total = len(records)
    quarters = sum(r.quarters_played or 0 for r in records)
    return {
        'matches': total,
        'goals': sum(r.goals or 0 for r in records),
        'assists': sum(r.assists or 0 for r in records),
        'mom': sum(1 for r in records if r.is_mom),
        'clean_sheets': sum(1 for r in records if r.clean_sheet),
        'average_quarters': _round1(quarters / total) if total else 0,
    }


def player_statistics(session, member_id):
    return _summarize(_finished_records(session, [member_id]))


def monthly_statistics(session, member_id, year=None):
    buckets = OrderedDict((month, {'month': month, 'goals': 0, 'assists': 0}) for month in range(1, 13))
    for rec in _finished_records(session, [member_id]):
        if year and rec.match.match_date.year != year:
            continue
        bucket = buckets[rec.match.match_date.month]
        bucket['goals'] += rec.goals or 0
        bucket['assists'] += rec.assists or 0
    return [b for b in buckets.values() if b['goals'] or b['assists']]


def career_by_year(session, member_id):
    seasons = {}
    for rec in _finished_records(session, [member_id]):
        seasons.setdefault(rec.match.match_date.year, []).append(rec)
    table = []
    for year in sorted(seasons, reverse=True):
        row = _summarize(seasons[year])
        row['year'] = year
        table.append(row)
    return table


def recent_matches(session, member_id, limit=10):
    rows = []
    for rec in _finished_records(session, [member_id])[:limit]:
        m = rec.match
        rows.append({
            'match_id': m.id,
            'match_date': m.match_date,
            'opponent_name': m.opponent_name,
            'result': match_result(m.home_score, m.away_score),
            'home_score': m.home_score or 0,
            'away_score': m.away_score or 0,
            'goals': rec.goals or 0,
            'assists': rec.assists or 0,
            'quarters_played': rec.quarters_played or 0,
            'rating': match_rating(rec.goals, rec.assists, rec.quarters_played),
        })
    return rows


def user_career(session, user_id):
    member_ids = [
        m.id for m in session.query(TeamMember).filter_by(user_id=user_id).all()
    ]
    return _summarize(_finished_records(session, member_ids))


# --- badges ---
def _longest_streak(session, memberships):
    best = 0
    for membership in memberships:
        finished = [r for r in membership.records if r.match.status == 'FINISHED']
        if not finished:
            continue
        played = {r.match_id for r in finished}
        run = 0
        matches = (
            session.query(Match)
            .filter(Match.team_id == membership.team_id, Match.status == 'FINISHED')
            .order_by(Match.match_date.asc())
            .all()
        )
        # the run starts at the member's first appearance
        first = min(r.match.match_date for r in finished)
        matches = [m for m in matches if m.match_date >= first]
        for m in matches:
            if m.id in played:
                run += 1
                best = max(best, run)
            else:
                run = 0
    return best


def earned_badge_types(session, user, now=None):
    """Return the set of badge types the user's data qualifies for."""
    now = now or datetime.utcnow()
    memberships = session.query(TeamMember).filter_by(user_id=user.id).all()
    records = _finished_records(session, [m.id for m in memberships])
    summary = _summarize(records)
    earned = set()
    if summary['goals'] >= 1:
        earned.add('first_goal')
    if summary['assists'] >= 1:
        earned.add('first_assist')
    if summary['mom'] >= 1:
        earned.add('first_mom')
    for threshold in (10, 50, 100):
        if summary['matches'] >= threshold:
            earned.add(f'matches_{threshold}')
    for threshold in (10, 50):
        if summary['goals'] >= threshold:
            earned.add(f'goals_{threshold}')
        if summary['assists'] >= threshold:
            earned.add(f'assists_{threshold}')
    best_game = max((r.goals or 0 for r in records), default=0)
    if best_game >= 3:
        earned.add('hat_trick')
    if best_game >= 4:
        earned.add('poker')
    streak = _longest_streak(session, [m for m in memberships if not m.is_guest])
    for threshold in (5, 10, 20):
        if streak >= threshold:
            earned.add(f'streak_{threshold}')
    if session.query(Team).filter_by(owner_id=user.id).count():
        earned.add('team_founder')
    active_teams = {m.team_id for m in memberships if m.status == 'active'}
    if len(active_teams) >= 5:
        earned.add('multi_team_5')
    if user.created_at:
        days = (now - user.created_at).days
        if days >= 365:
            earned.add('veteran_1year')
        if days >= 730:
            earned.add('veteran_2year')
    return earned


def award_badges(session, user, now=None):
    """Insert any newly earned badges. Returns the list of new badge types."""
    have = {b.badge_type for b in session.query(UserBadge).filter_by(user_id=user.id).all()}
    earned = earned_badge_types(session, user, now)
    new_types = [t for t in BADGE_DEFINITIONS if t in earned and t not in have]
    for badge_type in new_types:
        session.add(UserBadge(user_id=user.id, badge_type=badge_type, extra=json.dumps({})))
    if new_types:
        session.commit()
    return new_types


def badges_with_status(session, user_id):
    earned = {
        b.badge_type: b
        for b in session.query(UserBadge).filter_by(user_id=user_id).all()
    }
    return [
        {
            'type': badge_type,
            'name': name,
            'description': description,
            'earned': badge_type in earned,
            'earned_at': earned[badge_type].earned_at if badge_type in earned else None,
        }
        for badge_type, (name, description) in BADGE_DEFINITIONS.items()
    ]
