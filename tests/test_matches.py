from datetime import datetime

import pytest
from matcharchive import matches
from matcharchive.matches import MatchError
from matcharchive.models import Match, MatchRecord, Goal, Notification, OpponentPlayer


@pytest.fixture
def squad(session, make_team, make_user, add_member):
    team = make_team()
    owner_member = team.members[0]
    players = [add_member(team, make_user(), back_number=n) for n in range(2, 5)]
    return team, [owner_member] + players


def _match(session, team, **fields):
    fields.setdefault('match_date', datetime(2024, 5, 4, 8))
    fields.setdefault('opponent_name', 'Hillcrest United')
    return matches.create_match(session, team, team.owner_id, **fields)


def test_create_match_defaults_and_notifies(session, squad):
    team, members = squad
    match = matches.create_match(session, team, team.owner_id, match_date=datetime(2024, 5, 4, 8))
    assert match.opponent_name == 'TBD'
    assert match.status == 'SCHEDULED'
    assert match.quarters == 4
    assert (match.home_score, match.away_score) == (0, 0)
    notes = session.query(Notification).filter_by(type='match_created').all()
    # everyone but the creator
    assert sorted(n.user_id for n in notes) == sorted(m.user_id for m in members[1:])
    assert all(n.related_match_id == match.id for n in notes)


def test_match_field_validation(session, squad):
    team, _ = squad
    with pytest.raises(MatchError):
        matches.create_match(session, team, team.owner_id, match_date=None)
    with pytest.raises(MatchError):
        _match(session, team, quarters=9)
    with pytest.raises(MatchError):
        _match(session, team, opponent_team_id=team.id)
    match = _match(session, team, quarters='6', is_home=False, location='  Park 2 ')
    assert match.quarters == 6
    assert match.is_home is False
    assert match.location == 'Park 2'


def test_opponent_can_be_registered_team(session, squad, make_team):
    team, _ = squad
    rival = make_team('Northside Rovers')
    match = _match(session, team, opponent_team_id=rival.id)
    assert match.opponent_team_id == rival.id
    assert match.opponent_name == 'Northside Rovers'
    matches.update_match(session, match, match_date=match.match_date, opponent_name='Friendly XI')
    assert match.opponent_team_id is None
    assert match.opponent_name == 'Friendly XI'


def test_lineup_keeps_existing_stats(session, squad):
    team, members = squad
    match = _match(session, team)
    matches.save_lineup(session, match, [members[0].id, members[1].id, members[1].id])
    rec = matches.get_record(session, match.id, members[0].id)
    matches.update_record(session, rec, quarters_played=3)

    records = matches.save_lineup(session, match, [members[0].id, members[2].id])
    assert sorted(r.team_member_id for r in records) == sorted([members[0].id, members[2].id])
    assert matches.get_record(session, match.id, members[0].id).quarters_played == 3

    with pytest.raises(MatchError):
        matches.save_lineup(session, match, [999])


def test_update_record_validation_and_single_mom(session, squad):
    team, members = squad
    match = _match(session, team)
    matches.save_lineup(session, match, [m.id for m in members])
    a = matches.get_record(session, match.id, members[0].id)
    b = matches.get_record(session, match.id, members[1].id)
    with pytest.raises(MatchError):
        matches.update_record(session, a, quarters_played=5)
    with pytest.raises(MatchError):
        matches.update_record(session, a, position_played='ST')
    matches.update_record(session, a, is_mom=True, position_played='FW', clean_sheet=True)
    matches.update_record(session, b, is_mom=True)
    assert not session.get(MatchRecord, a.id).is_mom
    assert session.get(MatchRecord, b.id).is_mom
    assert a.position_played == 'FW'
    assert a.clean_sheet


def test_goals_update_records(session, squad):
    team, members = squad
    match = _match(session, team)
    matches.save_lineup(session, match, [m.id for m in members])
    scorer, assister = members[1], members[2]

    goal = matches.add_goal(session, match, scorer_id=scorer.id, assist_id=assister.id, quarter=2, goal_type='PK')
    matches.add_goal(session, match, scorer_id=scorer.id, goal_type='OWN_GOAL')
    assert matches.get_record(session, match.id, scorer.id).goals == 1
    assert matches.get_record(session, match.id, assister.id).assists == 1
    assert matches.goal_score(match) == (2, 0)

    matches.delete_goal(session, goal)
    assert matches.get_record(session, match.id, scorer.id).goals == 0
    assert matches.get_record(session, match.id, assister.id).assists == 0


def test_goal_validation(session, squad):
    team, members = squad
    match = _match(session, team)
    with pytest.raises(MatchError):
        matches.add_goal(session, match, scorer_id=members[0].id, assist_id=members[0].id)
    with pytest.raises(MatchError):
        matches.add_goal(session, match, quarter=5)
    with pytest.raises(MatchError):
        matches.add_goal(session, match, scoring_team='NEUTRAL')
    with pytest.raises(MatchError):
        matches.add_goal(session, match, goal_type='BICYCLE')
    with pytest.raises(MatchError):
        matches.add_goal(session, match, scoring_team='AWAY', scorer_id=12345)


def test_opponent_players_and_away_goals(session, squad):
    team, _ = squad
    match = _match(session, team)
    striker = matches.add_opponent_player(session, match, 'Big Tom', number='9', position='FW')
    keeper = matches.add_opponent_player(session, match, 'Gloves', position='XX')
    assert striker.number == 9
    assert keeper.position is None
    with pytest.raises(MatchError):
        matches.add_opponent_player(session, match, ' ')

    goal = matches.add_goal(session, match, scoring_team='AWAY', scorer_id=striker.id, assist_id=keeper.id)
    assert goal.opponent_player_id == striker.id

    matches.update_opponent_player(session, striker, name='Tom', number='')
    assert striker.name == 'Tom' and striker.number is None
    matches.toggle_opponent_player(session, keeper)
    assert keeper.is_playing is False

    striker_id = striker.id
    matches.delete_opponent_player(session, striker)
    assert session.get(OpponentPlayer, striker_id) is None
    goal = session.get(Goal, goal.id)
    assert goal.opponent_player_id is None
    assert goal.assist_opponent_id == keeper.id


def test_finish_reports_score_mismatch(session, squad):
    team, members = squad
    match = _match(session, team)
    matches.save_lineup(session, match, [members[1].id])
    matches.add_goal(session, match, scorer_id=members[1].id)
    matches.update_match_score(session, match, 3, 1)
    assert matches.finish_match(session, match) == (1, 0)
    assert match.status == 'FINISHED'
    # the manually entered score stays
    assert (match.home_score, match.away_score) == (3, 1)
    with pytest.raises(MatchError):
        matches.cancel_match(session, match)


def test_finish_without_goals_has_no_mismatch(session, squad):
    team, _ = squad
    match = _match(session, team)
    matches.update_match_score(session, match, 2, 2)
    assert matches.finish_match(session, match) is None
    assert match.result_label == 'D'
    with pytest.raises(MatchError):
        matches.update_match_score(session, match, -1, 0)


def test_cancelled_match_cannot_finish(session, squad):
    team, _ = squad
    match = _match(session, team)
    matches.cancel_match(session, match)
    assert match.status == 'CANCELED'
    with pytest.raises(MatchError):
        matches.finish_match(session, match)


def test_delete_match_unlinks_copy(session, squad, make_team):
    team, members = squad
    rival = make_team('Northside Rovers')
    mine = _match(session, team)
    theirs = _match(session, rival, opponent_name=team.name)
    mine.linked_match_id = theirs.id
    theirs.linked_match_id = mine.id
    session.commit()
    matches.save_lineup(session, mine, [members[0].id])
    matches.add_goal(session, mine, scorer_id=members[0].id)

    mine_id = mine.id
    matches.delete_match(session, mine)
    assert session.get(Match, mine_id) is None
    assert session.get(Match, theirs.id).linked_match_id is None
    assert session.query(MatchRecord).filter_by(match_id=mine_id).count() == 0
    assert session.query(Goal).filter_by(match_id=mine_id).count() == 0


def test_previous_meetings(session, squad):
    team, _ = squad
    old = _match(session, team, match_date=datetime(2024, 3, 1, 8))
    matches.finish_match(session, old)
    other = _match(session, team, match_date=datetime(2024, 4, 1, 8), opponent_name='Someone Else')
    matches.finish_match(session, other)
    upcoming = _match(session, team, match_date=datetime(2024, 6, 1, 8))
    assert [m.id for m in matches.previous_meetings(session, upcoming)] == [old.id]
