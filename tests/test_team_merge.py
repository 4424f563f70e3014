from datetime import datetime

import pytest
from matcharchive import matches, teams, team_merge
from matcharchive.merging import MergeError
from matcharchive.models import Match, Notification, TeamMergeRequest


def _played(session, team, opponent, day, home, away, **fields):
    match = matches.create_match(
        session, team, team.owner_id,
        match_date=datetime(2024, day[0], day[1], 8), opponent_name=opponent, **fields
    )
    matches.update_match_score(session, match, home, away)
    matches.finish_match(session, match)
    return match


@pytest.fixture
def rivals(session, make_team):
    home = make_team('Riverside FC')
    away = make_team('Northside Rovers')
    fixtures = {
        'agreed': _played(session, home, 'Northside Rovers', (3, 1), 2, 1),
        'agreed_theirs': _played(session, away, 'Riverside FC', (3, 1), 1, 2),
        'disputed': _played(session, home, 'Northside Rovers', (4, 1), 3, 0),
        'disputed_theirs': _played(session, away, 'Riverside FC', (4, 1), 1, 1),
        'only_mine': _played(session, home, 'northside rovers', (5, 1), 4, 2),
        'only_theirs': _played(session, away, 'Riverside FC', (6, 1), 0, 3),
    }
    return home, away, fixtures


def _by_id(related):
    return {entry['match'].id: entry for entry in related['related_matches']}


def test_find_related_matches(session, rivals):
    home, away, fx = rivals
    related = team_merge.find_related_matches(session, home.id, away.id)
    entries = _by_id(related)
    assert related['total_matches'] == 4
    assert related['conflicting_matches'] == 1
    assert entries[fx['agreed'].id]['conflict_type'] == 'score_match'
    assert entries[fx['agreed'].id]['conflicting_match'].id == fx['agreed_theirs'].id
    assert entries[fx['disputed'].id]['conflict_type'] == 'score_mismatch'
    assert entries[fx['only_mine'].id]['conflict_type'] == 'no_conflict'
    assert entries[fx['only_theirs'].id]['source_team'] == 'target'

    mappings = {m['source_match_id']: m for m in team_merge.default_mappings(related)}
    assert mappings[fx['agreed'].id]['mapping_type'] == 'link_existing'
    assert mappings[fx['disputed'].id]['mapping_type'] == 'dispute'
    assert mappings[fx['disputed'].id]['existing_match_id'] == fx['disputed_theirs'].id
    assert mappings[fx['only_theirs'].id]['mapping_type'] == 'create_new'

    assert team_merge.find_related_matches(session, home.id, 9999) is None


def _request(session, home, away):
    related = team_merge.find_related_matches(session, home.id, away.id)
    return team_merge.create_team_merge_request(
        session, home.id, away.id, home.owner, team_merge.default_mappings(related)
    )


def test_full_merge_with_dispute(session, rivals):
    home, away, fx = rivals
    req = _request(session, home, away)
    assert req.status == 'dispute'
    types = {n.type for n in session.query(Notification).filter_by(user_id=away.owner_id)}
    assert {'team_merge_request', 'team_merge_dispute'} <= types

    details = team_merge.get_merge_request_details(session, req.id)
    assert details['mappings_count'] == 4
    assert details['disputes_count'] == 1
    dispute = details['disputes'][0]
    assert (dispute.requester_home_score, dispute.requester_away_score) == (3, 0)
    assert (dispute.target_home_score, dispute.target_away_score) == (1, 1)

    pending = team_merge.get_my_pending_disputes(session, home.owner_id)
    assert [row['dispute_id'] for row in pending] == [dispute.id]
    assert pending[0]['my_role'] == 'requester'
    assert not pending[0]['has_submitted']

    with pytest.raises(MergeError):
        team_merge.process_team_merge(session, req.id, away.owner)

    first = team_merge.submit_dispute_score(session, dispute.id, home.owner, 2, 1)
    assert first == {'resolved': False, 'final_score': None, 'submitted_by': 'requester', 'waiting_for': 'target_team'}
    second = team_merge.submit_dispute_score(session, dispute.id, away.owner, 2, 2)
    assert second['waiting_for'] == 'score_mismatch'
    final = team_merge.submit_dispute_score(session, dispute.id, away.owner, 2, 1)
    assert final['resolved'] and final['final_score'] == (2, 1)
    assert req.status == 'pending'
    with pytest.raises(MergeError):
        team_merge.submit_dispute_score(session, dispute.id, away.owner, 2, 1)

    with pytest.raises(MergeError):
        team_merge.process_team_merge(session, req.id, home.owner)
    result = team_merge.process_team_merge(session, req.id, away.owner)
    assert result == {'matches_created': 2, 'matches_linked': 2}
    assert req.status == 'approved'

    agreed = session.get(Match, fx['agreed'].id)
    assert agreed.linked_match_id == fx['agreed_theirs'].id
    assert agreed.opponent_team_id == away.id

    disputed = session.get(Match, fx['disputed'].id)
    theirs = session.get(Match, fx['disputed_theirs'].id)
    assert (disputed.home_score, disputed.away_score) == (2, 1)
    assert (theirs.home_score, theirs.away_score) == (1, 2)

    mirror = session.get(Match, session.get(Match, fx['only_mine'].id).linked_match_id)
    assert mirror.team_id == away.id
    assert mirror.source_type == 'merged'
    assert (mirror.home_score, mirror.away_score) == (2, 4)
    assert mirror.opponent_name == 'Riverside FC'

    copy = session.query(Match).filter_by(team_id=home.id, linked_match_id=fx['only_theirs'].id).one()
    assert (copy.home_score, copy.away_score) == (3, 0)

    # everything is linked now so nothing is left to merge
    again = team_merge.find_related_matches(session, home.id, away.id)
    assert again['total_matches'] == 0
    assert again['already_merged_matches'] == 8


def test_one_open_request_per_pair(session, rivals):
    home, away, _ = rivals
    _request(session, home, away)
    with pytest.raises(MergeError):
        _request(session, away, home)


def test_request_validation(session, rivals, make_user):
    home, away, fx = rivals
    with pytest.raises(MergeError):
        team_merge.create_team_merge_request(session, home.id, home.id, home.owner, [])
    with pytest.raises(MergeError):
        team_merge.create_team_merge_request(session, home.id, away.id, home.owner, [])
    with pytest.raises(MergeError):
        team_merge.create_team_merge_request(session, home.id, away.id, make_user(), [
            {'source_match_id': fx['only_mine'].id, 'mapping_type': 'create_new'},
        ])
    with pytest.raises(MergeError):
        team_merge.create_team_merge_request(session, home.id, away.id, home.owner, [
            {'source_match_id': fx['only_mine'].id, 'mapping_type': 'link_existing'},
        ])
    with pytest.raises(MergeError):
        team_merge.create_team_merge_request(session, home.id, away.id, home.owner, [
            {'source_match_id': fx['only_mine'].id, 'mapping_type': 'teleport'},
        ])
    assert session.query(TeamMergeRequest).count() == 0


def test_reject_and_cancel(session, rivals):
    home, away, fx = rivals
    req = _request(session, home, away)
    with pytest.raises(MergeError):
        team_merge.reject_team_merge(session, req.id, home.owner)
    team_merge.reject_team_merge(session, req.id, away.owner)
    assert req.status == 'rejected'
    assert all(m.dispute.status == 'cancelled' for m in req.mappings if m.dispute is not None)
    assert session.query(Notification).filter_by(user_id=home.owner_id, type='team_merge_rejected').count() == 1

    second = team_merge.create_team_merge_request(session, home.id, away.id, home.owner, [
        {'source_match_id': fx['only_mine'].id, 'mapping_type': 'create_new'},
    ])
    assert second.status == 'pending'
    with pytest.raises(MergeError):
        team_merge.cancel_team_merge(session, second.id, away.owner)
    team_merge.cancel_team_merge(session, second.id, home.owner)
    assert second.status == 'cancelled'
    with pytest.raises(MergeError):
        team_merge.process_team_merge(session, second.id, away.owner)

    listed = team_merge.get_team_merge_requests(session, away.id, 'incoming')
    assert [r.id for r in listed] == [second.id, req.id]
    assert team_merge.get_team_merge_requests(session, away.id, 'outgoing') == []


def test_skip_mapping(session, rivals):
    home, away, fx = rivals
    req = team_merge.create_team_merge_request(session, home.id, away.id, home.owner, [
        {'source_match_id': fx['only_mine'].id, 'mapping_type': 'skip'},
    ])
    result = team_merge.process_team_merge(session, req.id, away.owner)
    assert result == {'matches_created': 0, 'matches_linked': 0}
    assert req.mappings[0].status == 'skipped'
    assert session.get(Match, fx['only_mine'].id).linked_match_id is None


def test_guest_team_placeholder_becomes_registered_team(session, make_team):
    home = make_team('Riverside FC')
    away = make_team('Northside Rovers')
    guest = teams.create_guest_team(session, home, home.owner_id, 'Northside (guest)')
    match = _played(session, home, None, (3, 1), 1, 0, guest_team_id=guest.id)

    related = team_merge.find_related_matches(session, home.id, away.id, name='Northside')
    assert [e['match'].id for e in related['related_matches']] == [match.id]

    req = team_merge.create_team_merge_request(
        session, home.id, away.id, home.owner, team_merge.default_mappings(related), guest_team_id=guest.id
    )
    team_merge.process_team_merge(session, req.id, away.owner)
    match = session.get(Match, match.id)
    assert match.guest_team_id is None
    assert not match.is_guest_opponent
    assert match.opponent_team_id == away.id
    assert match.opponent_name == 'Northside Rovers'
