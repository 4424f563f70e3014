from datetime import datetime

import pytest
from matcharchive import merging, matches, teams
from matcharchive.merging import MergeError
from matcharchive.models import Notification, RecordMergeRequest, MatchRecord, Goal


@pytest.fixture
def guest_history(session, make_team):
    """A team whose guest scored in one finished match."""
    team = make_team()
    guest = teams.add_guest_member(session, team, team.owner_id, 'Sam')
    owner_member = teams.get_active_membership(session, team.id, team.owner_id)
    match = matches.create_match(session, team, team.owner_id, match_date=datetime(2024, 5, 4, 8), opponent_name='Hillcrest')
    matches.save_lineup(session, match, [guest.id, owner_member.id])
    matches.add_goal(session, match, scorer_id=guest.id, assist_id=owner_member.id)
    matches.update_attendance(session, match, team.owner_id, 'attending')
    matches.set_attendance(session, match, guest, 'attending')
    matches.finish_match(session, match)
    return team, guest, match


def test_guest_listing_and_stats(session, guest_history):
    team, guest, match = guest_history
    rows = merging.get_team_guest_members(session, team.id)
    assert len(rows) == 1
    assert rows[0]['total_goals'] == 1
    stats = merging.get_guest_member_stats(session, guest.id)
    assert stats['guest_name'] == 'Sam'
    assert stats['match_count'] == 1
    assert stats['records'][0]['match_id'] == match.id


def test_merge_request_accept(session, guest_history, make_user):
    team, guest, match = guest_history
    player = make_user(primary_team_id=None)
    req = merging.create_record_merge_request(session, team.id, guest.id, player.user_code, team.owner_id)
    assert session.query(Notification).filter_by(user_id=player.id, type='merge_request').count() == 1
    with pytest.raises(MergeError):
        merging.create_record_merge_request(session, team.id, guest.id, player.user_code, team.owner_id)
    with pytest.raises(MergeError):
        merging.process_record_merge(session, req.id, make_user())

    result = merging.process_record_merge(session, req.id, player)
    assert result['records_updated'] == 1
    assert result['goals_updated'] == 1

    member = teams.get_active_membership(session, team.id, player.id)
    assert result['new_member_id'] == member.id
    assert matches.get_record(session, match.id, member.id).goals == 1
    assert session.query(Goal).filter_by(team_member_id=member.id).count() == 1
    assert guest.status == 'merged'
    assert guest.merged_to == member.id
    assert player.primary_team_id == team.id
    assert req.status == 'accepted'
    assert session.query(Notification).filter_by(user_id=player.id, type='merge_request').count() == 0
    assert session.query(Notification).filter_by(user_id=team.owner_id, type='merge_accepted').count() == 1
    assert merging.get_team_guest_members(session, team.id) == []

    with pytest.raises(MergeError):
        merging.process_record_merge(session, req.id, player)


def test_direct_merge_combines_records(session, guest_history, make_user, add_member):
    team, guest, match = guest_history
    player = make_user()
    member = add_member(team, player)
    session.add(MatchRecord(match_id=match.id, team_member_id=member.id, goals=2, quarters_played=2))
    session.commit()

    with pytest.raises(MergeError):
        merging.process_direct_merge(session, team.id, guest.id, player.id, player.id)
    pending = merging.create_record_merge_request(session, team.id, guest.id, player.user_code, team.owner_id)

    result = merging.process_direct_merge(session, team.id, guest.id, player.id, team.owner_id)
    assert result['records_merged'] == 1
    rec = matches.get_record(session, match.id, member.id)
    assert rec.goals == 3
    assert session.get(RecordMergeRequest, pending.id).status == 'cancelled'
    assert session.query(MatchRecord).filter_by(team_member_id=guest.id).count() == 0


def test_direct_merge_needs_active_member(session, guest_history, make_user):
    team, guest, _ = guest_history
    outsider = make_user()
    with pytest.raises(MergeError):
        merging.process_direct_merge(session, team.id, guest.id, outsider.id, team.owner_id)


def test_reject_and_cancel(session, guest_history, make_user):
    team, guest, _ = guest_history
    player = make_user()
    req = merging.create_record_merge_request(session, team.id, guest.id, player.user_code, team.owner_id)
    assert [r.id for r in merging.get_my_merge_requests(session, player.id)] == [req.id]
    merging.reject_merge_request(session, req.id, player)
    assert req.status == 'rejected'
    assert session.query(Notification).filter_by(user_id=team.owner_id, type='merge_rejected').count() == 1

    again = merging.create_record_merge_request(session, team.id, guest.id, player.user_code, team.owner_id)
    assert [r.id for r in merging.get_team_record_merge_requests(session, team.id)] == [again.id]
    merging.cancel_merge_request(session, again.id, team.owner_id)
    assert again.status == 'cancelled'
    assert merging.get_my_merge_requests(session, player.id) == []


def test_membership_check(session, guest_history, make_user):
    team, _, _ = guest_history
    info = merging.check_user_team_membership(session, team.id, team.owner_id)
    assert info['is_member'] and info['status'] == 'active'
    assert merging.check_user_team_membership(session, team.id, make_user().id) == {
        'is_member': False, 'status': None, 'member_id': None,
    }
