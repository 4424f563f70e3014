import pytest
from matcharchive import notifications
from matcharchive.models import Notification


def test_render_message_tolerates_missing_data():
    title, message = notifications.render_message('invite_accepted', {'user_name': 'kim'})
    assert title == 'Invite accepted'
    assert message == 'kim accepted the invite to .'
    assert notifications.render_message('something_new') == ('Notification', '')


def test_create_and_read(session, make_user):
    user = make_user()
    first = notifications.create_notification(session, user.id, 'join_accepted', {'team_name': 'Riverside FC'})
    notifications.create_notification(session, user.id, 'join_rejected', {'team_name': 'Hillcrest'})
    session.commit()
    assert first.message == 'You are now a member of Riverside FC.'
    assert first.extra_dict() == {'team_name': 'Riverside FC'}
    assert notifications.get_unread_count(session, user.id) == 2

    assert notifications.mark_as_read(session, user.id, first.id)
    assert first.is_read and first.read_at is not None
    assert notifications.get_unread_count(session, user.id) == 1
    assert len(notifications.get_notifications(session, user.id, unread_only=True)) == 1

    assert notifications.mark_all_as_read(session, user.id) == 1
    assert notifications.get_unread_count(session, user.id) == 0
    assert notifications.delete_read(session, user.id) == 2
    assert notifications.get_notifications(session, user.id) == []


def test_other_users_notifications_are_off_limits(session, make_user):
    owner = make_user()
    intruder = make_user()
    note = notifications.create_notification(session, owner.id, 'join_accepted', {'team_name': 'A'})
    session.commit()
    assert not notifications.mark_as_read(session, intruder.id, note.id)
    assert not notifications.delete_notification(session, intruder.id, note.id)
    assert notifications.delete_notification(session, owner.id, note.id)
    assert session.query(Notification).count() == 0


def test_team_fan_out(session, make_team, make_user, add_member):
    team = make_team()
    manager = make_user()
    player = make_user()
    add_member(team, manager, role='MANAGER')
    add_member(team, player)
    notes = notifications.notify_team_managers(session, team.id, 'join_request', {'user_name': 'x', 'team_name': 'y'})
    assert sorted(n.user_id for n in notes) == sorted([team.owner_id, manager.id])
    notes = notifications.notify_team_members(
        session, team.id, 'match_created', {}, exclude_user_id=team.owner_id, match_id=7,
    )
    assert sorted(n.user_id for n in notes) == sorted([manager.id, player.id])
    assert all(n.related_match_id == 7 and n.related_team_id == team.id for n in notes)


def test_delete_by_relation(session, make_user):
    user = make_user()
    notifications.create_notification(session, user.id, 'team_invite', {}, invite_id=5)
    notifications.create_notification(session, user.id, 'team_invite', {}, invite_id=6)
    session.commit()
    assert notifications.delete_by_relation(session, user.id, 'invite', 5) == 1
    session.commit()
    assert [n.related_invite_id for n in notifications.get_notifications(session, user.id)] == [6]
    with pytest.raises(ValueError):
        notifications.delete_by_relation(session, user.id, 'carrier_pigeon', 1)
