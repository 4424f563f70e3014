import pytest
from matcharchive import teams
from matcharchive.models import Notification, TeamInvite
from matcharchive.teams import TeamError


def _notes(session, user, ntype):
    return session.query(Notification).filter_by(user_id=user.id, type=ntype).all()


def test_invite_and_accept(session, make_team, make_user):
    team = make_team()
    owner = team.owner
    player = make_user(primary_team_id=None)

    invite = teams.create_team_invite(session, team, owner, player.user_code.lower())
    assert invite.status == 'pending'
    notes = _notes(session, player, 'team_invite')
    assert len(notes) == 1
    assert notes[0].related_invite_id == invite.id
    assert [i.id for i in teams.get_my_invites(session, player.id)] == [invite.id]

    member = teams.accept_team_invite(session, invite.id, player)
    assert member.status == 'active'
    assert session.get(TeamInvite, invite.id).status == 'accepted'
    assert player.primary_team_id == team.id
    # the invite notification is consumed, the inviter hears back
    assert _notes(session, player, 'team_invite') == []
    assert len(_notes(session, owner, 'invite_accepted')) == 1


def test_invite_errors(session, make_team, make_user, add_member):
    team = make_team()
    owner = team.owner
    with pytest.raises(TeamError, match='No user'):
        teams.create_team_invite(session, team, owner, 'ZZZZZZ')
    with pytest.raises(TeamError, match='yourself'):
        teams.create_team_invite(session, team, owner, owner.user_code)

    member = make_user()
    add_member(team, member)
    with pytest.raises(TeamError, match='already a member'):
        teams.create_team_invite(session, team, owner, member.user_code)

    applicant = make_user()
    teams.request_join_team(session, team, applicant)
    with pytest.raises(TeamError, match='requested'):
        teams.create_team_invite(session, team, owner, applicant.user_code)

    player = make_user()
    teams.create_team_invite(session, team, owner, player.user_code)
    with pytest.raises(TeamError, match='already been sent'):
        teams.create_team_invite(session, team, owner, player.user_code)

    with pytest.raises(TeamError, match='managers'):
        teams.create_team_invite(session, team, member, make_user().user_code)


def test_reject_invite(session, make_team, make_user):
    team = make_team()
    player = make_user()
    invite = teams.create_team_invite(session, team, team.owner, player.user_code)
    teams.reject_team_invite(session, invite.id, player)
    assert invite.status == 'rejected'
    assert teams.get_membership(session, team.id, player.id) is None
    assert len(_notes(session, team.owner, 'invite_rejected')) == 1

    # a declined invite can be sent again
    again = teams.create_team_invite(session, team, team.owner, player.user_code)
    assert again.status == 'pending'


def test_only_invitee_can_answer(session, make_team, make_user):
    team = make_team()
    player = make_user()
    invite = teams.create_team_invite(session, team, team.owner, player.user_code)
    with pytest.raises(TeamError):
        teams.accept_team_invite(session, invite.id, make_user())


def test_cancel_invite(session, make_team, make_user):
    team = make_team()
    player = make_user()
    invite = teams.create_team_invite(session, team, team.owner, player.user_code)
    invite_id = invite.id
    assert [i.id for i in teams.get_team_invites(session, team.id)] == [invite_id]
    teams.cancel_team_invite(session, invite_id, team.owner_id)
    assert session.get(TeamInvite, invite_id) is None
    assert _notes(session, player, 'team_invite') == []
    with pytest.raises(TeamError):
        teams.cancel_team_invite(session, invite_id, team.owner_id)


def test_former_member_can_be_invited(session, make_team, make_user, add_member):
    team = make_team()
    player = make_user()
    member = add_member(team, player)
    member.status = 'left'
    session.commit()
    invite = teams.create_team_invite(session, team, team.owner, player.user_code)
    rejoined = teams.accept_team_invite(session, invite.id, player)
    assert rejoined.id == member.id
    assert rejoined.status == 'active'
