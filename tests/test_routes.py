from datetime import datetime

from matcharchive import matches
from matcharchive.models import User, Team, Match, TeamLog, SiteLog


def login(client, user, password='secret'):
    return client.post('/login', data={'email': user.email, 'password': password})


def test_signup_goes_through_onboarding(client, session):
    resp = client.post('/signup', data={
        'email': 'New@Example.com',
        'name': 'Newcomer',
        'password': 'secret1',
        'password_confirm': 'secret1',
    })
    assert resp.status_code == 302
    assert resp.headers['Location'].endswith('/onboarding')

    user = session.query(User).filter_by(email='new@example.com').one()
    assert not user.is_onboarded
    resp = client.get('/dashboard')
    assert resp.status_code == 302
    assert resp.headers['Location'].endswith('/onboarding')
    # JSON endpoints are not redirected
    assert client.get('/api/notifications/unread').get_json() == {'count': 0}

    resp = client.post('/onboarding', data={'nickname': 'newbie', 'position': 'GK'})
    assert resp.headers['Location'].endswith('/dashboard')
    assert client.get('/dashboard').status_code == 200


def test_signup_validation(client, session):
    resp = client.post('/signup', data={'email': 'a@b.com', 'password': '123', 'password_confirm': '123'})
    assert resp.headers['Location'].endswith('/signup')
    assert session.query(User).count() == 0
    assert session.query(SiteLog).filter_by(action='signup', result='failure').count() == 1


def test_login(client, make_user):
    user = make_user(password='secret')
    resp = login(client, user, 'wrong')
    assert resp.status_code == 200
    assert b'Invalid credentials' in resp.data
    resp = login(client, user)
    assert resp.status_code == 302
    assert resp.headers['Location'].endswith('/dashboard')


def test_create_team_and_view(client, session, make_user):
    user = make_user(password='secret')
    login(client, user)
    resp = client.post('/teams/new', data={
        'name': 'Riverside FC',
        'region': 'Seoul',
        'activity_days': ['SAT', 'SUN'],
        'hashtags': 'sunday friendly',
        'recruit_DF': '2',
        'level': '3',
    })
    team = session.query(Team).filter_by(name='Riverside FC').one()
    assert resp.headers['Location'].endswith(f'/teams/{team.id}')
    assert team.recruiting_positions_dict() == {'DF': 2}
    assert session.query(TeamLog).filter_by(team_id=team.id, action='team_create').count() == 1

    assert client.get(f'/teams/{team.id}').status_code == 200
    assert client.get('/dashboard').status_code == 200
    assert client.get(f'/teams/{team.id}/stats').status_code == 200


def test_members_only_pages_are_forbidden(client, make_team, make_user):
    team = make_team()
    outsider = make_user(password='secret')
    login(client, outsider)
    assert client.get(f'/teams/{team.id}/members').status_code == 403
    assert client.post(f'/teams/{team.id}/matches/new', data={'match_date': '2024-05-04T08:00'}).status_code == 403
    assert client.get('/teams/9999').status_code == 404


def test_match_flow(client, session, make_user, make_team):
    owner = make_user(password='secret')
    team = make_team(owner=owner)
    login(client, owner)
    resp = client.post(f'/teams/{team.id}/matches/new', data={
        'match_date': '2024-05-04T08:00',
        'opponent_kind': 'name',
        'opponent_name': 'Hillcrest United',
        'quarters': '4',
    })
    match = session.query(Match).filter_by(team_id=team.id).one()
    assert resp.headers['Location'].endswith(f'/matches/{match.id}')
    assert match.match_date == datetime(2024, 5, 4, 8)

    member = team.members[0]
    client.post(f'/matches/{match.id}/lineup', data={'member_ids': [str(member.id)]})
    client.post(f'/matches/{match.id}/goals', data={'scorer_id': str(member.id), 'quarter': '1'})
    client.post(f'/matches/{match.id}/score', data={'home_score': '2', 'away_score': '0'})
    resp = client.post(f'/matches/{match.id}/finish')
    assert resp.status_code == 302

    session.expire_all()
    match = session.get(Match, match.id)
    assert match.status == 'FINISHED'
    assert matches.get_record(session, match.id, member.id).goals == 1
    log = session.query(TeamLog).filter_by(team_id=team.id, action='match_finish').one()
    assert log.result == 'score_mismatch'
    assert client.get(f'/matches/{match.id}').status_code == 200
    assert client.get(f'/players/{member.id}').status_code == 200


def test_member_forms_redirect_to_member_list(client, make_user, make_team):
    owner = make_user(password='secret')
    team = make_team(owner=owner)
    member = team.members[0]
    login(client, owner)
    resp = client.post(f'/teams/{team.id}/members/{member.id}/update', data={
        'back_number': '9',
        'next': 'https://elsewhere.example/',
    })
    assert resp.headers['Location'].endswith(f'/teams/{team.id}/members')
    resp = client.post(f'/teams/{team.id}/guests', data={
        'guest_name': 'Sam',
        'next': 'https://elsewhere.example/',
    })
    assert resp.headers['Location'].endswith(f'/teams/{team.id}/members')


def test_invalid_goal_is_flashed_not_raised(client, session, make_user, make_team):
    owner = make_user(password='secret')
    team = make_team(owner=owner)
    match = matches.create_match(session, team, owner.id, match_date=datetime(2024, 5, 4, 8))
    login(client, owner)
    resp = client.post(f'/matches/{match.id}/goals', data={'quarter': '7'})
    assert resp.status_code == 302
    assert session.query(TeamLog).filter_by(action='goal_add', result='failure').count() == 1


def test_api_match(client, session, make_user, make_team, add_member):
    owner = make_user(password='secret')
    team = make_team(owner=owner)
    player = make_user(password='secret')
    add_member(team, player)
    match = matches.create_match(session, team, owner.id, match_date=datetime(2024, 5, 4, 8), opponent_name='Hillcrest')
    match_id = match.id

    login(client, player)
    data = client.get(f'/api/matches/{match_id}').get_json()
    assert data['opponent_name'] == 'Hillcrest'
    assert data['match_date'] == '2024-05-04T08:00:00'
    assert data['source_type'] == 'original'
    assert client.delete(f'/api/matches/{match_id}').status_code == 403
    assert client.get('/api/matches/9999').status_code == 404

    login(client, owner)
    assert client.delete(f'/api/matches/{match_id}').get_json() == {'success': True}
    assert session.get(Match, match_id) is None


def test_private_profile(client, make_user, make_team, add_member):
    team = make_team()
    hidden = make_user(is_public=False)
    member = add_member(team, hidden)
    stranger = make_user(password='secret')
    login(client, stranger)
    assert client.get(f'/players/{member.id}').status_code == 403

    teammate = make_user(password='secret')
    add_member(team, teammate)
    login(client, teammate)
    assert client.get(f'/players/{member.id}').status_code == 200


def test_keep_alive(app, client):
    data = client.get('/api/cron/keep-alive').get_json()
    assert data['success'] is True
    assert data['teams'] == 0

    app.config['CRON_SECRET'] = 'tok'
    assert client.get('/api/cron/keep-alive').status_code == 401
    resp = client.get('/api/cron/keep-alive', headers={'Authorization': 'Bearer tok'})
    assert resp.status_code == 200


def test_admin_pages(client, make_user):
    user = make_user(password='secret')
    login(client, user)
    assert client.get('/admin/logs').status_code == 403
    assert client.get('/admin/panel').status_code == 403


def test_admin_can_view_logs(client, make_user):
    admin = make_user(password='secret', is_admin=True)
    login(client, admin)
    assert client.get('/admin/logs').status_code == 200
