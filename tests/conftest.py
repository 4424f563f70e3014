import itertools
import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from matcharchive.app import create_app, db
from matcharchive.models import User, TeamMember
from matcharchive import teams


@pytest.fixture
def app(tmp_path, monkeypatch):
    # use temporary SQLite databases for testing
    monkeypatch.setenv("MATCH_ARCHIVE_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("MATCH_ARCHIVE_LOG_DB_PATH", str(tmp_path / "test_logs.db"))
    monkeypatch.setenv("MATCH_ARCHIVE_MEDIA_DIR", str(tmp_path / "media"))
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("KAKAO_REST_API_KEY", raising=False)
    application = create_app()
    application.config['TESTING'] = True
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(session):
    counter = itertools.count(1)

    def _make(nickname=None, position='MF', password=None, **fields):
        n = next(counter)
        u = User(
            email=f'player{n}@example.com',
            name=f'Player {n}',
            nickname=nickname or f'player{n}',
            position=position,
            **fields
        )
        if password:
            u.set_password(password)
        session.add(u)
        session.commit()
        return u

    return _make


@pytest.fixture
def make_team(session, make_user):
    def _make(name='Riverside FC', owner=None, **fields):
        owner = owner or make_user()
        return teams.create_team(session, owner, name, **fields)

    return _make


@pytest.fixture
def add_member(session):
    def _add(team, user, role='MEMBER', back_number=None):
        member = TeamMember(team_id=team.id, user_id=user.id, role=role, status='active', back_number=back_number)
        session.add(member)
        session.commit()
        return member

    return _add
