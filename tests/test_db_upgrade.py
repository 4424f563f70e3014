import sqlite3

from sqlalchemy import inspect, text

from matcharchive.app import create_app, db


def _old_database(tmp_path, monkeypatch, *statements):
    db_path = tmp_path / "pre.db"
    log_path = tmp_path / "logs.db"
    conn = sqlite3.connect(db_path)
    for statement in statements:
        conn.execute(statement)
    conn.commit()
    conn.close()

    monkeypatch.setenv("MATCH_ARCHIVE_DB_PATH", str(db_path))
    monkeypatch.setenv("MATCH_ARCHIVE_LOG_DB_PATH", str(log_path))
    monkeypatch.setenv("MATCH_ARCHIVE_MEDIA_DIR", str(tmp_path / "media"))
    return create_app()


def test_match_columns_added(tmp_path, monkeypatch):
    # an old match table from before team merges and guest teams
    app = _old_database(
        tmp_path, monkeypatch,
        """
        CREATE TABLE "match" (
            id INTEGER PRIMARY KEY,
            team_id INTEGER NOT NULL,
            opponent_name VARCHAR(120) NOT NULL,
            match_date DATETIME NOT NULL,
            status VARCHAR(10) NOT NULL
        )
        """,
        """
        INSERT INTO "match" (id, team_id, opponent_name, match_date, status)
        VALUES (1, 1, 'Hillcrest', '2023-05-04 08:00:00', 'FINISHED')
        """,
    )
    with app.app_context():
        inspector = inspect(db.engine)
        cols = [c['name'] for c in inspector.get_columns('match')]
        for name in ('is_home', 'source_type', 'linked_match_id', 'guest_team_id', 'is_guest_opponent'):
            assert name in cols
        row = db.session.execute(text('SELECT source_type, is_home FROM "match" WHERE id=1')).fetchone()
        assert row[0] == 'original'
        assert row[1] == 1
        db.session.remove()


def test_user_codes_backfilled(tmp_path, monkeypatch):
    app = _old_database(
        tmp_path, monkeypatch,
        """
        CREATE TABLE user (
            id INTEGER PRIMARY KEY,
            email VARCHAR(255) NOT NULL,
            name VARCHAR(120)
        )
        """,
        "INSERT INTO user (id, email, name) VALUES (1, 'a@example.com', 'A')",
        "INSERT INTO user (id, email, name) VALUES (2, 'b@example.com', 'B')",
    )
    with app.app_context():
        inspector = inspect(db.engine)
        cols = [c['name'] for c in inspector.get_columns('user')]
        assert 'user_code' in cols
        assert 'primary_team_id' in cols
        assert 'avatar_path' in cols
        codes = [r[0] for r in db.session.execute(text('SELECT user_code FROM "user"')).fetchall()]
        assert all(code and len(code) == 6 for code in codes)
        assert len(set(codes)) == 2
        db.session.remove()


def test_team_member_merge_columns_added(tmp_path, monkeypatch):
    app = _old_database(
        tmp_path, monkeypatch,
        """
        CREATE TABLE team_member (
            id INTEGER PRIMARY KEY,
            team_id INTEGER NOT NULL,
            user_id INTEGER,
            role VARCHAR(10) NOT NULL,
            status VARCHAR(10) NOT NULL
        )
        """,
    )
    with app.app_context():
        inspector = inspect(db.engine)
        cols = [c['name'] for c in inspector.get_columns('team_member')]
        assert 'merged_to' in cols
        assert 'merged_at' in cols
        db.session.remove()


def test_newer_tables_created(tmp_path, monkeypatch):
    app = _old_database(tmp_path, monkeypatch)
    with app.app_context():
        inspector = inspect(db.engine)
        tables = inspector.get_table_names()
        for name in (
            'guest_team',
            'venue',
            'team_merge_request',
            'team_merge_match_mapping',
            'team_merge_dispute',
            'user_badge',
        ):
            assert name in tables
        cols = [c['name'] for c in inspector.get_columns('team_merge_dispute')]
        for name in ('requester_submitted_home', 'target_submitted_home', 'resolved_home_score'):
            assert name in cols
        db.session.remove()
