import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from ttportal.app import create_app, db
from ttportal.models import Tournament, RosterEntry

ADMIN_TOKEN = 'test-admin-token'


@pytest.fixture
def app(tmp_path, monkeypatch):
    # use temporary SQLite databases for testing
    monkeypatch.setenv("TT_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("TT_LOG_DB_PATH", str(tmp_path / "test_logs.db"))
    monkeypatch.setenv("TT_IMPORT_STAGING_DIR", str(tmp_path / "imports"))
    monkeypatch.setenv("ADMIN_ACCESS_TOKEN", ADMIN_TOKEN)
    monkeypatch.delenv("TT_DATABASE_URL", raising=False)
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
def admin_client(client):
    client.post('/admin/login', data={'admin_token': ADMIN_TOKEN})
    return client


@pytest.fixture
def tournament(session):
    t = Tournament(name='Istanbul Open', city='İstanbul', status='published', type='official')
    session.add(t)
    session.commit()
    return t


@pytest.fixture
def roster(session, tournament):
    people = [
        ('Ahmet', 'Yılmaz', 'İstanbul BŞB', 'M'),
        ('Mehmet', 'Kaya', 'Galatasaray', 'M'),
        ('Emre', 'Demir', 'Fenerbahçe', 'M'),
    ]
    entries = []
    for first, last, club, gender in people:
        entry = RosterEntry(tournament_id=tournament.id, first_name=first, last_name=last, club=club, gender=gender)
        session.add(entry)
        entries.append(entry)
    session.commit()
    return entries
