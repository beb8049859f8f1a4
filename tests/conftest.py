"""
Pytest configuration and fixtures for the dashboard API
"""
import time as _time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from flask import Flask
from flask_jwt_extended import create_access_token, create_refresh_token

from dashboard.api.app import create_app
from dashboard.api.app.extensions import db
from dashboard.api.app.relay import StatusWatcher
from dashboard.api.app.store import DocumentStore

ADMIN_ID = '100000000000000001'
USER_ID = '200000000000000002'
OTHER_USER_ID = '300000000000000003'

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable stand-in for the store clock"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeWatcher(StatusWatcher):
    """
    Relay watcher that never sleeps

    Each wait calls ``bot(collection, key)`` when one is installed, which is
    where a test plays the part of the bot process.
    """

    def __init__(self):
        self.bot = None
        self.waits = []
        self.watched = []

    @contextmanager
    def watch(self, collection, key):
        self.watched.append((collection, key))

        def wait(interval):
            self.waits.append(interval)
            if self.bot is not None:
                self.bot(collection, key)

        yield wait


class FakeTokenStore:
    """Minimal in-memory Redis-like store for tests"""

    def __init__(self):
        self._data = {}
        self._exp = {}

    def _gc(self):
        now = int(_time.time())
        for k in list(self._exp.keys()):
            if self._exp[k] <= now:
                self._data.pop(k, None)
                self._exp.pop(k, None)

    def get(self, key):
        self._gc()
        return self._data.get(key)

    def setex(self, key, ttl, value):
        self._data[key] = str(value)
        self._exp[key] = int(_time.time()) + int(ttl)
        return True

    def exists(self, key):
        self._gc()
        return 1 if key in self._data else 0

    def ping(self):
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def watcher():
    return FakeWatcher()


@pytest.fixture
def app(clock, watcher):
    """Create and configure a test app instance on an in-memory database."""
    application = create_app('testing', clock=clock, relay_watcher=watcher)
    application.extensions['token_store'] = FakeTokenStore()

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app: Flask):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def store(app: Flask) -> DocumentStore:
    return app.extensions['document_store']


def make_token(user_id: str, name: str, refresh: bool = False) -> str:
    claims = {'name': name, 'email': f'{name.lower()}@example.com', 'image': None}
    if refresh:
        return create_refresh_token(identity=user_id, additional_claims=claims)
    return create_access_token(identity=user_id, additional_claims=claims)


def bearer(token: str) -> dict:
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin_headers(app):
    return bearer(make_token(ADMIN_ID, 'Admin'))


@pytest.fixture
def user_headers(app):
    return bearer(make_token(USER_ID, 'Listener'))


@pytest.fixture
def other_user_headers(app):
    return bearer(make_token(OTHER_USER_ID, 'Stranger'))


def bot_completes(store, status='completed', **fields):
    """Bot stand-in that finishes every request on its first wait"""
    def bot(collection, key):
        store.update(collection, key, {'status': status, **fields})
    return bot


def bot_after(store, polls, status='completed', **fields):
    """Bot stand-in that finishes a request only on wait number ``polls``"""
    seen = {'count': 0}

    def bot(collection, key):
        seen['count'] += 1
        if seen['count'] == polls:
            store.update(collection, key, {'status': status, **fields})
    return bot
