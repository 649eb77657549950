import os
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret")
# External services stay unconfigured unless a test patches them in
for key in ("AI_GATEWAY_API_KEY", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "RESEND_API_KEY"):
    os.environ[key] = ""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app import app, db
import routes  # noqa: F401
from models import User, AdminUser
from store import AuthContext, DataStore


class FakeClock:
    """Hand-driven clock for offline windows and reset codes"""

    def __init__(self, start=datetime(2025, 3, 1, 10, 0, 0)):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def database(tmp_path):
    app.config['TESTING'] = True
    app.config['UPLOAD_FOLDER'] = str(tmp_path / "uploads")
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield
    with app.app_context():
        db.session.remove()


@pytest.fixture
def ctx():
    """An application context for tests that talk to the store directly"""
    with app.app_context():
        yield
        db.session.remove()


@pytest.fixture
def client():
    return app.test_client()


@pytest.fixture
def clock():
    return FakeClock()


def create_user(email, password="password123", full_name=None, admin_role=None, admin_active=True):
    user = User(email=email, full_name=full_name)
    user.set_password(password)
    db.session.add(user)
    db.session.flush()
    if admin_role is not None:
        db.session.add(AdminUser(user_id=user.id, admin_role=admin_role, is_active=admin_active, created_by=user.id))
    db.session.commit()
    return user


def store_for(user, clock=None, **kwargs):
    if clock is not None:
        kwargs['clock'] = clock
    return DataStore(AuthContext(user), **kwargs)


def add_user(email, **kwargs):
    """Create a user from outside an application context; returns its id"""
    with app.app_context():
        user_id = create_user(email, **kwargs).id
        db.session.remove()
    return user_id


def login(client, email, password="password123"):
    resp = client.post('/api/auth/login', json={'email': email, 'password': password})
    assert resp.status_code == 200, f"Login failed for {email}: {resp.get_data(as_text=True)}"
    return resp.get_json()['user']
