"""Shared pytest fixtures for testing."""
import os
import shutil
import tempfile

import jwt
import pytest

from metered_usage.core.credentials import Credential

SECRET = "fixture-signing-secret-of-32-bytes"


def _make_session_token(user_id: str = "user_1", provider: str = "auth0") -> str:
    """Build a session token around an unsigned-verification JWT."""
    access_token = jwt.encode({"sub": f"{provider}|{user_id}"}, SECRET, algorithm="HS256")
    return f"{user_id}%3A%3A{access_token}"


@pytest.fixture
def session_token():
    """Valid session token for user_1."""
    return _make_session_token()


@pytest.fixture
def credential():
    """Credential with fixed identifiers."""
    return Credential(token="user_1%3A%3Atoken", user_id="user_1", subject_id="auth0|user_1")


@pytest.fixture
def db_path():
    """Path to a SQLite file inside a temporary directory."""
    temp_dir = tempfile.mkdtemp()
    yield os.path.join(temp_dir, "test.db")
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def make_session_token():
    """Factory for session tokens of arbitrary users."""
    return _make_session_token


@pytest.fixture
def blocked_db_path():
    """Database path whose parent is a regular file, so it can never be opened."""
    temp_dir = tempfile.mkdtemp()
    blocker = os.path.join(temp_dir, "not_a_dir")
    with open(blocker, 'w', encoding='utf-8') as f:
        f.write("")
    yield os.path.join(blocker, "cache.db")
    shutil.rmtree(temp_dir, ignore_errors=True)
