"""
Pytest configuration and shared fixtures.

The app reads its configuration at import time, so the environment is
pointed at throwaway locations before ``app`` is imported anywhere.
"""

import io
import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="library-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP, "test.db")
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ["SECRET_KEY"] = "test-secret"
os.environ["CORS_ORIGIN"] = "http://localhost:5173"
os.environ.pop("ADMIN_USERNAME", None)
os.environ.pop("ADMIN_PASSWORD", None)

import pytest

from app import app
from models import db, Role, User
import security


@pytest.fixture(autouse=True)
def fresh_db(tmp_path):
    """Give every test empty tables and its own upload directory."""
    app.config.update(TESTING=True, UPLOAD_DIR=str(tmp_path / "uploads"))
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield
    with app.app_context():
        db.session.remove()


@pytest.fixture
def client():
    """Create test client."""
    return app.test_client()


@pytest.fixture
def make_user():
    """Insert a user and return its id, username and bearer headers."""
    def _make(username, role=Role.USER, password="secret"):
        with app.app_context():
            user = User(
                username=username,
                password=security.hash_password(password),
                role=role,
            )
            db.session.add(user)
            db.session.commit()
            return {
                "id": user.id,
                "username": username,
                "headers": {"Authorization": f"Bearer {security.issue_token(user)}"},
            }
    return _make


@pytest.fixture
def upload(client):
    """POST a multipart book upload."""
    def _upload(headers, title="Dune", year="1965", content=b"spice must flow", filename="dune.txt"):
        data = {"title": title, "year": year}
        if filename is not None:
            data["file"] = (io.BytesIO(content), filename)
        return client.post(
            "/api/books/upload",
            headers=headers,
            data=data,
            content_type="multipart/form-data",
        )
    return _upload
