"""
Tests for signup/login/logout, identity resolution and the access policy.
"""

import pytest

import app as library_app
from app import app, ensure_admin
from models import db, Role, User
import security


def test_signup_returns_token_and_role(client):
    response = client.post("/auth/signup", json={
        "username": "frank", "email": "frank@example.com", "password": "dune", "role": "AUTHOR"
    })
    assert response.status_code == 200
    data = response.get_json()
    assert data["role"] == Role.AUTHOR
    assert data["username"] == "frank"
    assert data["token"]

    with app.app_context():
        user = User.query.filter_by(username="frank").one()
        assert user.password != "dune"
        assert security.verify_password(user, "dune")


def test_signup_defaults_to_plain_user_and_maps_student(client):
    assert client.post("/auth/signup", json={"username": "a", "password": "x"}).get_json()["role"] == Role.USER
    assert client.post("/auth/signup", json={"username": "b", "password": "x", "role": "student"}).get_json()["role"] == Role.USER


def test_signup_cannot_grant_admin(client):
    response = client.post("/auth/signup", json={"username": "mallory", "password": "x", "role": "ADMIN"})
    assert response.status_code == 400


def test_signup_rejects_duplicate_and_incomplete(client, make_user):
    make_user("frank")
    assert client.post("/auth/signup", json={"username": "frank", "password": "x"}).status_code == 409
    assert client.post("/auth/signup", json={"username": "", "password": "x"}).status_code == 400
    assert client.post("/auth/signup", json={"username": "nopass"}).status_code == 400


def test_login_token_authenticates_requests(client, make_user):
    make_user("frank", Role.AUTHOR, password="dune")
    response = client.post("/auth/login", json={"username": "frank", "password": "dune"})
    assert response.status_code == 200
    token = response.get_json()["token"]

    fresh = app.test_client()
    response = fresh.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.get_json()["username"] == "frank"
    assert response.get_json()["role"] == Role.AUTHOR


def test_login_rejects_bad_credentials(client, make_user):
    make_user("frank", password="dune")
    response = client.post("/auth/login", json={"username": "frank", "password": "wrong"})
    assert response.status_code == 401
    assert response.get_json() == {"error": "Invalid credentials"}
    assert client.post("/auth/login", json={"username": "ghost", "password": "x"}).status_code == 401


def test_session_login_and_logout(client, make_user):
    make_user("frank", password="dune")
    client.post("/auth/login", json={"username": "frank", "password": "dune"})
    assert client.get("/auth/me").status_code == 200

    assert client.post("/auth/logout").status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_tampered_token_is_anonymous(client):
    response = client.get("/auth/me", headers={"Authorization": "Bearer not-a-real-token"})
    assert response.status_code == 401


def test_token_for_deleted_user_is_anonymous(client, make_user):
    frank = make_user("frank")
    with app.app_context():
        db.session.delete(db.session.get(User, frank["id"]))
        db.session.commit()
    assert client.get("/auth/me", headers=frank["headers"]).status_code == 401


@pytest.mark.parametrize("method,path", [
    ("post", "/api/books/upload"),
    ("put", "/api/books/1"),
    ("delete", "/api/books/1"),
    ("post", "/api/authors"),
    ("get", "/api/anything-else"),
    ("get", "/auth/me"),
])
def test_anonymous_requests_outside_whitelist_are_unauthorized(client, method, path):
    response = getattr(client, method)(path)
    assert response.status_code == 401
    assert response.get_json() == {"error": "User not logged in"}


@pytest.mark.parametrize("path", [
    "/", "/api/books", "/api/authors", "/api/subjects", "/api/books/download/1",
])
def test_whitelisted_paths_skip_authentication(client, path):
    assert client.get(path).status_code in (200, 404)


def test_required_roles_defaults():
    assert security.required_roles("list_books", "/api/books") is security.ANYONE
    assert security.required_roles("upload_book", "/api/books/upload") == security.UPLOADERS
    assert security.required_roles(None, "/api/unknown") == security.SIGNED_IN
    assert security.required_roles(None, "/favicon.ico") is security.ANYONE


def test_cors_headers_for_configured_origin(client):
    response = client.options("/api/books/upload", headers={
        "Origin": "http://localhost:5173",
        "Access-Control-Request-Method": "POST",
    })
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
    assert "Authorization" in response.headers["Access-Control-Allow-Headers"]

    response = client.get("/api/books", headers={"Origin": "http://evil.example"})
    assert "Access-Control-Allow-Origin" not in response.headers


def test_ensure_admin_creates_bootstrap_user(monkeypatch):
    monkeypatch.setattr(library_app, "ADMIN_USERNAME", "root")
    monkeypatch.setattr(library_app, "ADMIN_PASSWORD", "toor")
    with app.app_context():
        admin = ensure_admin()
        assert admin.role == Role.ADMIN
        assert security.verify_password(admin, "toor")
        # second call reuses the row
        assert ensure_admin().id == admin.id
        assert User.query.count() == 1


def test_invalid_bearer_falls_back_to_session(client, make_user):
    make_user("frank", password="dune")
    client.post("/auth/login", json={"username": "frank", "password": "dune"})

    response = client.get("/auth/me", headers={"Authorization": "Bearer expired-or-garbage"})
    assert response.status_code == 200
    assert response.get_json()["username"] == "frank"


def test_logout_revokes_bearer_tokens(client, make_user):
    make_user("frank", password="dune")
    token = client.post("/auth/login", json={"username": "frank", "password": "dune"}).get_json()["token"]
    headers = {"Authorization": f"Bearer {token}"}

    spa = app.test_client()
    assert spa.get("/auth/me", headers=headers).status_code == 200
    assert spa.post("/auth/logout", headers=headers).status_code == 200
    assert spa.get("/auth/me", headers=headers).status_code == 401

    fresh = client.post("/auth/login", json={"username": "frank", "password": "dune"}).get_json()["token"]
    assert spa.get("/auth/me", headers={"Authorization": f"Bearer {fresh}"}).status_code == 200
