"""
Credentials, bearer tokens and the request access policy.

Every request passes through ``check_access`` before its handler runs. The
policy lives in one table, ``ACCESS_POLICY``, keyed by Flask endpoint name.
Book ownership depends on the loaded row, so handlers call
``can_modify_book`` once the book is fetched.
"""

from flask import abort, current_app, session
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from logger import get_logger
from models import Role, User, db

logger = get_logger(__name__)

TOKEN_SALT = "library-auth-token"

# Access levels
ANYONE = None
SIGNED_IN = frozenset(Role.ALL)
UPLOADERS = frozenset({Role.AUTHOR, Role.ADMIN})

ACCESS_POLICY = {
    "index": ANYONE,
    "signup": ANYONE,
    "login": ANYONE,
    "logout": ANYONE,
    "me": SIGNED_IN,
    # books
    "list_books": ANYONE,
    "download_book": ANYONE,
    "upload_book": UPLOADERS,
    "update_book": SIGNED_IN,
    "delete_book": SIGNED_IN,
    # authors
    "list_authors": ANYONE,
    "get_author": ANYONE,
    "add_author": SIGNED_IN,
    # TODO: restrict to ADMIN once the frontend sends a token on author edits
    "update_author": ANYONE,
    "delete_author": ANYONE,
    # subjects
    "list_subjects": ANYONE,
    "add_subject": ANYONE,
    "update_subject": ANYONE,
    "delete_subject": ANYONE,
}


class Identity:
    """The caller of the current request; ``user`` is None when anonymous."""

    def __init__(self, user=None):
        self.user = user

    @property
    def is_authenticated(self):
        return self.user is not None

    @property
    def username(self):
        return self.user.username if self.user else "anonymous"

    @property
    def role(self):
        return self.user.role if self.user else None

    @property
    def is_admin(self):
        return self.user is not None and self.user.is_admin

    def __repr__(self):
        return f"<Identity {self.username}>"


ANONYMOUS = Identity()


# ------------------- Passwords -------------------
def hash_password(password):
    return generate_password_hash(password)


def verify_password(user, password):
    return user is not None and check_password_hash(user.password, password)


# ------------------- Tokens -------------------
def _serializer():
    return URLSafeTimedSerializer(current_app.secret_key, salt=TOKEN_SALT)


def issue_token(user):
    return _serializer().dumps({"uid": user.id, "gen": user.token_generation or 0})


def load_token(token):
    """Return the payload of a token, or None if invalid/expired."""
    max_age = current_app.config["TOKEN_MAX_AGE"]
    try:
        return _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        logger.info("Expired token presented")
        return None
    except BadSignature:
        logger.warning("Invalid token presented")
        return None


def revoke_tokens(user):
    """Invalidate every token issued to user so far. Caller commits."""
    user.token_generation = (user.token_generation or 0) + 1


def _user_from_token(token):
    data = load_token(token)
    if not data:
        return None
    user = db.session.get(User, data.get("uid"))
    if user is None:
        return None
    if data.get("gen", 0) != (user.token_generation or 0):
        logger.info("Revoked token presented", username=user.username)
        return None
    return user


def resolve_identity(request):
    """Bearer token first; the session cookie when no valid token is sent."""
    user = None
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        user = _user_from_token(header[len("Bearer "):].strip())
    if user is None and "user_id" in session:
        user = db.session.get(User, session["user_id"])
    return Identity(user) if user else ANONYMOUS


# ------------------- Policy -------------------
def required_roles(endpoint, path):
    if endpoint in ACCESS_POLICY:
        return ACCESS_POLICY[endpoint]
    if path.startswith("/api/"):
        return SIGNED_IN
    return ANYONE


def check_access(identity, endpoint, path):
    """Abort with 401/403 when identity does not satisfy the endpoint's policy."""
    required = required_roles(endpoint, path)
    if required is ANYONE:
        return
    if not identity.is_authenticated:
        logger.warning("Anonymous request rejected", endpoint=endpoint, path=path)
        abort(401, description="User not logged in")
    if identity.role not in required:
        logger.warning(
            "Request forbidden by role",
            endpoint=endpoint,
            username=identity.username,
            role=identity.role,
        )
        abort(403, description="Your role does not allow this operation")


def can_modify_book(identity, book):
    return identity.is_admin or (
        identity.is_authenticated and book.owner_id == identity.user.id
    )
