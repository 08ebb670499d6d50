import os
import json
from flask import Flask, request, session, jsonify, send_file, abort
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv

from logger import setup_logging, get_logger
from models import db, Role, User, Book, Author, Subject
import security
import storage

# ------------------- Load .env -------------------
load_dotenv()

setup_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "console"))
logger = get_logger(__name__)

# ------------------- Flask Setup -------------------
app = Flask(__name__, static_folder=None)
app.secret_key = os.getenv("SECRET_KEY", "change-this-secret-key")

app.config["UPLOAD_DIR"] = os.path.abspath(os.getenv("UPLOAD_DIR", "uploads"))
app.config["CORS_ORIGIN"] = os.getenv("CORS_ORIGIN", "http://localhost:5173")
app.config["TOKEN_MAX_AGE"] = int(os.getenv("TOKEN_MAX_AGE", "86400"))

# ------------------- ADMIN CONFIG -------------------
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

# ------------------- Database -------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///library.db")

if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

if DATABASE_URL.startswith("postgresql") and "sslmode" not in DATABASE_URL:
    DATABASE_URL += ("&" if "?" in DATABASE_URL else "?") + "sslmode=require"

app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

db.init_app(app)

# Self-service signup never grants ADMIN
SIGNUP_ROLES = {"USER": Role.USER, "STUDENT": Role.USER, "AUTHOR": Role.AUTHOR}


def ensure_admin():
    if not (ADMIN_USERNAME and ADMIN_PASSWORD):
        return None
    admin = User.query.filter_by(username=ADMIN_USERNAME).first()
    if not admin:
        admin = User(
            username=ADMIN_USERNAME,
            password=security.hash_password(ADMIN_PASSWORD),
            role=Role.ADMIN
        )
        db.session.add(admin)
        db.session.commit()
        logger.info("Bootstrap admin created", username=ADMIN_USERNAME)
    return admin


# ------------------- Create Tables + Admin -------------------
with app.app_context():
    db.create_all()
    ensure_admin()

logger.info(
    "Application configured",
    upload_dir=app.config["UPLOAD_DIR"],
    cors_origin=app.config["CORS_ORIGIN"]
)


# =================== MIDDLEWARE ===================
@app.before_request
def authorize_request():
    if request.method == "OPTIONS":
        return None
    identity = security.resolve_identity(request)
    security.check_access(identity, request.endpoint, request.path)
    # handlers take the caller as an explicit argument
    if request.view_args is not None:
        request.view_args["identity"] = identity
    return None


@app.after_request
def add_cors_headers(response):
    origin = request.headers.get("Origin")
    if origin and origin == app.config["CORS_ORIGIN"]:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        response.headers["Access-Control-Expose-Headers"] = "Content-Disposition"
        response.vary.add("Origin")
    return response


# =================== ERRORS ===================
@app.errorhandler(HTTPException)
def handle_http_error(e):
    response = e.get_response()
    response.data = json.dumps({"error": e.description})
    response.content_type = "application/json"
    return response


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    db.session.rollback()
    logger.exception("Unhandled error", path=request.path, method=request.method)
    return jsonify({"error": "An unexpected error occurred"}), 500


# ------------------- Helpers -------------------
def _json_body():
    return request.get_json(silent=True) or {}


def _auth_payload(user, message):
    return {
        "message": message,
        "token": security.issue_token(user),
        "role": user.role,
        "username": user.username
    }


def _book_form():
    title = (request.form.get("title") or "").strip()
    year = request.form.get("year", type=int)
    if not title or year is None:
        abort(400, description="Title and an integer year are required")
    return title, year


def _store_file(file):
    try:
        return storage.save_upload(file, app.config["UPLOAD_DIR"])
    except OSError:
        logger.exception("Failed to save file", file_name=file.filename)
        abort(500, description="Failed to save file")


def _commit_or_discard(written_path):
    """Commit the session; if that fails, drop the file written for this request."""
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        if written_path:
            storage.delete_file(written_path)
        raise


# =================== PUBLIC ROUTES ===================
@app.route("/")
def index(identity):
    return jsonify({"message": "Online Library API"})


# =================== AUTH ROUTES ===================
@app.route("/auth/signup", methods=["POST"])
def signup(identity):
    data = _json_body()
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    if not username or not password:
        abort(400, description="Username and password are required")

    role = SIGNUP_ROLES.get(str(data.get("role") or Role.USER).upper())
    if role is None:
        abort(400, description="Role must be USER or AUTHOR")

    if User.query.filter_by(username=username).first():
        abort(409, description="Username already exists")

    user = User(
        username=username,
        email=data.get("email"),
        password=security.hash_password(password),
        role=role
    )
    db.session.add(user)
    db.session.commit()

    session["user_id"] = user.id
    logger.info("User registered", username=username, role=role)
    return jsonify(_auth_payload(user, "Registered successfully"))


@app.route("/auth/login", methods=["POST"])
def login(identity):
    data = _json_body()
    user = User.query.filter_by(username=data.get("username")).first()
    if not security.verify_password(user, data.get("password") or ""):
        logger.warning("Failed login", username=data.get("username"))
        abort(401, description="Invalid credentials")

    session["user_id"] = user.id
    logger.info("User logged in", username=user.username)
    return jsonify(_auth_payload(user, "Logged in successfully"))


@app.route("/auth/logout", methods=["POST"])
def logout(identity):
    """Clear the session and revoke every bearer token the caller holds."""
    if identity.is_authenticated:
        security.revoke_tokens(identity.user)
        db.session.commit()
        logger.info("User logged out", username=identity.username)
    session.clear()
    return jsonify({"message": "Logged out successfully"})


@app.route("/auth/me")
def me(identity):
    return jsonify(identity.user.to_dict())


# =================== BOOK ROUTES ===================
@app.route("/api/books", methods=["GET"])
def list_books(identity):
    books = Book.query.order_by(Book.id).all()
    return jsonify([b.to_dict() for b in books])


@app.route("/api/books/upload", methods=["POST"])
def upload_book(identity):
    title, year = _book_form()
    file = request.files.get("file")
    if not file or not file.filename:
        abort(400, description="A file is required")

    file_name, file_path = _store_file(file)
    book = Book(
        title=title,
        year=year,
        owner=identity.user,
        file_name=file_name,
        file_path=file_path
    )
    db.session.add(book)
    _commit_or_discard(file_path)

    logger.info("Book uploaded", book_id=book.id, username=identity.username)
    return jsonify({"message": "Book uploaded successfully", "bookId": book.id})


@app.route("/api/books/<int:book_id>", methods=["PUT"])
def update_book(identity, book_id):
    book = db.get_or_404(Book, book_id, description="Book not found")
    if not security.can_modify_book(identity, book):
        abort(403, description="You cannot edit this book")

    book.title, book.year = _book_form()

    # the previous file stays on disk
    new_path = None
    file = request.files.get("file")
    if file and file.filename:
        book.file_name, book.file_path = _store_file(file)
        new_path = book.file_path

    _commit_or_discard(new_path)

    logger.info("Book updated", book_id=book.id, username=identity.username)
    return jsonify({"message": "Book updated successfully", "bookId": book.id})


@app.route("/api/books/<int:book_id>", methods=["DELETE"])
def delete_book(identity, book_id):
    book = db.get_or_404(Book, book_id, description="Book not found")
    if not security.can_modify_book(identity, book):
        abort(403, description="You cannot delete this book")

    file_path = book.file_path
    db.session.delete(book)
    db.session.commit()
    storage.delete_file(file_path)

    logger.info("Book deleted", book_id=book_id, username=identity.username)
    return jsonify({"message": "Book deleted successfully"})


@app.route("/api/books/download/<int:book_id>", methods=["GET"])
def download_book(identity, book_id):
    book = db.get_or_404(Book, book_id, description="Book not found")
    if not storage.file_exists(book.file_path):
        abort(404, description="File not found")

    return send_file(
        book.file_path,
        mimetype="application/octet-stream",
        as_attachment=True,
        download_name=book.file_name
    )


# =================== AUTHOR ROUTES ===================
@app.route("/api/authors", methods=["GET"])
def list_authors(identity):
    return jsonify([a.to_dict() for a in Author.query.order_by(Author.id).all()])


@app.route("/api/authors/<int:author_id>", methods=["GET"])
def get_author(identity, author_id):
    author = db.get_or_404(Author, author_id, description="Author not found")
    return jsonify(author.to_dict())


@app.route("/api/authors", methods=["POST"])
def add_author(identity):
    data = _json_body()
    if not data.get("name"):
        abort(400, description="Author name is required")

    author = Author(name=data["name"], bio=data.get("bio"), created_by=identity.username)
    db.session.add(author)
    db.session.commit()
    return jsonify({"message": "Author added successfully", "author": author.to_dict()})


@app.route("/api/authors/<int:author_id>", methods=["PUT"])
def update_author(identity, author_id):
    author = db.get_or_404(Author, author_id, description="Author not found")
    data = _json_body()
    if not data.get("name"):
        abort(400, description="Author name is required")

    author.name = data["name"]
    author.bio = data.get("bio")
    db.session.commit()
    return jsonify({"message": "Author updated successfully", "author": author.to_dict()})


@app.route("/api/authors/<int:author_id>", methods=["DELETE"])
def delete_author(identity, author_id):
    author = db.get_or_404(Author, author_id, description="Author not found")
    db.session.delete(author)
    db.session.commit()
    return jsonify({"message": "Author deleted successfully"})


# =================== SUBJECT ROUTES ===================
def _subject_fields():
    data = _json_body()
    # the frontend posts "title"
    name = data.get("name") or data.get("title")
    if not name:
        abort(400, description="Subject name is required")
    return name, data.get("description")


@app.route("/api/subjects", methods=["GET"])
def list_subjects(identity):
    return jsonify([s.to_dict() for s in Subject.query.order_by(Subject.id).all()])


@app.route("/api/subjects", methods=["POST"])
def add_subject(identity):
    name, description = _subject_fields()
    subject = Subject(name=name, description=description)
    db.session.add(subject)
    db.session.commit()
    return jsonify({"message": "Subject added successfully", "subject": subject.to_dict()})


@app.route("/api/subjects/<int:subject_id>", methods=["PUT"])
def update_subject(identity, subject_id):
    subject = db.get_or_404(Subject, subject_id, description="Subject not found")
    subject.name, subject.description = _subject_fields()
    db.session.commit()
    return jsonify({"message": "Subject updated successfully", "subject": subject.to_dict()})


@app.route("/api/subjects/<int:subject_id>", methods=["DELETE"])
def delete_subject(identity, subject_id):
    subject = db.get_or_404(Subject, subject_id, description="Subject not found")
    db.session.delete(subject)
    db.session.commit()
    return jsonify({"message": "Subject deleted successfully"})


# =================== RUN ===================
if __name__ == "__main__":
    app.run(debug=os.getenv("FLASK_DEBUG") == "1")
