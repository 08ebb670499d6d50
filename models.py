# models.py
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()


class Role:
    ADMIN = "ADMIN"
    AUTHOR = "AUTHOR"
    USER = "USER"

    ALL = (ADMIN, AUTHOR, USER)


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    email = db.Column(db.String(120), nullable=True)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=Role.USER)
    # bumped on logout; tokens carrying an older value are rejected
    token_generation = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    books = db.relationship("Book", back_populates="owner")

    @property
    def is_admin(self):
        return self.role == Role.ADMIN

    def to_dict(self):
        return {"id": self.id, "username": self.username, "role": self.role}

    def __repr__(self):
        return f"<User {self.username}>"


class Book(db.Model):
    __tablename__ = 'books'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    title = db.Column(db.String(500), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    # original client filename, sent back on download
    file_name = db.Column(db.String(500), nullable=False)
    file_path = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    owner = db.relationship("User", back_populates="books")

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "author": self.owner.username if self.owner else None,
            "ownerId": self.owner_id,
            "year": self.year,
            "fileName": self.file_name,
            "filePath": self.file_path,
        }

    def __repr__(self):
        return f"<Book {self.title}>"


class Author(db.Model):
    __tablename__ = 'authors'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(300), nullable=False)
    bio = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(100), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "bio": self.bio,
            "createdBy": self.created_by,
        }

    def __repr__(self):
        return f"<Author {self.name}>"


class Subject(db.Model):
    __tablename__ = 'subjects'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "description": self.description}

    def __repr__(self):
        return f"<Subject {self.name}>"
