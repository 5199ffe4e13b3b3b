from datetime import date, time

import pytest
from argon2 import PasswordHasher

from eduoffice import create_app
from eduoffice.extensions import db
from eduoffice.models import Branch, Classroom, ClassSession, Package, Student, User, UserBranch
from eduoffice.utils.authz import ActingUser


class TestConfig:
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    TESTING = True
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    TOKEN_MAX_AGE = 3600
    STRICT_BRANCH_SCOPE = False
    TELEGRAM_BOT_TOKEN = ""
    TELEGRAM_CHAT_ID = ""


password_hasher = PasswordHasher()


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def branches(app):
    north = Branch(code="HN", name="North campus")
    south = Branch(code="SG", name="South campus")
    db.session.add_all([north, south])
    db.session.commit()
    return north, south


@pytest.fixture
def make_user(app):
    def _make(username, role="EC", branch_ids=(), primary=None, system_wide=False, password=None):
        user = User(
            username=username,
            full_name=username.title(),
            role=role,
            is_system_wide=system_wide,
            primary_branch_id=primary,
            password_hash=password_hasher.hash(password) if password else "x",
            is_active=True,
        )
        db.session.add(user)
        db.session.flush()
        for branch_id in branch_ids:
            db.session.add(UserBranch(user_id=user.id, branch_id=branch_id, is_primary=branch_id == primary))
        db.session.commit()
        return user

    return _make


@pytest.fixture
def actor_for(app):
    return ActingUser.from_user


@pytest.fixture
def make_student(app):
    def _make(branch_id, code, **fields):
        student = Student(branch_id=branch_id, student_code=code, full_name=fields.pop("full_name", "Student " + code), **fields)
        db.session.add(student)
        db.session.commit()
        return student

    return _make


@pytest.fixture
def make_class(app):
    def _make(branch_id, teacher_id=None, start=time(8, 0), end=time(9, 30), **fields):
        classroom = Classroom(
            branch_id=branch_id,
            class_name=fields.pop("class_name", "Robotics A1"),
            teacher_id=teacher_id,
            start_time=start,
            end_time=end,
            start_date=fields.pop("start_date", date(2026, 9, 7)),
            **fields,
        )
        db.session.add(classroom)
        db.session.commit()
        return classroom

    return _make


@pytest.fixture
def make_session(app):
    def _make(classroom, number, on, **fields):
        session = ClassSession(
            class_id=classroom.id,
            session_number=number,
            session_date=on,
            start_time=classroom.start_time,
            end_time=classroom.end_time,
            teacher_id=classroom.teacher_id,
            **fields,
        )
        db.session.add(session)
        db.session.commit()
        return session

    return _make


@pytest.fixture
def make_package(app):
    def _make(name="3 months", months=3, sessions_count=24, base_price=1_000_000, **fields):
        package = Package(name=name, months=months, sessions_count=sessions_count, base_price=base_price, **fields)
        db.session.add(package)
        db.session.commit()
        return package

    return _make
