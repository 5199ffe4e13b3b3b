import threading

import pytest

from eduoffice import create_app
from eduoffice.extensions import db
from eduoffice.leads.services import create_leads
from eduoffice.models import Branch, CodeSequence, Lead, User, UserBranch
from eduoffice.utils.authz import ActingUser
from eduoffice.utils.sequences import allocate_code, lock_key


WORKERS = 6


@pytest.fixture
def file_app(tmp_path):
    class FileConfig:
        SECRET_KEY = "test"
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'codes.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}
        SQLALCHEMY_TRACK_MODIFICATIONS = False
        TESTING = True
        WTF_CSRF_ENABLED = False
        RATELIMIT_ENABLED = False
        TELEGRAM_BOT_TOKEN = ""
        TELEGRAM_CHAT_ID = ""

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def test_concurrent_lead_creation_yields_distinct_increasing_codes(file_app):
    with file_app.app_context():
        north = Branch(code="HN", name="North campus")
        db.session.add(north)
        db.session.flush()
        user = User(username="ec_north", role="EC", password_hash="x", primary_branch_id=north.id)
        db.session.add(user)
        db.session.flush()
        db.session.add(UserBranch(user_id=user.id, branch_id=north.id, is_primary=True))
        db.session.commit()
        actor = ActingUser.from_user(user)

    barrier = threading.Barrier(WORKERS)
    codes, errors = [], []

    def worker(index):
        try:
            with file_app.app_context():
                barrier.wait()
                result, _ = create_leads(actor, "Parent", f"09100000{index:02d}", [{"name": f"Kid {index}"}])
                codes.append(result["codes"][0])
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(WORKERS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(codes) == [f"HN-{n:05d}" for n in range(1, WORKERS + 1)]
    with file_app.app_context():
        stored = [lead.code for lead in Lead.query.order_by(Lead.id).all()]
    assert stored == sorted(stored)
    assert len(set(stored)) == WORKERS


def test_rolled_back_allocation_returns_its_number(app):
    assert allocate_code("lead", "HN") == "HN-00001"
    db.session.commit()

    allocate_code("lead", "HN")
    db.session.rollback()

    assert allocate_code("lead", "HN") == "HN-00002"


def test_sequence_is_seeded_from_existing_codes(app, branches):
    north, _ = branches
    db.session.add(Lead(branch_id=north.id, code="HN-00041", customer_name="A", customer_phone="1", student_name="B"))
    db.session.commit()
    assert allocate_code("lead", "HN") == "HN-00042"


def test_lock_key_reuses_one_guard_row(app):
    lock_key("lead-phone:0901234567")
    db.session.commit()
    lock_key("lead-phone:0901234567")
    db.session.commit()
    assert CodeSequence.query.filter_by(key="lock:lead-phone:0901234567").count() == 1
