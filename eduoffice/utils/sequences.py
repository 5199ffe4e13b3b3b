import re

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from eduoffice.extensions import db
from eduoffice.models import CodeSequence, Lead, Student, TrialStudent


CODE_WIDTH = 5

# kind -> (model, code column) used to seed a fresh sequence from existing rows
CODE_TARGETS = {
    "lead": (Lead, Lead.code),
    "student": (Student, Student.student_code),
    "trial": (TrialStudent, TrialStudent.code),
}

_SUFFIX_RE = re.compile(r"(\d+)$")


def format_code(prefix, value, width=CODE_WIDTH):
    return f"{prefix}-{value:0{width}d}"


def highest_suffix(kind, prefix):
    model, column = CODE_TARGETS[kind]
    codes = db.session.execute(select(column).where(column.like(f"{prefix}-%"))).scalars().all()
    best = 0
    for code in codes:
        match = _SUFFIX_RE.search(code[len(prefix) + 1 :])
        if match:
            best = max(best, int(match.group(1)))
    return best


def _insert_ignore(key, start):
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(CodeSequence).values(key=key, last_value=start).on_conflict_do_nothing(index_elements=["key"])
    elif dialect == "sqlite":
        stmt = sqlite_insert(CodeSequence).values(key=key, last_value=start).on_conflict_do_nothing(index_elements=["key"])
    else:
        stmt = insert(CodeSequence).values(key=key, last_value=start).prefix_with("IGNORE")
    db.session.execute(stmt)


def _locked_row(key, seed):
    stmt = select(CodeSequence).where(CodeSequence.key == key).with_for_update()
    row = db.session.execute(stmt).scalar_one_or_none()
    if row is None:
        _insert_ignore(key, seed() if callable(seed) else seed)
        row = db.session.execute(stmt).scalar_one()
    return row


def lock_key(key):
    """Hold a row lock on ``key`` until the caller's transaction ends.

    Used to serialize check-then-insert sequences that no unique index covers,
    such as the duplicate phone check on leads.
    """
    return _locked_row(f"lock:{key}", 0)


def allocate_code(kind, prefix):
    """Reserve the next ``{prefix}-NNNNN`` code for ``kind`` inside the caller's transaction.

    The sequence row is locked (``SELECT ... FOR UPDATE``) until the caller
    commits or rolls back, so concurrent allocations for the same prefix are
    serialized and a rolled-back allocation gives its number back.
    """
    row = _locked_row(f"{kind}:{prefix}", lambda: highest_suffix(kind, prefix))
    row.last_value += 1
    db.session.flush()
    return format_code(prefix, row.last_value)
