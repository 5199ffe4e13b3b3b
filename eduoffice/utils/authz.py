from functools import wraps

from flask import abort, current_app, g
from flask_login import current_user

from eduoffice.errors import PermissionDenied, ValidationFailure
from eduoffice.extensions import db
from eduoffice.models import Branch, UserBranch


ROLE_ALIASES = {
    "SALE": "EC",
    "SALES": "EC",
    "OWNER": "GDV",
}

SYSTEM_WIDE_ROLES = {"ADMIN", "GDV"}

# Capability table: engines only ever ask actor.can(...), never compare role names.
ROLE_CAPABILITIES = {
    "ADMIN": {
        "attendance.mark_any",
        "leads.manage",
        "leads.view_all",
        "students.manage",
        "classes.manage",
        "fees.manage",
        "payments.confirm",
        "checkins.view_all",
        "users.manage",
    },
    "GDV": {
        "attendance.mark_any",
        "leads.manage",
        "leads.view_all",
        "students.manage",
        "classes.manage",
        "fees.manage",
        "payments.confirm",
        "checkins.view_all",
        "users.manage",
    },
    "OM": {
        "attendance.mark_any",
        "leads.manage",
        "leads.view_all",
        "students.manage",
        "classes.manage",
        "fees.manage",
        "payments.confirm",
        "checkins.view_all",
    },
    "QLCS": {
        "attendance.mark_any",
        "students.manage",
        "classes.manage",
        "fees.manage",
        "payments.confirm",
        "checkins.view_all",
    },
    "CM": {"attendance.mark_any", "students.manage", "classes.manage"},
    "HOEC": {"leads.manage", "leads.view_all", "students.manage", "fees.manage", "payments.confirm"},
    "EC": {"leads.manage", "students.manage", "fees.manage"},
    "ACCOUNTANT": {"fees.manage", "payments.confirm"},
    "TEACHER": set(),
}


def normalized_role(role):
    raw = (role or "").strip().upper()
    return ROLE_ALIASES.get(raw, raw)


class ActingUser:
    """Request-scoped view of the caller: identity, branch set and capabilities."""

    def __init__(self, id, role, is_system_wide=False, branch_ids=None, primary_branch_id=None):
        self.id = id
        self.role = normalized_role(role)
        self.is_system_wide = bool(is_system_wide) or self.role in SYSTEM_WIDE_ROLES
        self.branch_ids = sorted({b for b in (branch_ids or []) if b is not None})
        if primary_branch_id is None and self.branch_ids:
            primary_branch_id = self.branch_ids[0]
        self.primary_branch_id = primary_branch_id
        if primary_branch_id is not None and primary_branch_id not in self.branch_ids:
            self.branch_ids = sorted(set(self.branch_ids) | {primary_branch_id})
        self.capabilities = frozenset(ROLE_CAPABILITIES.get(self.role, set()))

    def can(self, capability):
        return capability in self.capabilities

    def can_access_branch(self, branch_id):
        if self.is_system_wide:
            return True
        return branch_id is not None and branch_id in self.branch_ids

    def to_dict(self):
        return {
            "id": self.id,
            "role": self.role,
            "is_system_wide": self.is_system_wide,
            "branch_ids": list(self.branch_ids),
            "primary_branch_id": self.primary_branch_id,
            "capabilities": sorted(self.capabilities),
        }

    @classmethod
    def from_user(cls, user):
        links = UserBranch.query.filter_by(user_id=user.id).all()
        primary = user.primary_branch_id
        if primary is None:
            primary = next((link.branch_id for link in links if link.is_primary), None)
        return cls(
            id=user.id,
            role=user.role,
            is_system_wide=user.is_system_wide,
            branch_ids=[link.branch_id for link in links],
            primary_branch_id=primary,
        )


def acting_user():
    """Resolve the caller once per request and cache it on ``g``."""
    cached = g.get("_acting_user")
    if cached is not None:
        return cached
    if not getattr(current_user, "is_authenticated", False):
        abort(401)
    actor = ActingUser.from_user(current_user)
    g._acting_user = actor
    return actor


def _strict_scope():
    return bool(current_app.config.get("STRICT_BRANCH_SCOPE"))


def _fallback_branch(actor):
    if actor.primary_branch_id is not None:
        return actor.primary_branch_id
    if actor.branch_ids:
        return actor.branch_ids[0]
    return None


def resolve_branch_scope(actor, requested_branch_id=None):
    """Branch filter for reads. ``None`` means every branch (system-wide callers only)."""
    if actor.is_system_wide:
        return requested_branch_id or None

    if requested_branch_id and requested_branch_id in actor.branch_ids:
        return requested_branch_id
    if requested_branch_id and _strict_scope():
        raise PermissionDenied("You do not have access to this branch.")

    fallback = _fallback_branch(actor)
    if fallback is None:
        raise PermissionDenied("No branch is assigned to this account.")
    return fallback


def resolve_create_branch(actor, requested_branch_id=None):
    """Branch that new rows are written to; never ``None``."""
    if requested_branch_id and actor.can_access_branch(requested_branch_id):
        return requested_branch_id
    if requested_branch_id and _strict_scope():
        raise PermissionDenied("You do not have access to this branch.")

    fallback = _fallback_branch(actor)
    if fallback is None:
        if actor.is_system_wide:
            raise ValidationFailure("branch_id is required.")
        raise PermissionDenied("No branch is assigned to this account.")
    return fallback


def ensure_branch_access(actor, branch_id):
    if not actor.can_access_branch(branch_id):
        raise PermissionDenied("You do not have access to this branch.")


def branch_code(branch_id, default="HS"):
    if branch_id is None:
        return default
    branch = db.session.get(Branch, branch_id)
    if branch is None or not branch.code:
        return default
    return branch.code.strip().upper()


def capability_required(*capabilities):
    wanted = set(capabilities)

    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            actor = acting_user()
            if not any(actor.can(cap) for cap in wanted):
                raise PermissionDenied("Your role is not allowed to perform this action.")
            return view_func(*args, **kwargs)

        return wrapped

    return decorator
