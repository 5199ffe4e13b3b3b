from argon2 import PasswordHasher
import click
from flask import Flask, jsonify, request
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from eduoffice.attendance.routes import attendance_bp
from eduoffice.auth.routes import auth_bp
from eduoffice.classes.routes import classes_bp
from eduoffice.config import Config
from eduoffice.errors import ServiceError
from eduoffice.extensions import db, limiter, login_manager, migrate
from eduoffice.fees.routes import fees_bp
from eduoffice.leads.routes import leads_bp
from eduoffice.models import Branch, User, UserBranch
from eduoffice.staff.routes import staff_bp
from eduoffice.students.routes import students_bp
from eduoffice.utils.authz import ActingUser, normalized_role
from eduoffice.utils.tokens import read_token


password_hasher = PasswordHasher()

# Service jobs run outside a request; they act as a system-wide account.
SYSTEM_ACTOR = ActingUser(id=None, role="ADMIN", is_system_wide=True)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    if app.config.get("TRUST_PROXY"):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(leads_bp)
    app.register_blueprint(students_bp)
    app.register_blueprint(classes_bp)
    app.register_blueprint(attendance_bp)
    app.register_blueprint(fees_bp)
    app.register_blueprint(staff_bp)

    register_auth(app)
    register_error_handlers(app)
    register_cli(app)
    if app.config.get("AUTO_CREATE_TABLES"):
        ensure_runtime_tables(app)
    ensure_bootstrap_admin(app)

    @app.route("/health")
    def healthcheck():
        return {"status": "ok"}

    return app


def register_auth(app):
    @login_manager.request_loader
    def load_user_from_request(req):
        header = req.headers.get("Authorization") or ""
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        user_id = read_token(token.strip())
        if user_id is None:
            return None
        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        return (
            jsonify({"success": False, "error": "unauthorized", "message": "Authentication required."}),
            401,
        )


def _error_body(kind, message, payload=None, status=500):
    return jsonify({"success": False, "error": kind, "message": message, "data": payload}), status


def register_error_handlers(app):
    @app.errorhandler(ServiceError)
    def handle_service_error(exc):
        if exc.status_code >= 500:
            app.logger.error("%s on %s: %s", exc.kind, request.path, exc.message)
        else:
            app.logger.info("%s on %s: %s", exc.kind, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(exc):
        db.session.rollback()
        app.logger.warning("Integrity error on %s: %s", request.path, exc.orig)
        return _error_body("conflict", "The record conflicts with existing data.", status=409)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        kind = (exc.name or "error").lower().replace(" ", "_")
        return _error_body(kind, exc.description, status=exc.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s", request.path)
        return _error_body("internal_error", "Unexpected server error.", status=500)


def _upsert_admin(username, password, branch_code=None):
    branch = None
    if branch_code:
        code = branch_code.strip().upper()
        branch = Branch.query.filter_by(code=code).first()
        if branch is None:
            branch = Branch(code=code, name=code)
            db.session.add(branch)
            db.session.flush()

    user = User.query.filter_by(username=username).first()
    created = user is None
    if created:
        user = User(username=username, role="ADMIN", password_hash=password_hasher.hash(password))
        db.session.add(user)
    else:
        user.password_hash = password_hasher.hash(password)
        user.role = "ADMIN"
    user.is_system_wide = True
    user.is_active = True
    if branch is not None:
        user.primary_branch_id = branch.id
        db.session.flush()
        if UserBranch.query.filter_by(user_id=user.id, branch_id=branch.id).first() is None:
            db.session.add(UserBranch(user_id=user.id, branch_id=branch.id, is_primary=True))
    db.session.commit()
    return user, created


def register_cli(app):
    @app.cli.command("create-admin")
    @click.argument("username")
    @click.argument("password")
    @click.option("--branch", "branch_code", default=None, help="Branch code to attach as primary branch.")
    def create_admin(username, password, branch_code):
        """Create or reset a system-wide ADMIN account."""
        if len(password) < 6:
            raise click.BadParameter("password must be at least 6 characters")
        user, created = _upsert_admin(username.strip(), password, branch_code)
        click.echo(f"Admin {'created' if created else 'updated'}: {user.username} (role {normalized_role(user.role)})")

    @app.cli.command("generate-sessions")
    @click.argument("class_id", type=int)
    @click.option("--count", default=15, show_default=True, type=int)
    def generate_sessions_cmd(class_id, count):
        """Append weekly sessions to a class."""
        from eduoffice.classes.services import generate_sessions

        try:
            created = generate_sessions(None, class_id, count)
        except ServiceError as exc:
            raise click.ClickException(exc.message) from exc
        click.echo(f"{len(created)} sessions generated for class {class_id}.")

    @app.cli.command("attendance-warnings")
    @click.option("--branch", "branch_id", default=None, type=int)
    @click.option("--notify/--no-notify", default=False, help="Send the summary to the staff chat.")
    def attendance_warnings_cmd(branch_id, notify):
        """List students at or above the late+absent threshold."""
        from eduoffice.attendance.services import students_with_warnings
        from eduoffice.utils.notifier import dispatch_events

        items = students_with_warnings(SYSTEM_ACTOR, branch_id)
        for item in items:
            click.echo(
                f"{item['student_code']}\t{item['full_name']}\t{item['class_name']}\t"
                f"late={item['late_count']} absent={item['absent_count']}"
            )
        click.echo(f"{len(items)} students flagged.")
        if notify and items:
            lines = [f"<b>Attendance warnings ({len(items)})</b>"]
            lines += [f"{i['student_code']}: late {i['late_count']}, absent {i['absent_count']}" for i in items]
            dispatch_events([{"channel": "telegram", "message": "\n".join(lines)}])

    @app.cli.command("trial-followups")
    @click.option("--branch", "branch_id", default=None, type=int)
    @click.option("--min-sessions", default=2, show_default=True, type=int)
    def trial_followups_cmd(branch_id, min_sessions):
        """Notify sales about trial students ready for a follow-up call."""
        from eduoffice.leads.services import trial_followups
        from eduoffice.utils.notifier import dispatch_events

        items, events = trial_followups(min_sessions=min_sessions, branch_id=branch_id)
        for item in items:
            click.echo(f"{item['code']}\t{item['full_name']}\t{item['sessions_attended']}/{item['max_sessions']}")
        delivered = dispatch_events(events)
        click.echo(f"{len(items)} trial students to follow up, {delivered} notifications sent.")


def ensure_runtime_tables(app):
    """Ensure core tables exist at runtime (useful on fresh databases)."""
    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            app.logger.warning("Runtime db.create_all() failed: %s", exc)


def ensure_bootstrap_admin(app):
    """Create the first ADMIN account from BOOTSTRAP_ADMIN_USERNAME/PASSWORD when no admin exists."""
    with app.app_context():
        try:
            username = (app.config.get("BOOTSTRAP_ADMIN_USERNAME") or "").strip()
            raw_password = (app.config.get("BOOTSTRAP_ADMIN_PASSWORD") or "").strip()
            if not username or not raw_password:
                return
            if User.query.filter_by(role="ADMIN").first() is not None:
                return
            _upsert_admin(username, raw_password)
            app.logger.info("Bootstrap admin %s created", username)
        except Exception as exc:
            db.session.rollback()
            app.logger.warning("Bootstrap admin failed: %s", exc)
