from datetime import date

from eduoffice.models import ClassSession, User


def test_create_admin_command(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=["create-admin", "boss", "secret123", "--branch", "hn"])
    assert result.exit_code == 0, result.output
    user = User.query.filter_by(username="boss").one()
    assert user.role == "ADMIN"
    assert user.is_system_wide is True
    assert user.primary_branch.code == "HN"


def test_generate_sessions_command(app, branches, make_class):
    classroom = make_class(branches[0].id, start_date=date(2026, 9, 7))
    result = app.test_cli_runner().invoke(args=["generate-sessions", str(classroom.id), "--count", "4"])
    assert result.exit_code == 0, result.output
    assert ClassSession.query.filter_by(class_id=classroom.id).count() == 4


def test_generate_sessions_for_missing_class(app):
    result = app.test_cli_runner().invoke(args=["generate-sessions", "404"])
    assert result.exit_code != 0
    assert "Class not found" in result.output


def test_trial_followups_command_without_candidates(app):
    result = app.test_cli_runner().invoke(args=["trial-followups"])
    assert result.exit_code == 0
    assert "0 trial students" in result.output
