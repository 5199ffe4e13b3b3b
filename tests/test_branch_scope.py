import pytest

from eduoffice.errors import PermissionDenied
from eduoffice.models import Student
from eduoffice.students.services import create_student, students_query
from eduoffice.utils.authz import ActingUser, normalized_role, resolve_branch_scope, resolve_create_branch


def test_role_aliases_are_normalized():
    assert normalized_role(" sale ") == "EC"
    assert normalized_role("owner") == "GDV"
    assert ActingUser(id=1, role="owner").is_system_wide is True
    assert ActingUser(id=2, role="EC").can("leads.view_all") is False


def test_out_of_scope_branch_falls_back_to_primary(app, branches, make_user, actor_for):
    north, south = branches
    user = make_user("ec_north", branch_ids=[north.id], primary=north.id)
    actor = actor_for(user)

    assert resolve_branch_scope(actor, south.id) == north.id
    assert resolve_create_branch(actor, south.id) == north.id
    assert resolve_branch_scope(actor, None) == north.id


def test_strict_mode_rejects_out_of_scope_branch(app, branches, make_user, actor_for):
    north, south = branches
    app.config["STRICT_BRANCH_SCOPE"] = True
    actor = actor_for(make_user("ec_strict", branch_ids=[north.id], primary=north.id))

    with pytest.raises(PermissionDenied):
        resolve_branch_scope(actor, south.id)
    with pytest.raises(PermissionDenied):
        resolve_create_branch(actor, south.id)
    assert resolve_branch_scope(actor, north.id) == north.id


def test_system_wide_reads_every_branch(app, branches, make_user, actor_for):
    north, south = branches
    admin = actor_for(make_user("root", role="ADMIN", system_wide=True))

    assert resolve_branch_scope(admin, None) is None
    assert resolve_branch_scope(admin, south.id) == south.id


def test_student_lists_are_isolated_between_branches(app, branches, make_user, actor_for):
    north, south = branches
    north_actor = actor_for(make_user("ec_n", branch_ids=[north.id], primary=north.id))
    south_actor = actor_for(make_user("ec_s", branch_ids=[south.id], primary=south.id))

    create_student(north_actor, "Nguyen An")
    create_student(south_actor, "Le Binh")

    north_rows = students_query(north_actor, {"branch_id": south.id}).all()
    assert [s.full_name for s in north_rows] == ["Nguyen An"]
    assert Student.query.count() == 2


def test_multi_branch_user_can_pick_secondary_branch(app, branches, make_user, actor_for):
    north, south = branches
    actor = actor_for(make_user("om_both", role="OM", branch_ids=[north.id, south.id], primary=north.id))

    created = create_student(actor, "Pham Chi", branch_id=south.id)
    assert created["student_code"] == "SG-00001"
    assert resolve_branch_scope(actor, south.id) == south.id
