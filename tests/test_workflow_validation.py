"""
Rule checks: transition validation, definition validation, role-match
policies and task permissions. Nothing here writes through a service.
"""

from types import SimpleNamespace

import pytest

from docflow.core.exceptions import ValidationError
from docflow.models import db
from docflow.models.registry import Permission, Role
from docflow.models.workflow import (
    AnyStep,
    SpecificStep,
    WorkflowTask,
    validate_instance_transition,
    validate_task_transition,
)
from docflow.services.permission import (
    ROLE_MATCH_ROLE_OR_PERMISSION,
    ROLE_MATCH_STRICT,
    can_manage_workflows,
    get_role_match_policy,
    user_holds_role,
    validate_task_permissions,
)
from docflow.services.workflow_validation import (
    MSG_CODE_TAKEN,
    MSG_COMMENT_REQUIRED,
    MSG_INVALID_FOR_STEP,
    MSG_MISSING_ROLE,
    MSG_NO_PERMISSION,
    MSG_NO_STEPS,
    MSG_NO_TRANSITIONS,
    MSG_NOT_ACTIVE,
    ValidationResult,
    validate_workflow_definition,
    validate_workflow_transition,
)


# ═════════════════════════════════════════════════════════════════════════════
# STATE MACHINES & ORIGIN
# ═════════════════════════════════════════════════════════════════════════════


class TestStateMachines:
    def test_instance_transitions(self):
        assert validate_instance_transition("active", "completed")
        assert validate_instance_transition("active", "cancelled")
        assert not validate_instance_transition("completed", "active")
        assert not validate_instance_transition("cancelled", "completed")
        assert not validate_instance_transition("bogus", "active")

    def test_task_transitions(self):
        assert validate_task_transition("pending", "in_progress")
        assert validate_task_transition("pending", "completed")
        assert validate_task_transition("in_progress", "cancelled")
        assert not validate_task_transition("in_progress", "pending")
        assert not validate_task_transition("completed", "cancelled")


class TestTransitionOrigin:
    def test_any_step_matches_everything(self):
        assert AnyStep().matches(1)
        assert AnyStep().matches(None)
        assert AnyStep().step_id is None

    def test_specific_step(self):
        origin = SpecificStep(3)
        assert origin.matches(3)
        assert not origin.matches(4)
        assert not origin.matches(None)

    def test_transition_origin_property(self, invoice):
        assert invoice.submit.origin == SpecificStep(invoice.draft.id)
        assert not invoice.submit.is_global
        invoice.submit.from_step_id = None
        assert invoice.submit.origin == AnyStep()
        assert invoice.submit.is_global


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITION VALIDATION
# ═════════════════════════════════════════════════════════════════════════════


class TestValidateWorkflowTransition:
    def test_valid_transition(self, started, invoice, users):
        result = validate_workflow_transition(started, invoice.submit, users.author)
        assert result.is_valid
        assert result.errors == []

    def test_inactive_instance(self, started, invoice, users):
        started.status = "completed"
        result = validate_workflow_transition(started, invoice.submit, users.author)
        assert result.errors == [MSG_NOT_ACTIVE]

    def test_wrong_step_role_and_comment_aggregate(self, started, invoice, users):
        result = validate_workflow_transition(started, invoice.approve, users.author)
        assert not result.is_valid
        assert result.errors == [MSG_INVALID_FOR_STEP, MSG_MISSING_ROLE, MSG_COMMENT_REQUIRED]

    def test_whitespace_comment_counts_as_missing(self, started, invoice, users):
        started.current_step_id = invoice.review.id
        result = validate_workflow_transition(started, invoice.approve, users.admin, comment=" \t")
        assert result.errors == [MSG_COMMENT_REQUIRED]

    def test_wildcard_transition_matches_any_step(self, started, invoice, users):
        invoice.approve.from_step_id = None
        result = validate_workflow_transition(started, invoice.approve, users.admin, comment="ok")
        assert result.is_valid

    def test_unknown_condition_keys_ignored(self, started, invoice, users):
        invoice.submit.conditions = {"someFutureRule": True}
        assert validate_workflow_transition(started, invoice.submit, users.author).is_valid

    def test_raise_if_invalid_joins_messages(self):
        result = ValidationResult()
        result.add("first")
        result.add("second")
        with pytest.raises(ValidationError) as exc:
            result.raise_if_invalid()
        assert str(exc.value) == "first, second"
        assert exc.value.errors == ["first", "second"]

    def test_raise_if_invalid_noop_when_valid(self):
        ValidationResult().raise_if_invalid()


# ═════════════════════════════════════════════════════════════════════════════
# ROLE MATCH POLICIES
# ═════════════════════════════════════════════════════════════════════════════


class TestRoleMatchPolicy:
    @pytest.fixture()
    def legacy(self, roles):
        """Role id 500 and permission id 500 seeded to line up; reviewer holds the permission."""
        role = Role(id=500, name="legacy")
        permission = Permission(id=500, codename="legacy_approve")
        db.session.add_all([role, permission])
        roles.reviewer.grant(permission)
        db.session.commit()
        return role

    def test_default_policy_is_strict(self, app):
        assert get_role_match_policy() == ROLE_MATCH_STRICT

    def test_unknown_policy_falls_back_to_strict(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "WORKFLOW_ROLE_MATCH_POLICY", "anything-goes")
        assert get_role_match_policy() == ROLE_MATCH_STRICT

    def test_strict_requires_exact_role(self, legacy, users):
        assert user_holds_role(users.admin, users.admin.role_id)
        assert not user_holds_role(users.reviewer, legacy.id, policy=ROLE_MATCH_STRICT)

    def test_role_or_permission_accepts_matching_permission_id(self, legacy, users):
        assert user_holds_role(users.reviewer, legacy.id, policy=ROLE_MATCH_ROLE_OR_PERMISSION)
        assert not user_holds_role(users.author, legacy.id, policy=ROLE_MATCH_ROLE_OR_PERMISSION)

    def test_policy_read_from_config(self, app, legacy, started, invoice, users, monkeypatch):
        invoice.submit.required_role_id = legacy.id
        db.session.commit()

        result = validate_workflow_transition(started, invoice.submit, users.reviewer)
        assert result.errors == [MSG_MISSING_ROLE]

        monkeypatch.setitem(app.config, "WORKFLOW_ROLE_MATCH_POLICY", ROLE_MATCH_ROLE_OR_PERMISSION)
        assert validate_workflow_transition(started, invoice.submit, users.reviewer).is_valid

    def test_user_without_role(self):
        assert not user_holds_role(SimpleNamespace(role=None), 1)
        assert not user_holds_role(None, 1)


# ═════════════════════════════════════════════════════════════════════════════
# DEFINITION VALIDATION
# ═════════════════════════════════════════════════════════════════════════════


class TestValidateWorkflowDefinition:
    def test_valid_payload(self, users):
        data = {"code": "NEW", "steps": [{"name": "A"}], "transitions": [{"from_step": None, "to_step": "A"}]}
        assert validate_workflow_definition(data, users.admin).is_valid

    def test_all_errors_aggregated(self, invoice, users):
        data = {"code": "INVOICE_APPROVAL", "steps": [], "transitions": []}
        result = validate_workflow_definition(data, users.author)
        assert result.errors == [MSG_CODE_TAKEN, MSG_NO_STEPS, MSG_NO_TRANSITIONS, MSG_NO_PERMISSION]

    def test_own_code_is_not_a_conflict_on_update(self, invoice, users):
        data = {"code": "INVOICE_APPROVAL", "steps": [{}], "transitions": [{}]}
        result = validate_workflow_definition(data, users.admin, exclude_id=invoice.definition.id)
        assert result.is_valid

    def test_manage_workflow_permission_suffices(self, users):
        assert can_manage_workflows(users.manager)
        assert can_manage_workflows(users.admin)
        assert not can_manage_workflows(users.reviewer)
        assert not can_manage_workflows(None)


# ═════════════════════════════════════════════════════════════════════════════
# TASK PERMISSIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestValidateTaskPermissions:
    def test_unassigned_unbound_task_is_open_to_anyone(self, users):
        validate_task_permissions(WorkflowTask(), users.author)

    def test_assigned_to_someone_else(self, users):
        task = WorkflowTask(assignee_id=users.reviewer.id)
        with pytest.raises(ValidationError, match="Only assigned user can modify this task"):
            validate_task_permissions(task, users.author)

    def test_admin_may_act_on_someone_elses_task(self, users):
        validate_task_permissions(WorkflowTask(assignee_id=users.reviewer.id), users.admin)

    def test_role_bound_task(self, users, roles):
        task = WorkflowTask(assignee_role_id=roles.reviewer.id)
        validate_task_permissions(task, users.reviewer)
        with pytest.raises(ValidationError, match="does not have required role"):
            validate_task_permissions(task, users.author)

    def test_role_rule_applies_to_admin_too(self, users, roles):
        task = WorkflowTask(assignee_id=users.reviewer.id, assignee_role_id=roles.reviewer.id)
        with pytest.raises(ValidationError, match="does not have required role"):
            validate_task_permissions(task, users.admin)
