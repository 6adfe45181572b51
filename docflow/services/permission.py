"""
Workflow role / permission checks.

Two role-match policies are supported, selected by the
``WORKFLOW_ROLE_MATCH_POLICY`` config key:

    strict              user.role.id == required_role_id
    role_or_permission  user.role.id == required_role_id
                        OR required_role_id is the id of one of the
                        permissions granted to user.role

``role_or_permission`` treats a permission id as if it were a role id. It is
kept for deployments whose role/permission ids were seeded to line up;
everyone else should stay on ``strict`` (the default).

Usage:
    from docflow.services.permission import user_holds_role, validate_task_permissions

    if not user_holds_role(user, transition.required_role_id):
        ...
    validate_task_permissions(task, user)   # raises ValidationError
"""

import logging

from flask import current_app, has_app_context

from docflow.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

ROLE_MATCH_STRICT = "strict"
ROLE_MATCH_ROLE_OR_PERMISSION = "role_or_permission"
ROLE_MATCH_POLICIES = frozenset({ROLE_MATCH_STRICT, ROLE_MATCH_ROLE_OR_PERMISSION})

ADMIN_ROLE = "admin"
MANAGE_WORKFLOW_PERMISSION = "manage_workflow"


def get_role_match_policy() -> str:
    """Return the configured role-match policy, falling back to ``strict``."""
    if not has_app_context():
        return ROLE_MATCH_STRICT
    policy = current_app.config.get("WORKFLOW_ROLE_MATCH_POLICY", ROLE_MATCH_STRICT)
    if policy not in ROLE_MATCH_POLICIES:
        logger.warning("Unknown WORKFLOW_ROLE_MATCH_POLICY %r, using strict", policy)
        return ROLE_MATCH_STRICT
    return policy


def user_holds_role(user, required_role_id, policy: str | None = None) -> bool:
    """Return True if ``user`` satisfies ``required_role_id`` under ``policy``."""
    if user is None or user.role is None:
        return False
    if user.role.id == required_role_id:
        return True
    if (policy or get_role_match_policy()) == ROLE_MATCH_ROLE_OR_PERMISSION:
        return any(p.id == required_role_id for p in user.role.permissions)
    return False


def is_admin(user) -> bool:
    return bool(user and user.role_name == ADMIN_ROLE)


def can_manage_workflows(user) -> bool:
    """Admins, or any role granted the ``manage_workflow`` permission."""
    if is_admin(user):
        return True
    if user is None or user.role is None:
        return False
    return any(p.codename == MANAGE_WORKFLOW_PERMISSION for p in user.role.permissions)


def validate_task_permissions(task, user) -> None:
    """Assert ``user`` may modify ``task``; raise ValidationError otherwise.

    Both rules apply independently:
    - a task assigned to someone else can only be touched by an admin;
    - a task bound to a role requires the acting user to hold that role.
    """
    if task.assignee_id is not None and task.assignee_id != user.id and not is_admin(user):
        raise ValidationError("Only assigned user can modify this task")

    if task.assignee_role_id is not None and not user_holds_role(user, task.assignee_role_id):
        raise ValidationError("User does not have required role for this task")
