"""
Workflow definition lifecycle: definitions, steps and transitions.

Nested create payload:

    {
        "code": "INVOICE_APPROVAL",
        "name": "Invoice approval",
        "steps": [
            {"name": "Draft", "status_code": "draft"},
            {"name": "Pending review", "key": "review", "status_id": 2},
            ...
        ],
        "transitions": [
            {"name": "Submit", "from_step": "Draft", "to_step": "review"},
            {"name": "Withdraw", "from_step": null, "to_step": "Draft"},
            ...
        ]
    }

Steps are addressed inside the payload by ``key`` (defaults to ``name``);
``from_step: null`` creates a global transition. After creation, steps and
transitions are managed individually by id.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import func

from docflow.core.exceptions import NotFoundError, ValidationError
from docflow.models import db
from docflow.models.registry import Role, Status
from docflow.models.workflow import (
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTask,
    WorkflowTransition,
)
from docflow.services.helpers.transaction import transaction
from docflow.services.workflow_events import WorkflowEvent, WorkflowEventType
from docflow.services.workflow_validation import validate_workflow_definition

logger = logging.getLogger(__name__)

_DEFINITION_FIELDS = ("name", "description", "is_active")
_STEP_FIELDS = ("name", "description", "position", "config", "is_active")
_TRANSITION_FIELDS = ("name", "description", "requires_comment", "conditions", "is_active")


def _user_id(user):
    return getattr(user, "id", None)


def _require(data, field):
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required")
    return value.strip() if isinstance(value, str) else value


def _resolve_status_id(session, data):
    """``status_id`` wins over ``status_code``; both absent -> None."""
    if data.get("status_id") is not None:
        if session.get(Status, data["status_id"]) is None:
            raise NotFoundError(resource="Status", resource_id=data["status_id"])
        return data["status_id"]
    if data.get("status_code"):
        status = Status.query.filter_by(code=data["status_code"]).first()
        if status is None:
            raise NotFoundError(resource="Status", resource_id=data["status_code"])
        return status.id
    return None


def _check_role(session, role_id):
    if role_id is not None and session.get(Role, role_id) is None:
        raise NotFoundError(resource="Role", resource_id=role_id)
    return role_id


class WorkflowDefinitionService:
    def __init__(self, events=None):
        self.events = events

    @contextmanager
    def _reporting(self, operation, definition_id=None, user=None, **data):
        """Publish WORKFLOW_ERROR for any exception raised in the block, then re-raise."""
        try:
            yield
        except Exception as exc:
            logger.warning(
                "Workflow definition %s failed: %s", operation, exc,
                extra={"event_type": WorkflowEventType.WORKFLOW_ERROR.value},
            )
            if self.events is not None:
                self.events.emit(WorkflowEvent(
                    type=WorkflowEventType.WORKFLOW_ERROR,
                    data={"operation": operation, "error": exc,
                          "workflow_definition_id": definition_id, **data},
                    user_id=_user_id(user),
                ))
            raise

    # ═════════════════════════════════════════════════════════════════════
    # DEFINITIONS
    # ═════════════════════════════════════════════════════════════════════

    def create(self, data, user):
        with self._reporting("create", user=user, code=data.get("code")):
            code = _require(data, "code")
            name = _require(data, "name")
            validate_workflow_definition(data, user).raise_if_invalid()

            with transaction("WorkflowDefinition") as session:
                definition = WorkflowDefinition(
                    code=code,
                    name=name,
                    description=data.get("description"),
                    is_active=data.get("is_active", True),
                    created_by_id=_user_id(user),
                    updated_by_id=_user_id(user),
                )
                session.add(definition)
                session.flush()

                steps_by_key = {}
                for index, step_data in enumerate(data.get("steps") or []):
                    step = self._build_step(session, definition, step_data, user, default_position=index)
                    key = step_data.get("key") or step.name
                    if key in steps_by_key:
                        raise ValidationError(f"Duplicate step key '{key}'")
                    steps_by_key[key] = step
                session.flush()

                seen_edges = set()
                for tr_data in data.get("transitions") or []:
                    to_key = tr_data.get("to_step")
                    if to_key not in steps_by_key:
                        raise ValidationError(f"Transition target step '{to_key}' is not defined")
                    from_key = tr_data.get("from_step")
                    if from_key is not None and from_key not in steps_by_key:
                        raise ValidationError(f"Transition source step '{from_key}' is not defined")

                    from_step_id = steps_by_key[from_key].id if from_key is not None else None
                    to_step_id = steps_by_key[to_key].id
                    if (from_step_id, to_step_id) in seen_edges:
                        raise ValidationError(
                            f"Duplicate transition from '{from_key or '*'}' to '{to_key}'"
                        )
                    seen_edges.add((from_step_id, to_step_id))
                    self._build_transition(session, definition, tr_data, from_step_id, to_step_id, user)

                session.flush()
                definition_id = definition.id

            logger.info("Created workflow definition %s (%s)", code, definition_id)
            if self.events is not None:
                self.events.emit(WorkflowEvent(
                    type=WorkflowEventType.WORKFLOW_CREATED,
                    data={"workflow_definition_id": definition_id, "code": code},
                    user_id=_user_id(user),
                ))
            return self.find_one(definition_id)

    def find_all(self, active_only=False):
        q = WorkflowDefinition.query
        if active_only:
            q = q.filter_by(is_active=True)
        return q.order_by(WorkflowDefinition.created_at.desc(), WorkflowDefinition.id.desc()).all()

    def find_one(self, definition_id):
        definition = db.session.get(WorkflowDefinition, definition_id)
        if definition is None:
            raise NotFoundError(resource="WorkflowDefinition", resource_id=definition_id)
        return definition

    def update(self, definition_id, data, user):
        with self._reporting("update", definition_id, user):
            with transaction("WorkflowDefinition", definition_id) as session:
                definition = self.find_one(definition_id)

                new_code = data.get("code")
                if new_code and new_code != definition.code:
                    taken = WorkflowDefinition.query.filter(
                        WorkflowDefinition.code == new_code,
                        WorkflowDefinition.id != definition.id,
                    ).first()
                    if taken is not None:
                        raise ValidationError(f"Workflow with code {new_code} already exists")
                    definition.code = new_code

                for field in _DEFINITION_FIELDS:
                    if field in data:
                        setattr(definition, field, data[field])
                if not (definition.name or "").strip():
                    raise ValidationError("name is required")
                definition.updated_by_id = _user_id(user)
                session.flush()

            logger.info("Updated workflow definition %s", definition_id)
            return self.find_one(definition_id)

    def has_active_instances(self, definition_id):
        count = (
            db.session.query(func.count(WorkflowInstance.id))
            .join(WorkflowDefinition, WorkflowInstance.workflow_definition_id == WorkflowDefinition.id)
            .filter(WorkflowDefinition.id == definition_id, WorkflowInstance.status == "active")
            .scalar()
        )
        return count > 0

    def remove(self, definition_id):
        """Delete a definition with its graph and finished instances."""
        with self._reporting("remove", definition_id):
            with transaction("WorkflowDefinition", definition_id) as session:
                definition = self.find_one(definition_id)
                if self.has_active_instances(definition_id):
                    raise ValidationError("Cannot delete workflow with active instances")

                for instance in WorkflowInstance.query.filter_by(workflow_definition_id=definition_id):
                    session.delete(instance)
                session.delete(definition)

            logger.info("Deleted workflow definition %s", definition_id)

    # ═════════════════════════════════════════════════════════════════════
    # STEPS
    # ═════════════════════════════════════════════════════════════════════

    def _build_step(self, session, definition, data, user, default_position=0):
        step = WorkflowStep(
            workflow_definition_id=definition.id,
            name=_require(data, "name"),
            description=data.get("description"),
            position=data.get("position", default_position),
            status_id=_resolve_status_id(session, data),
            assignee_role_id=_check_role(session, data.get("assignee_role_id")),
            config=dict(data.get("config") or {}),
            is_active=data.get("is_active", True),
            created_by_id=_user_id(user),
            updated_by_id=_user_id(user),
        )
        session.add(step)
        return step

    def _get_step(self, definition, step_id):
        step = db.session.get(WorkflowStep, step_id)
        if step is None or step.workflow_definition_id != definition.id:
            raise NotFoundError(resource="WorkflowStep", resource_id=step_id)
        return step

    def add_step(self, definition_id, data, user):
        with self._reporting("add_step", definition_id, user):
            with transaction("WorkflowDefinition", definition_id) as session:
                definition = self.find_one(definition_id)
                next_position = max((s.position for s in definition.steps), default=-1) + 1
                step = self._build_step(session, definition, data, user, default_position=next_position)
                session.flush()
                step_id = step.id
            logger.info("Added step %s to workflow definition %s", step_id, definition_id)
            return db.session.get(WorkflowStep, step_id)

    def update_step(self, definition_id, step_id, data, user):
        with self._reporting("update_step", definition_id, user, step_id=step_id):
            with transaction("WorkflowStep", step_id) as session:
                definition = self.find_one(definition_id)
                step = self._get_step(definition, step_id)
                for field in _STEP_FIELDS:
                    if field in data:
                        setattr(step, field, data[field])
                if "status_id" in data or "status_code" in data:
                    step.status_id = _resolve_status_id(session, data)
                if "assignee_role_id" in data:
                    step.assignee_role_id = _check_role(session, data["assignee_role_id"])
                if not (step.name or "").strip():
                    raise ValidationError("name is required")
                step.updated_by_id = _user_id(user)
                session.flush()
            return db.session.get(WorkflowStep, step_id)

    def remove_step(self, definition_id, step_id):
        with self._reporting("remove_step", definition_id, step_id=step_id):
            with transaction("WorkflowStep", step_id) as session:
                definition = self.find_one(definition_id)
                step = self._get_step(definition, step_id)

                referenced = WorkflowTransition.query.filter(
                    (WorkflowTransition.from_step_id == step.id) | (WorkflowTransition.to_step_id == step.id)
                ).count()
                if referenced:
                    raise ValidationError("Cannot delete a step that is referenced by transitions")

                in_use = (
                    WorkflowInstance.query.filter_by(current_step_id=step.id).count()
                    + WorkflowTask.query.filter_by(step_id=step.id).count()
                )
                if in_use:
                    raise ValidationError("Cannot delete a step that is used by workflow instances or tasks")

                definition.steps.remove(step)
                session.delete(step)
            logger.info("Removed step %s from workflow definition %s", step_id, definition_id)

    # ═════════════════════════════════════════════════════════════════════
    # TRANSITIONS
    # ═════════════════════════════════════════════════════════════════════

    def _build_transition(self, session, definition, data, from_step_id, to_step_id, user):
        transition = WorkflowTransition(
            workflow_definition_id=definition.id,
            name=_require(data, "name"),
            description=data.get("description"),
            from_step_id=from_step_id,
            to_step_id=to_step_id,
            required_role_id=_check_role(session, data.get("required_role_id")),
            requires_comment=bool(data.get("requires_comment", False)),
            conditions=data.get("conditions") or None,
            is_active=data.get("is_active", True),
            created_by_id=_user_id(user),
            updated_by_id=_user_id(user),
        )
        session.add(transition)
        return transition

    def add_transition(self, definition_id, data, user):
        with self._reporting("add_transition", definition_id, user):
            with transaction("WorkflowDefinition", definition_id) as session:
                definition = self.find_one(definition_id)

                to_step_id = _require(data, "to_step_id")
                self._get_step(definition, to_step_id)
                from_step_id = data.get("from_step_id")
                if from_step_id is not None:
                    self._get_step(definition, from_step_id)

                duplicate = WorkflowTransition.query.filter_by(
                    workflow_definition_id=definition.id,
                    from_step_id=from_step_id,
                    to_step_id=to_step_id,
                ).first()
                if duplicate is not None:
                    raise ValidationError("A transition between these steps already exists")

                transition = self._build_transition(session, definition, data, from_step_id, to_step_id, user)
                session.flush()
                transition_id = transition.id
            logger.info("Added transition %s to workflow definition %s", transition_id, definition_id)
            return db.session.get(WorkflowTransition, transition_id)

    def remove_transition(self, definition_id, transition_id):
        with self._reporting("remove_transition", definition_id, transition_id=transition_id):
            with transaction("WorkflowTransition", transition_id) as session:
                definition = self.find_one(definition_id)
                transition = db.session.get(WorkflowTransition, transition_id)
                if transition is None or transition.workflow_definition_id != definition.id:
                    raise NotFoundError(resource="WorkflowTransition", resource_id=transition_id)
                definition.transitions.remove(transition)
                session.delete(transition)
            logger.info("Removed transition %s from workflow definition %s", transition_id, definition_id)
