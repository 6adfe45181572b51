"""
Workflow task lifecycle.

    create_task            -> pending, becomes the instance's current task
    assign_task            pending -> in_progress
    complete_current_task  pending | in_progress -> completed  (instance-addressed)
    cancel_task            pending | in_progress -> cancelled

Completing or cancelling the task the instance points at clears
``WorkflowInstance.current_task_id``; any other task leaves the pointer
alone. Each mutation runs in its own ``transaction()``.
"""

import logging
from datetime import datetime, timezone

from docflow.core.exceptions import NotFoundError, ValidationError
from docflow.models import db
from docflow.models.registry import Role, User
from docflow.models.workflow import (
    WorkflowInstance,
    WorkflowStep,
    WorkflowTask,
    validate_task_transition,
)
from docflow.services.helpers.transaction import transaction
from docflow.services.permission import user_holds_role, validate_task_permissions
from docflow.services.workflow_events import WorkflowEvent, WorkflowEventType

logger = logging.getLogger(__name__)


def _user_id(user):
    return getattr(user, "id", None)


class WorkflowTaskService:
    def __init__(self, events):
        self.events = events

    def _emit(self, event_type, instance_id, user, **data):
        return self.events.emit(WorkflowEvent(
            type=event_type,
            workflow_instance_id=instance_id,
            data=data,
            user_id=_user_id(user),
        ))

    def _emit_error(self, operation, error, user, instance_id=None, **data):
        logger.warning("Task %s failed: %s", operation, error,
                       extra={"workflow_instance_id": instance_id})
        return self._emit(WorkflowEventType.WORKFLOW_ERROR, instance_id, user,
                          operation=operation, error=error, **data)

    # ── Create ───────────────────────────────────────────────────────────

    def create_task(self, data, user):
        instance_id = data.get("workflow_instance_id")
        try:
            with transaction("WorkflowInstance", instance_id) as session:
                instance = session.get(WorkflowInstance, instance_id) if instance_id is not None else None
                if instance is None:
                    raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)

                step_id = data.get("step_id")
                step = session.get(WorkflowStep, step_id) if step_id is not None else None
                if step is None:
                    raise NotFoundError(resource="WorkflowStep", resource_id=step_id)

                role_id = data.get("assignee_role_id")
                if role_id is not None and session.get(Role, role_id) is None:
                    raise NotFoundError(resource="Role", resource_id=role_id)

                assignee_id = data.get("assignee_id")
                if assignee_id is not None and session.get(User, assignee_id) is None:
                    raise NotFoundError(resource="User", resource_id=assignee_id)

                if not instance.is_active:
                    raise ValidationError("Tasks can only be created on active workflows")
                if step.workflow_definition_id != instance.workflow_definition_id:
                    raise ValidationError("Step does not belong to this workflow")

                task = WorkflowTask(
                    workflow_instance_id=instance.id,
                    step_id=step.id,
                    assignee_role_id=role_id,
                    assignee_id=assignee_id,
                    status="pending",
                    comments=data.get("comments"),
                    due_date=data.get("due_date"),
                    metadata_json=dict(data.get("metadata") or {}),
                    created_by_id=_user_id(user),
                    updated_by_id=_user_id(user),
                )
                session.add(task)
                session.flush()

                instance.current_task_id = task.id
                instance.updated_by_id = _user_id(user)
                task_id = task.id
        except Exception as exc:
            self._emit_error("create_task", exc, user, instance_id=instance_id)
            raise

        logger.info("Created task %s on instance %s", task_id, instance_id,
                    extra={"workflow_instance_id": instance_id})
        return self.get_task(task_id)

    # ── Assign ───────────────────────────────────────────────────────────

    def assign_task(self, task_id, assignee_id, user):
        instance_id = None
        try:
            with transaction("WorkflowTask", task_id) as session:
                task = session.get(WorkflowTask, task_id)
                if task is None:
                    raise NotFoundError(resource="WorkflowTask", resource_id=task_id)
                instance_id = task.workflow_instance_id

                if task.status != "pending" or not validate_task_transition(task.status, "in_progress"):
                    raise ValidationError("Only pending tasks can be assigned")

                assignee = session.get(User, assignee_id) if assignee_id is not None else None
                if assignee is None:
                    raise NotFoundError(resource="User", resource_id=assignee_id)

                if task.assignee_role_id is not None and not user_holds_role(assignee, task.assignee_role_id):
                    raise ValidationError("Assignee does not have the required role for this task")

                task.assignee_id = assignee.id
                task.status = "in_progress"
                task.merge_metadata({
                    "assignedAt": datetime.now(timezone.utc).isoformat(),
                    "assignedBy": _user_id(user),
                })
                task.updated_by_id = _user_id(user)
                step_id = task.step_id
        except Exception as exc:
            self._emit_error("assign_task", exc, user, instance_id=instance_id, task_id=task_id)
            raise

        self._emit(
            WorkflowEventType.WORKFLOW_TASK_ASSIGNED, instance_id, user,
            task_id=task_id,
            assignee_id=assignee_id,
            step_id=step_id,
        )
        return self.get_task(task_id)

    # ── Complete ─────────────────────────────────────────────────────────

    def complete_current_task(self, workflow_instance_id, user, comment=None, metadata=None):
        try:
            with transaction("WorkflowInstance", workflow_instance_id) as session:
                instance = session.get(WorkflowInstance, workflow_instance_id)
                if instance is None:
                    raise NotFoundError(resource="WorkflowInstance", resource_id=workflow_instance_id)

                task = session.get(WorkflowTask, instance.current_task_id) if instance.current_task_id else None
                if task is None:
                    raise NotFoundError(resource="Current task for WorkflowInstance",
                                        resource_id=workflow_instance_id)

                validate_task_permissions(task, user)
                if not validate_task_transition(task.status, "completed"):
                    raise ValidationError(f"Task in status '{task.status}' cannot be completed")

                task.status = "completed"
                if comment is not None:
                    task.comments = comment
                task.merge_metadata({
                    **(metadata or {}),
                    "completedAt": datetime.now(timezone.utc).isoformat(),
                    "completedBy": _user_id(user),
                })
                task.updated_by_id = _user_id(user)
                instance.current_task_id = None
                instance.updated_by_id = _user_id(user)
                task_id = task.id
        except Exception as exc:
            self._emit_error("complete_current_task", exc, user, instance_id=workflow_instance_id)
            raise

        logger.info("Completed task %s on instance %s", task_id, workflow_instance_id,
                    extra={"workflow_instance_id": workflow_instance_id})
        return self.get_task(task_id)

    # ── Cancel ───────────────────────────────────────────────────────────

    def cancel_task(self, task_id, user, reason=None):
        instance_id = None
        try:
            with transaction("WorkflowTask", task_id) as session:
                task = session.get(WorkflowTask, task_id)
                if task is None:
                    raise NotFoundError(resource="WorkflowTask", resource_id=task_id)
                instance_id = task.workflow_instance_id

                if not validate_task_transition(task.status, "cancelled"):
                    raise ValidationError("Only pending or in-progress tasks can be cancelled")
                validate_task_permissions(task, user)

                task.status = "cancelled"
                task.merge_metadata({
                    "cancellationReason": reason,
                    "cancelledBy": _user_id(user),
                    "cancelledAt": datetime.now(timezone.utc).isoformat(),
                })
                task.updated_by_id = _user_id(user)

                instance = task.instance
                if instance.current_task_id == task.id:
                    instance.current_task_id = None
                    instance.updated_by_id = _user_id(user)
        except Exception as exc:
            self._emit_error("cancel_task", exc, user, instance_id=instance_id, task_id=task_id)
            raise

        logger.info("Cancelled task %s", task_id, extra={"workflow_instance_id": instance_id})
        return self.get_task(task_id)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_task(self, task_id):
        task = db.session.get(WorkflowTask, task_id)
        if task is None:
            raise NotFoundError(resource="WorkflowTask", resource_id=task_id)
        return task

    def get_current_task(self, workflow_instance_id):
        instance = db.session.get(WorkflowInstance, workflow_instance_id)
        if instance is None:
            raise NotFoundError(resource="WorkflowInstance", resource_id=workflow_instance_id)
        if instance.current_task_id is None:
            return None
        return db.session.get(WorkflowTask, instance.current_task_id)

    def find_tasks(self, status=None, assignee_id=None, assignee_role_id=None, step_id=None,
                   workflow_instance_id=None, due_date_before=None, due_date_after=None):
        q = WorkflowTask.query
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            q = q.filter(WorkflowTask.status.in_(statuses))
        if assignee_id is not None:
            q = q.filter(WorkflowTask.assignee_id == assignee_id)
        if assignee_role_id is not None:
            q = q.filter(WorkflowTask.assignee_role_id == assignee_role_id)
        if step_id is not None:
            q = q.filter(WorkflowTask.step_id == step_id)
        if workflow_instance_id is not None:
            q = q.filter(WorkflowTask.workflow_instance_id == workflow_instance_id)
        if due_date_before is not None:
            q = q.filter(WorkflowTask.due_date <= due_date_before)
        if due_date_after is not None:
            q = q.filter(WorkflowTask.due_date >= due_date_after)
        return q.order_by(WorkflowTask.id).all()
