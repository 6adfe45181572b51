"""
Workflow orchestration.

Drives a document through a WorkflowDefinition:

    start_workflow       document + definition -> active instance on the
                         initial step, document adopts the step's status
    transition_workflow  fire one transition; the instance moves to the
                         target step and auto-completes on a terminal step
    cancel_workflow      active -> cancelled (terminal)

Every mutation runs inside ``transaction()``: all reads and writes share
one session, commit on success, roll back and re-raise on error. Events are
published on the injected bus after the commit; on failure a
``WORKFLOW_ERROR`` event is published after the rollback and the original
exception propagates to the caller.
"""

import logging
from datetime import datetime, timezone

from docflow.core.exceptions import NotFoundError, ValidationError
from docflow.models import db
from docflow.models.registry import DOCUMENT_STATUSES, Document
from docflow.models.workflow import (
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTransition,
    validate_instance_transition,
)
from docflow.services.helpers.transaction import transaction
from docflow.services.workflow_events import WorkflowEvent, WorkflowEventType
from docflow.services.workflow_validation import validate_workflow_transition

logger = logging.getLogger(__name__)


def _user_id(user):
    return getattr(user, "id", None)


def apply_step_status(document, step):
    """Copy the step's bound status code onto the document, if it has one."""
    code = step.status_code if step is not None else None
    if code is None:
        return None
    if code not in DOCUMENT_STATUSES:
        logger.warning(
            "Step %s binds status %r which is not a known document status", step.id, code,
        )
    document.status = code
    return code


class WorkflowService:
    def __init__(self, events, validator=validate_workflow_transition):
        self.events = events
        self.validator = validator

    # ── Event helpers ────────────────────────────────────────────────────

    def _emit(self, event_type, instance_id, user, **data):
        return self.events.emit(WorkflowEvent(
            type=event_type,
            workflow_instance_id=instance_id,
            data=data,
            user_id=_user_id(user),
        ))

    def _emit_error(self, operation, error, user, instance_id=None, **data):
        logger.warning(
            "Workflow %s failed: %s", operation, error,
            extra={"workflow_instance_id": instance_id, "event_type": WorkflowEventType.WORKFLOW_ERROR.value},
        )
        return self._emit(
            WorkflowEventType.WORKFLOW_ERROR, instance_id, user,
            operation=operation, error=error, **data,
        )

    # ── Start ────────────────────────────────────────────────────────────

    def start_workflow(self, document_id, workflow_definition_id, user, metadata=None):
        try:
            with transaction("Document", document_id) as session:
                document = session.get(Document, document_id, with_for_update=True)
                if document is None:
                    raise NotFoundError(resource="Document", resource_id=document_id)

                definition = session.get(WorkflowDefinition, workflow_definition_id)
                if definition is None or not definition.is_active:
                    raise NotFoundError(resource="WorkflowDefinition", resource_id=workflow_definition_id)

                active = (
                    WorkflowInstance.query
                    .filter_by(document_id=document_id, status="active")
                    .first()
                )
                if active is not None:
                    raise ValidationError(
                        "Document already has an active workflow",
                        details={"workflow_instance_id": active.id},
                    )

                initial = definition.initial_step()
                if initial is None:
                    raise ValidationError("Workflow definition has no initial step")

                instance = WorkflowInstance(
                    workflow_definition_id=definition.id,
                    document_id=document.id,
                    current_step_id=initial.id,
                    status="active",
                    metadata_json=dict(metadata or {}),
                    created_by_id=_user_id(user),
                    updated_by_id=_user_id(user),
                )
                session.add(instance)
                document_status = apply_step_status(document, initial)
                session.flush()
                instance_id = instance.id
        except Exception as exc:
            self._emit_error("start_workflow", exc, user, document_id=document_id,
                             workflow_definition_id=workflow_definition_id)
            raise

        logger.info(
            "Started workflow %s on document %s at step %s",
            workflow_definition_id, document_id, initial.id,
            extra={"workflow_instance_id": instance_id},
        )
        self._emit(
            WorkflowEventType.WORKFLOW_STARTED, instance_id, user,
            document_id=document_id,
            workflow_definition_id=workflow_definition_id,
            current_step_id=initial.id,
            document_status=document_status,
        )
        return self.get_workflow_instance(instance_id)

    # ── Transition ───────────────────────────────────────────────────────

    def transition_workflow(self, instance_id, transition_id, user, comment=None, metadata=None):
        try:
            with transaction("WorkflowInstance", instance_id) as session:
                instance = session.get(WorkflowInstance, instance_id, with_for_update=True)
                if instance is None:
                    raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)

                transition = session.get(WorkflowTransition, transition_id)
                if transition is None:
                    raise NotFoundError(resource="WorkflowTransition", resource_id=transition_id)

                self.validator(instance, transition, user, comment).raise_if_invalid()

                now = datetime.now(timezone.utc)
                from_step_id = instance.current_step_id
                to_step = transition.to_step

                document_status = apply_step_status(instance.document, to_step)
                instance.current_step_id = to_step.id
                instance.merge_metadata({
                    **(metadata or {}),
                    "lastTransition": {
                        "transitionId": transition.id,
                        "fromStepId": from_step_id,
                        "toStepId": to_step.id,
                        "at": now.isoformat(),
                        "by": _user_id(user),
                        "comment": comment,
                    },
                })
                instance.updated_by_id = _user_id(user)

                completed = instance.definition.is_terminal_step(to_step.id)
                if completed and validate_instance_transition(instance.status, "completed"):
                    instance.status = "completed"
                    instance.completed_at = now

                session.flush()
                document_id = instance.document_id
                document_status = instance.document.status
        except Exception as exc:
            self._emit_error("transition_workflow", exc, user, instance_id=instance_id,
                             transition_id=transition_id)
            raise

        logger.info(
            "Instance %s moved %s -> %s via transition %s",
            instance_id, from_step_id, to_step.id, transition_id,
            extra={"workflow_instance_id": instance_id},
        )
        self._emit(
            WorkflowEventType.WORKFLOW_STEP_CHANGED, instance_id, user,
            document_id=document_id,
            transition_id=transition_id,
            from_step_id=from_step_id,
            to_step_id=to_step.id,
            comment=comment,
            document_status=document_status,
        )
        if completed:
            self._emit(
                WorkflowEventType.WORKFLOW_COMPLETED, instance_id, user,
                document_id=document_id,
                final_step_id=to_step.id,
                document_status=document_status,
            )
        return self.get_workflow_instance(instance_id)

    # ── Cancel ───────────────────────────────────────────────────────────

    def cancel_workflow(self, instance_id, user, reason):
        try:
            with transaction("WorkflowInstance", instance_id) as session:
                instance = session.get(WorkflowInstance, instance_id, with_for_update=True)
                if instance is None:
                    raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
                if not validate_instance_transition(instance.status, "cancelled"):
                    raise ValidationError("Only active workflows can be cancelled")
                if not (reason or "").strip():
                    raise ValidationError("A cancellation reason is required")

                instance.status = "cancelled"
                instance.merge_metadata({
                    "cancellationReason": reason,
                    "cancelledBy": _user_id(user),
                    "cancelledAt": datetime.now(timezone.utc).isoformat(),
                })
                instance.updated_by_id = _user_id(user)
                session.flush()
                document_id = instance.document_id
        except Exception as exc:
            self._emit_error("cancel_workflow", exc, user, instance_id=instance_id)
            raise

        logger.info("Cancelled workflow instance %s", instance_id, extra={"workflow_instance_id": instance_id})
        self._emit(
            WorkflowEventType.WORKFLOW_CANCELLED, instance_id, user,
            document_id=document_id,
            reason=reason,
        )
        return self.get_workflow_instance(instance_id)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_workflow_instance(self, instance_id):
        instance = db.session.get(WorkflowInstance, instance_id)
        if instance is None:
            raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
        return instance

    def get_active_workflow_instances(self, document_id=None, workflow_definition_id=None,
                                      current_step_id=None):
        q = WorkflowInstance.query.filter_by(status="active")
        if document_id is not None:
            q = q.filter_by(document_id=document_id)
        if workflow_definition_id is not None:
            q = q.filter_by(workflow_definition_id=workflow_definition_id)
        if current_step_id is not None:
            q = q.filter_by(current_step_id=current_step_id)
        return q.order_by(WorkflowInstance.id).all()

    def get_available_transitions(self, instance_id):
        """Active transitions whose origin matches the instance's current step."""
        instance = self.get_workflow_instance(instance_id)
        if not instance.is_active:
            return []
        return [
            t for t in instance.definition.transitions
            if t.is_active and t.origin.matches(instance.current_step_id)
        ]
