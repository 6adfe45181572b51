"""
Workflow notification strategy.

Consumes workflow events and fans them out to the enabled channels:

    WORKFLOW_TASK_ASSIGNED                         -> task assignee
    WORKFLOW_STEP_CHANGED / COMPLETED / CANCELLED  -> document creator

Channels are read from configuration (``WORKFLOW_EMAIL_NOTIFICATIONS``,
``WORKFLOW_INAPP_NOTIFICATIONS``, ``WORKFLOW_SMS_NOTIFICATIONS``). A missing
key takes its default; any other lookup failure degrades to in-app only.

In-app messages are persisted as ``Notification`` rows. Email and SMS are
written to the log; delivery providers are not part of this service.
"""

import logging

from docflow.core.exceptions import NotFoundError
from docflow.models import db
from docflow.models.workflow import WorkflowInstance, WorkflowTask
from docflow.services.configuration_service import get_configuration_value
from docflow.services.notification import NotificationService
from docflow.services.workflow_events import WorkflowEventType

logger = logging.getLogger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_IN_APP = "in_app"
CHANNEL_SMS = "sms"

CHANNEL_CONFIG_KEYS = {
    CHANNEL_EMAIL: "WORKFLOW_EMAIL_NOTIFICATIONS",
    CHANNEL_IN_APP: "WORKFLOW_INAPP_NOTIFICATIONS",
    CHANNEL_SMS: "WORKFLOW_SMS_NOTIFICATIONS",
}

DEFAULT_CHANNELS = {CHANNEL_EMAIL: False, CHANNEL_IN_APP: True, CHANNEL_SMS: False}
IN_APP_ONLY = {CHANNEL_EMAIL: False, CHANNEL_IN_APP: True, CHANNEL_SMS: False}

_STATUS_EVENTS = (
    WorkflowEventType.WORKFLOW_STEP_CHANGED,
    WorkflowEventType.WORKFLOW_COMPLETED,
    WorkflowEventType.WORKFLOW_CANCELLED,
)


class WorkflowNotificationStrategy:
    def __init__(self, config_lookup=get_configuration_value):
        self._config_lookup = config_lookup

    def register(self, events):
        """Subscribe the strategy's handlers on ``events``."""
        events.on(WorkflowEventType.WORKFLOW_TASK_ASSIGNED, self.handle_task_assigned)
        for event_type in _STATUS_EVENTS:
            events.on(event_type, self.handle_status_changed)

    # ── Channel resolution ───────────────────────────────────────────────

    def get_notification_channels(self):
        try:
            channels = {}
            for channel, key in CHANNEL_CONFIG_KEYS.items():
                try:
                    value = self._config_lookup(key)
                except NotFoundError:
                    value = None
                channels[channel] = DEFAULT_CHANNELS[channel] if value is None else bool(value)
            return channels
        except Exception:
            logger.exception("Notification channel lookup failed, falling back to in-app only")
            return dict(IN_APP_ONLY)

    # ── Event handlers ───────────────────────────────────────────────────

    def handle_task_assigned(self, event):
        task = db.session.get(WorkflowTask, event.data.get("task_id"))
        if task is None:
            logger.warning("Task-assigned event for unknown task %s", event.data.get("task_id"))
            return
        self.notify_task_assigned(task, assigned_by_id=event.user_id)

    def handle_status_changed(self, event):
        instance = db.session.get(WorkflowInstance, event.workflow_instance_id)
        if instance is None:
            logger.warning("Status event for unknown instance %s", event.workflow_instance_id)
            return
        if event.type == WorkflowEventType.WORKFLOW_STEP_CHANGED and instance.status == "completed":
            # the completion notice covers the final step
            return
        self.notify_workflow_status_changed(instance, event.type, event.data)

    # ── Notifications ────────────────────────────────────────────────────

    def notify_task_assigned(self, task, assigned_by_id=None):
        if task.assignee_id is None:
            return []
        step_name = task.step.name if task.step else f"step {task.step_id}"
        return self.send(
            recipient_id=task.assignee_id,
            title=f"Task assigned: {step_name}",
            message=f"You have been assigned the '{step_name}' task on workflow #{task.workflow_instance_id}.",
            entity_type="workflow_task",
            entity_id=task.id,
            payload={
                "task_id": task.id,
                "workflow_instance_id": task.workflow_instance_id,
                "step_id": task.step_id,
                "assigned_by": assigned_by_id,
            },
        )

    def notify_workflow_status_changed(self, instance, event_type, data=None):
        document = instance.document
        if document is None or document.created_by_id is None:
            logger.debug("Instance %s has no document creator to notify", instance.id)
            return []

        data = data or {}
        event_type = WorkflowEventType(event_type)
        if event_type == WorkflowEventType.WORKFLOW_COMPLETED:
            title = f"Workflow completed: {document.title}"
            severity = "success"
        elif event_type == WorkflowEventType.WORKFLOW_CANCELLED:
            title = f"Workflow cancelled: {document.title}"
            severity = "warning"
        else:
            step_name = instance.current_step.name if instance.current_step else instance.current_step_id
            title = f"{document.title} moved to {step_name}"
            severity = "info"

        return self.send(
            recipient_id=document.created_by_id,
            title=title,
            message=f"Document status is now '{document.status}'.",
            severity=severity,
            entity_type="workflow_instance",
            entity_id=instance.id,
            payload={"event": event_type.value, "document_id": document.id, **data},
        )

    def send(self, *, recipient_id, title, message, entity_type, entity_id,
             payload=None, severity="info"):
        """Dispatch to every enabled channel; return the channels used."""
        channels = self.get_notification_channels()
        used = []

        if channels[CHANNEL_EMAIL]:
            logger.info("Email notification to user %s: %s", recipient_id, title)
            used.append(CHANNEL_EMAIL)

        if channels[CHANNEL_IN_APP]:
            try:
                NotificationService.create(
                    recipient_id=recipient_id,
                    title=title,
                    message=message,
                    severity=severity,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    payload=payload,
                )
            except Exception:
                db.session.rollback()
                raise
            used.append(CHANNEL_IN_APP)

        if channels[CHANNEL_SMS]:
            logger.info("SMS notification to user %s: %s", recipient_id, title)
            used.append(CHANNEL_SMS)

        return used
