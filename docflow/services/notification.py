"""
Notification Service.

Persists in-app notifications. Workflow events reach this service through
``WorkflowNotificationStrategy``.
"""

from docflow.models import db
from docflow.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    @staticmethod
    def create(*, recipient_id, title, message="", category="workflow", severity="info",
               entity_type="", entity_id=None, payload=None):
        """
        Create and commit a single notification record.

        Returns:
            The created Notification instance.
        """
        notif = Notification(
            recipient_id=recipient_id,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload or {},
        )
        db.session.add(notif)
        db.session.commit()
        return notif
