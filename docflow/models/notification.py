"""
In-app notification model.

Models:
    - Notification: in-app notification record written by the workflow
      notification strategy
"""

from datetime import datetime, timezone

from docflow.models import db


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="workflow")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="workflow_instance/workflow_task/...")
    entity_id = db.Column(db.Integer, nullable=True)
    payload = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
