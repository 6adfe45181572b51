"""
Workflow event bus.

Decouples workflow state changes from their side effects (notifications,
audit, logging). One ``WorkflowEventService`` is created per Flask app by
``docflow.services.workflow_engine.init_workflow_engine`` and injected into
the workflow services, so tests can attach capturing listeners to the app's
bus (or build a private bus) instead of patching a global.

Built on blinker: each event type is a named signal inside a private
``Namespace``. Delivery is synchronous and in-process. Unlike
``Signal.send``, ``emit`` calls every receiver itself so that one failing
listener is logged and skipped without affecting the others or the emitter.

Usage:
    events = WorkflowEventService()
    events.on(WorkflowEventType.WORKFLOW_STARTED, lambda e: print(e.to_dict()))
    events.emit(WorkflowEvent(
        type=WorkflowEventType.WORKFLOW_STARTED,
        workflow_instance_id=7,
        data={"document_id": 3},
        user_id=1,
    ))
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from blinker import Namespace

logger = logging.getLogger(__name__)


class WorkflowEventType(str, Enum):
    WORKFLOW_CREATED = "workflow.created"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_STEP_CHANGED = "workflow.step.changed"
    WORKFLOW_TASK_ASSIGNED = "workflow.task.assigned"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    WORKFLOW_ERROR = "workflow.error"


@dataclass
class WorkflowEvent:
    """Ephemeral (never persisted) workflow event."""

    type: WorkflowEventType
    workflow_instance_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None
    user_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "workflow_instance_id": self.workflow_instance_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "user_id": self.user_id,
        }


def normalize_error(error: Any) -> dict:
    """Coerce any raised value into ``{"name", "message", "stack"?}``.

    - Exception instance -> class name, str(exc), formatted traceback
    - dict / object exposing name/message/stack -> best-effort extraction
    - anything else -> ``{"name": "UnknownError", "message": str(value)}``
    """
    if isinstance(error, BaseException):
        return {
            "name": type(error).__name__,
            "message": str(error),
            "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
        }

    if isinstance(error, dict):
        normalized = {
            "name": error.get("name") or "UnknownError",
            "message": error.get("message") or str(error),
        }
        if error.get("stack"):
            normalized["stack"] = error["stack"]
        return normalized

    if error is not None and (hasattr(error, "message") or hasattr(error, "name")):
        normalized = {
            "name": getattr(error, "name", None) or "UnknownError",
            "message": getattr(error, "message", None) or str(error),
        }
        stack = getattr(error, "stack", None)
        if stack:
            normalized["stack"] = stack
        return normalized

    return {
        "name": "UnknownError",
        "message": str(error) if error is not None else "Unknown error occurred",
    }


class WorkflowEventService:
    """Typed publish/subscribe bus for workflow events."""

    def __init__(self) -> None:
        self._signals = Namespace()
        # (event type, handler) -> wrapper connected by once()
        self._once_wrappers = {}

    def _signal(self, event_type: WorkflowEventType | str):
        return self._signals.signal(WorkflowEventType(event_type).value)

    # ── Publish ──────────────────────────────────────────────────────────

    def emit(self, event: WorkflowEvent) -> WorkflowEvent:
        """Stamp, normalise and deliver ``event``. Never raises."""
        try:
            if event.timestamp is None:
                event.timestamp = datetime.now(timezone.utc)
            if event.data.get("error") is not None:
                event.data["error"] = normalize_error(event.data["error"])

            signal = self._signal(event.type)
            for receiver in list(signal.receivers_for(self)):
                try:
                    receiver(event)
                except Exception:
                    logger.exception(
                        "Workflow event listener %r failed for %s",
                        receiver,
                        event.type.value,
                        extra={"event_type": event.type.value,
                               "workflow_instance_id": event.workflow_instance_id},
                    )

            logger.info(
                "Workflow event %s for instance %s",
                event.type.value,
                event.workflow_instance_id,
                extra={"event_type": event.type.value,
                       "workflow_instance_id": event.workflow_instance_id},
            )
        except Exception:
            logger.exception("Error emitting workflow event %r", event)
        return event

    # ── Subscribe ────────────────────────────────────────────────────────

    def on(self, event_type: WorkflowEventType | str, handler: Callable[[WorkflowEvent], Any]) -> None:
        self._signal(event_type).connect(handler, weak=False)
        logger.debug("Registered listener for event: %s", WorkflowEventType(event_type).value)

    def once(self, event_type: WorkflowEventType | str, handler: Callable[[WorkflowEvent], Any]) -> None:
        signal = self._signal(event_type)
        key = (WorkflowEventType(event_type), handler)

        def _once(event):
            signal.disconnect(_once)
            self._once_wrappers.pop(key, None)
            return handler(event)

        self._once_wrappers[key] = _once
        signal.connect(_once, weak=False)
        logger.debug("Registered one-time listener for event: %s", key[0].value)

    def off(self, event_type: WorkflowEventType | str, handler: Callable[[WorkflowEvent], Any]) -> None:
        """Remove ``handler``, whether it was registered with ``on`` or ``once``."""
        signal = self._signal(event_type)
        wrapper = self._once_wrappers.pop((WorkflowEventType(event_type), handler), None)
        if wrapper is not None:
            signal.disconnect(wrapper)
        signal.disconnect(handler)

    def remove_all_listeners(self, event_type: WorkflowEventType | str | None = None) -> None:
        types = [WorkflowEventType(event_type)] if event_type is not None else list(WorkflowEventType)
        for et in types:
            signal = self._signal(et)
            for receiver in list(signal.receivers_for(self)):
                signal.disconnect(receiver)
            self._once_wrappers = {k: w for k, w in self._once_wrappers.items() if k[0] != et}
            logger.debug("Removed all listeners for event: %s", et.value)

    def listener_count(self, event_type: WorkflowEventType | str) -> int:
        return len(list(self._signal(event_type).receivers_for(self)))
