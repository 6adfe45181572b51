"""
Per-application wiring of the workflow engine.

``init_workflow_engine(app)`` builds one event bus and the services that
share it, registers the notification strategy as a listener and stores the
bundle in ``app.extensions["workflow"]``. Blueprints fetch it with
``get_workflow_engine()``.
"""

import logging
from dataclasses import dataclass

from flask import current_app

from docflow.services.workflow_definition_service import WorkflowDefinitionService
from docflow.services.workflow_events import WorkflowEventService
from docflow.services.workflow_notifications import WorkflowNotificationStrategy
from docflow.services.workflow_service import WorkflowService
from docflow.services.workflow_task_service import WorkflowTaskService

logger = logging.getLogger(__name__)

EXTENSION_KEY = "workflow"


@dataclass
class WorkflowEngine:
    events: WorkflowEventService
    workflows: WorkflowService
    tasks: WorkflowTaskService
    definitions: WorkflowDefinitionService
    notifications: WorkflowNotificationStrategy


def build_workflow_engine(events=None, notifications=None):
    events = events or WorkflowEventService()
    notifications = notifications or WorkflowNotificationStrategy()
    notifications.register(events)
    return WorkflowEngine(
        events=events,
        workflows=WorkflowService(events),
        tasks=WorkflowTaskService(events),
        definitions=WorkflowDefinitionService(events),
        notifications=notifications,
    )


def init_workflow_engine(app):
    engine = build_workflow_engine()
    app.extensions[EXTENSION_KEY] = engine
    logger.debug("Workflow engine initialised")
    return engine


def get_workflow_engine() -> WorkflowEngine:
    return current_app.extensions[EXTENSION_KEY]
