"""
Workflow task blueprint.

Blueprint: workflow_task_bp
Prefix: /api/v1

Endpoints:
    GET/POST  /workflow-tasks                 -- list with filters / create
    GET       /workflow-tasks/<tid>           -- single task
    PATCH     /workflow-tasks/<tid>/assign    -- pending -> in_progress
    PATCH     /workflow-tasks/<tid>/complete  -- complete (must be the instance's current task)
    PATCH     /workflow-tasks/<tid>/cancel    -- cancel

List filters: status (comma separated), assignee_id, assignee_role_id,
step_id, workflow_instance_id, due_date_before, due_date_after.
"""

import logging

from flask import Blueprint, g, jsonify, request

from docflow.blueprints import json_body, paginate_list, register_error_handlers
from docflow.middleware.current_user import require_user
from docflow.services.workflow_engine import get_workflow_engine
from docflow.utils.errors import E, api_error
from docflow.utils.helpers import parse_datetime, parse_int

logger = logging.getLogger(__name__)

workflow_task_bp = Blueprint("workflow_task", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_task_bp)


@workflow_task_bp.route("/workflow-tasks", methods=["POST"])
@require_user
def create_task():
    """Body: {workflow_instance_id, step_id, assignee_role_id?, assignee_id?, due_date?, comments?, metadata?}"""
    data = json_body()
    instance_id = parse_int(data.get("workflow_instance_id"))
    step_id = parse_int(data.get("step_id"))
    if instance_id is None or step_id is None:
        return api_error(E.VALIDATION_REQUIRED, "workflow_instance_id and step_id are required")

    due_date = None
    if data.get("due_date"):
        due_date = parse_datetime(data["due_date"])
        if due_date is None:
            return api_error(E.VALIDATION_INVALID, "due_date must be an ISO date or datetime")

    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object")

    task = get_workflow_engine().tasks.create_task({
        "workflow_instance_id": instance_id,
        "step_id": step_id,
        "assignee_role_id": parse_int(data.get("assignee_role_id")),
        "assignee_id": parse_int(data.get("assignee_id")),
        "due_date": due_date,
        "comments": data.get("comments"),
        "metadata": metadata,
    }, g.current_user)
    return jsonify(task.to_dict()), 201


@workflow_task_bp.route("/workflow-tasks", methods=["GET"])
@require_user
def list_tasks():
    status = request.args.get("status")
    statuses = [s.strip() for s in status.split(",") if s.strip()] if status else None
    tasks = get_workflow_engine().tasks.find_tasks(
        status=statuses,
        assignee_id=request.args.get("assignee_id", type=int),
        assignee_role_id=request.args.get("assignee_role_id", type=int),
        step_id=request.args.get("step_id", type=int),
        workflow_instance_id=request.args.get("workflow_instance_id", type=int),
        due_date_before=parse_datetime(request.args.get("due_date_before")),
        due_date_after=parse_datetime(request.args.get("due_date_after")),
    )
    page, total = paginate_list(tasks)
    return jsonify({"items": [t.to_dict() for t in page], "total": total}), 200


@workflow_task_bp.route("/workflow-tasks/<int:tid>", methods=["GET"])
@require_user
def get_task(tid):
    return jsonify(get_workflow_engine().tasks.get_task(tid).to_dict()), 200


@workflow_task_bp.route("/workflow-tasks/<int:tid>/assign", methods=["PATCH"])
@require_user
def assign_task(tid):
    """Body: {assignee_id}"""
    assignee_id = parse_int(json_body().get("assignee_id"))
    if assignee_id is None:
        return api_error(E.VALIDATION_REQUIRED, "assignee_id is required")
    task = get_workflow_engine().tasks.assign_task(tid, assignee_id, g.current_user)
    return jsonify(task.to_dict()), 200


@workflow_task_bp.route("/workflow-tasks/<int:tid>/complete", methods=["PATCH"])
@require_user
def complete_task(tid):
    """Body: {comment?, metadata?}. Completion is instance-addressed; resolve the task first."""
    data = json_body()
    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object")

    tasks = get_workflow_engine().tasks
    task = tasks.get_task(tid)
    if task.instance.current_task_id != task.id:
        return api_error(E.VALIDATION_INVALID, "Task is not the current task of its workflow")

    completed = tasks.complete_current_task(
        task.workflow_instance_id, g.current_user,
        comment=data.get("comment"),
        metadata=metadata,
    )
    return jsonify(completed.to_dict()), 200


@workflow_task_bp.route("/workflow-tasks/<int:tid>/cancel", methods=["PATCH"])
@require_user
def cancel_task(tid):
    """Body: {reason?}"""
    task = get_workflow_engine().tasks.cancel_task(tid, g.current_user, json_body().get("reason"))
    return jsonify(task.to_dict()), 200
