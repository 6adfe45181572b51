"""
Workflow instance blueprint.

Blueprint: workflow_bp
Prefix: /api/v1

Endpoints:
    POST  /workflow/start                                  -- start a workflow on a document
    GET   /workflow/instances                              -- active instances (filters)
    GET   /workflow/instances/<iid>                        -- one instance, full graph
    PATCH /workflow/instances/<iid>/transition             -- fire a transition
    PATCH /workflow/instances/<iid>/cancel                 -- cancel (reason required)
    GET   /workflow/instances/<iid>/available-transitions  -- transitions from current step

Every endpoint requires the ``X-User-Id`` header.
"""

import logging

from flask import Blueprint, g, jsonify, request

from docflow.blueprints import json_body, paginate_list, register_error_handlers
from docflow.middleware.current_user import require_user
from docflow.services.workflow_engine import get_workflow_engine
from docflow.services.workflow_validation import MSG_COMMENT_REQUIRED, validate_workflow_transition
from docflow.utils.errors import E, api_error
from docflow.utils.helpers import parse_int

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


def _metadata_arg(data):
    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return None, api_error(E.VALIDATION_INVALID, "metadata must be an object")
    return metadata, None


@workflow_bp.route("/workflow/start", methods=["POST"])
@require_user
def start_workflow():
    """Body: {document_id, workflow_definition_id, metadata?}"""
    data = json_body()
    document_id = parse_int(data.get("document_id"))
    definition_id = parse_int(data.get("workflow_definition_id"))
    if document_id is None or definition_id is None:
        return api_error(E.VALIDATION_REQUIRED, "document_id and workflow_definition_id are required")
    metadata, err = _metadata_arg(data)
    if err:
        return err

    instance = get_workflow_engine().workflows.start_workflow(
        document_id, definition_id, g.current_user, metadata=metadata,
    )
    return jsonify(instance.to_dict(include_graph=True)), 201


@workflow_bp.route("/workflow/instances", methods=["GET"])
@require_user
def list_active_instances():
    instances = get_workflow_engine().workflows.get_active_workflow_instances(
        document_id=request.args.get("document_id", type=int),
        workflow_definition_id=request.args.get("workflow_definition_id", type=int),
        current_step_id=request.args.get("current_step_id", type=int),
    )
    page, total = paginate_list(instances)
    return jsonify({"items": [i.to_dict() for i in page], "total": total}), 200


@workflow_bp.route("/workflow/instances/<int:iid>", methods=["GET"])
@require_user
def get_instance(iid):
    instance = get_workflow_engine().workflows.get_workflow_instance(iid)
    return jsonify(instance.to_dict(include_graph=True)), 200


@workflow_bp.route("/workflow/instances/<int:iid>/transition", methods=["PATCH"])
@require_user
def transition_instance(iid):
    """Body: {transition_id, comment?, metadata?}"""
    data = json_body()
    transition_id = parse_int(data.get("transition_id"))
    if transition_id is None:
        return api_error(E.VALIDATION_REQUIRED, "transition_id is required")
    metadata, err = _metadata_arg(data)
    if err:
        return err

    instance = get_workflow_engine().workflows.transition_workflow(
        iid, transition_id, g.current_user,
        comment=data.get("comment"),
        metadata=metadata,
    )
    return jsonify(instance.to_dict(include_graph=True)), 200


@workflow_bp.route("/workflow/instances/<int:iid>/cancel", methods=["PATCH"])
@require_user
def cancel_instance(iid):
    """Body: {reason}"""
    data = json_body()
    reason = (data.get("reason") or "").strip()
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "reason is required")

    instance = get_workflow_engine().workflows.cancel_workflow(iid, g.current_user, reason)
    return jsonify(instance.to_dict(include_graph=True)), 200


@workflow_bp.route("/workflow/instances/<int:iid>/available-transitions", methods=["GET"])
@require_user
def available_transitions(iid):
    """Transitions leaving the current step, flagged with whether this user may fire them.

    The comment rule is left out of ``allowed``; ``requires_comment`` is reported as-is.
    """
    workflows = get_workflow_engine().workflows
    instance = workflows.get_workflow_instance(iid)
    items = []
    for transition in workflows.get_available_transitions(iid):
        result = validate_workflow_transition(instance, transition, g.current_user)
        errors = [e for e in result.errors if e != MSG_COMMENT_REQUIRED]
        d = transition.to_dict()
        d["allowed"] = not errors
        d["errors"] = errors
        items.append(d)
    return jsonify({"items": items, "total": len(items)}), 200
