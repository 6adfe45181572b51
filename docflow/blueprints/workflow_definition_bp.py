"""
Workflow definition administration blueprint.

Blueprint: workflow_definition_bp
Prefix: /api/v1

Endpoints:
    GET/POST         /workflow-definitions                        -- list / create (nested graph)
    GET/PATCH/DELETE /workflow-definitions/<did>                  -- single definition
    POST             /workflow-definitions/<did>/steps            -- add step
    PATCH/DELETE     /workflow-definitions/<did>/steps/<sid>      -- update / remove step
    POST             /workflow-definitions/<did>/transitions      -- add transition
    DELETE           /workflow-definitions/<did>/transitions/<tid>

Reads need any user; mutations need the admin role or the
``manage_workflow`` permission.
"""

import logging

from flask import Blueprint, g, jsonify, request

from docflow.blueprints import json_body, register_error_handlers
from docflow.middleware.current_user import require_user, require_workflow_admin
from docflow.services.workflow_engine import get_workflow_engine

logger = logging.getLogger(__name__)

workflow_definition_bp = Blueprint("workflow_definition", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_definition_bp)


def _definitions():
    return get_workflow_engine().definitions


# ------------------------------------------------------------------
#  Definitions
# ------------------------------------------------------------------

@workflow_definition_bp.route("/workflow-definitions", methods=["GET"])
@require_user
def list_definitions():
    active_only = request.args.get("active_only", "").lower() in ("1", "true", "yes")
    definitions = _definitions().find_all(active_only=active_only)
    return jsonify({"items": [d.to_dict() for d in definitions], "total": len(definitions)}), 200


@workflow_definition_bp.route("/workflow-definitions", methods=["POST"])
@require_workflow_admin
def create_definition():
    definition = _definitions().create(json_body(), g.current_user)
    return jsonify(definition.to_dict()), 201


@workflow_definition_bp.route("/workflow-definitions/<int:did>", methods=["GET"])
@require_user
def get_definition(did):
    return jsonify(_definitions().find_one(did).to_dict()), 200


@workflow_definition_bp.route("/workflow-definitions/<int:did>", methods=["PATCH"])
@require_workflow_admin
def update_definition(did):
    definition = _definitions().update(did, json_body(), g.current_user)
    return jsonify(definition.to_dict()), 200


@workflow_definition_bp.route("/workflow-definitions/<int:did>", methods=["DELETE"])
@require_workflow_admin
def delete_definition(did):
    _definitions().remove(did)
    return jsonify({"message": "Workflow definition deleted", "id": did}), 200


# ------------------------------------------------------------------
#  Steps
# ------------------------------------------------------------------

@workflow_definition_bp.route("/workflow-definitions/<int:did>/steps", methods=["POST"])
@require_workflow_admin
def add_step(did):
    step = _definitions().add_step(did, json_body(), g.current_user)
    return jsonify(step.to_dict()), 201


@workflow_definition_bp.route("/workflow-definitions/<int:did>/steps/<int:sid>", methods=["PATCH"])
@require_workflow_admin
def update_step(did, sid):
    step = _definitions().update_step(did, sid, json_body(), g.current_user)
    return jsonify(step.to_dict()), 200


@workflow_definition_bp.route("/workflow-definitions/<int:did>/steps/<int:sid>", methods=["DELETE"])
@require_workflow_admin
def remove_step(did, sid):
    _definitions().remove_step(did, sid)
    return jsonify({"message": "Workflow step deleted", "id": sid}), 200


# ------------------------------------------------------------------
#  Transitions
# ------------------------------------------------------------------

@workflow_definition_bp.route("/workflow-definitions/<int:did>/transitions", methods=["POST"])
@require_workflow_admin
def add_transition(did):
    transition = _definitions().add_transition(did, json_body(), g.current_user)
    return jsonify(transition.to_dict()), 201


@workflow_definition_bp.route(
    "/workflow-definitions/<int:did>/transitions/<int:tid>", methods=["DELETE"]
)
@require_workflow_admin
def remove_transition(did, tid):
    _definitions().remove_transition(did, tid)
    return jsonify({"message": "Workflow transition deleted", "id": tid}), 200
