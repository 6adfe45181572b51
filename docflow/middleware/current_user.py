"""
Acting-user resolution and route guards.

Authentication is handled upstream (gateway / session layer). By the time a
request reaches docflow the caller's id is carried in the ``X-User-Id``
header; this middleware loads that user (role and permissions eagerly) into
``g.current_user``.

Usage:
    @bp.route("/workflow/start", methods=["POST"])
    @require_user
    def start_workflow():
        user = g.current_user
        ...

    @bp.route("/workflow-definitions", methods=["POST"])
    @require_workflow_admin
    def create_definition():
        ...
"""

import functools
import logging

from flask import g, request

from docflow.models import db
from docflow.models.registry import User
from docflow.services.permission import can_manage_workflows
from docflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


def load_current_user():
    raw = request.headers.get(USER_HEADER, "").strip()
    if not raw:
        return None
    try:
        user_id = int(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s header: %r", USER_HEADER, raw)
        return None
    user = db.session.get(User, user_id)
    if user is None or user.status != "active":
        return None
    return user


def init_current_user(app):
    """Register the before_request hook that populates ``g.current_user``."""

    @app.before_request
    def _resolve_current_user():
        g.current_user = None
        if request.path.startswith("/api/v1/") and not request.path.startswith("/api/v1/health"):
            g.current_user = load_current_user()


def require_user(f):
    """401 unless an active user was resolved for this request."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "current_user", None) is None:
            return api_error(E.UNAUTHENTICATED, f"{USER_HEADER} header with an active user id is required")
        return f(*args, **kwargs)

    return decorated


def require_workflow_admin(f):
    """401 without a user; 403 unless the user may manage workflow definitions."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        user = getattr(g, "current_user", None)
        if user is None:
            return api_error(E.UNAUTHENTICATED, f"{USER_HEADER} header with an active user id is required")
        if not can_manage_workflows(user):
            logger.warning("User %d denied workflow administration on %s", user.id, f.__name__)
            return api_error(E.FORBIDDEN, "Permission denied", details={"required": "manage_workflow"})
        return f(*args, **kwargs)

    return decorated
