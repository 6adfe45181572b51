"""
docflow blueprint registry and shared view helpers.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from docflow.core.exceptions import ConcurrentModificationError, NotFoundError, ValidationError
from docflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_list(items, default_limit=200, max_limit=1000):
    """Apply limit/offset query params to an already materialised list.

    Returns:
        (page_items, total_count)
    """
    total = len(items)
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return items[offset:offset + limit], total


def json_body():
    """Request JSON as a dict; anything else becomes ``{}``."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def register_error_handlers(bp):
    """Map domain exceptions to JSON errors on ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ConcurrentModificationError)
    def _handle_concurrent(error: ConcurrentModificationError):
        return api_error(E.CONCURRENT_MODIFICATION, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(
            E.VALIDATION_INVALID,
            str(error),
            details={"errors": error.errors, **error.details},
        )

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
