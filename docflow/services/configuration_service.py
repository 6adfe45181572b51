"""
Configuration lookup.

Typed key/value settings read by the workflow engine (notification channel
flags). Values are cast by ``Configuration.get_value``.
"""

import json
import logging

from docflow.core.exceptions import NotFoundError, ValidationError
from docflow.models import db
from docflow.models.registry import CONFIGURATION_TYPES, Configuration

logger = logging.getLogger(__name__)


def get_configuration(key):
    """Return the Configuration row for ``key`` or None."""
    return Configuration.query.filter_by(key=key).first()


def get_configuration_value(key):
    """Return the cast value for ``key``; raise NotFoundError if it is not set."""
    config = get_configuration(key)
    if config is None:
        raise NotFoundError(resource="Configuration", resource_id=key)
    return config.get_value()


def set_configuration_value(key, value, value_type="string", description=None):
    """Create or update a setting. Booleans and JSON are stored as text."""
    if value_type not in CONFIGURATION_TYPES:
        raise ValidationError(f"Unknown configuration type: {value_type}")

    if isinstance(value, bool):
        raw = "true" if value else "false"
    elif value_type == "json":
        raw = json.dumps(value)
    else:
        raw = None if value is None else str(value)

    config = get_configuration(key)
    if config is None:
        config = Configuration(key=key, value_type=value_type, description=description)
        db.session.add(config)
    config.value = raw
    config.value_type = value_type
    if description is not None:
        config.description = description
    db.session.commit()
    logger.info("Configuration %s set (%s)", key, value_type)
    return config
