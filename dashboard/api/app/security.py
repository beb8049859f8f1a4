"""
Request body validation and input sanitization
"""
import re
from typing import Any, Dict, Optional, Type, TypeVar

import bleach
from flask import current_app, request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from structlog import get_logger

from .errors import ValidationError

logger = get_logger(__name__)

SchemaT = TypeVar('SchemaT', bound=BaseModel)

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')


def sanitize_input(text: Optional[str]) -> Optional[str]:
    """
    Strip control characters and markup from user-supplied plain text

    Args:
        text: Input text to sanitize

    Returns:
        Sanitized text, truncated to MAX_INPUT_LENGTH
    """
    if not text or not isinstance(text, str):
        return text

    text = _CONTROL_CHARS.sub('', text)
    text = bleach.clean(text, tags=[], attributes={}, strip=True)

    max_length = current_app.config.get('MAX_INPUT_LENGTH', 10000)
    if len(text) > max_length:
        text = text[:max_length]
    return text.strip()


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body is required")
    return data


def parse_body(schema: Type[SchemaT]) -> SchemaT:
    """Validate the JSON request body against a pydantic schema (400 on failure)"""
    data = json_body()
    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        details = e.errors(include_url=False, include_context=False)
        logger.info("Request body rejected", schema=schema.__name__, errors=len(details))
        raise ValidationError("Validation failed", errors=details)
