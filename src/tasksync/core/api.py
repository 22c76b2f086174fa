"""Shared helpers for the tasksync HTTP API.

Every route is wrapped in ``api_endpoint`` so failures map to JSON error
responses the same way across blueprints:

    ValidationError -> 400
    AuthError       -> 401
    anything else   -> 500
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict

from flask import jsonify, request

from .validation import ValidationError

logger = logging.getLogger(__name__)

__all__ = ["AuthError", "api_endpoint", "get_json_body"]


class AuthError(Exception):
    """Missing, invalid or expired credentials."""


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Catches ValidationError (400), AuthError (401) and Exception (500) with proper JSON error responses and logging.
    """
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            logger.warning(f"Rejected {request.method} {request.path}: {e}")
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        except AuthError as e:
            logger.warning(f"Unauthorized {request.method} {request.path}: {e}")
            return jsonify({"error": str(e)}), 401
        except Exception as e:
            logger.exception(f"Error in {func.__name__}: {e}")
            return jsonify({"error": str(e)}), 500
    return wrapper


def get_json_body(required: bool = True) -> Dict[str, Any]:
    """Get the request's JSON object body.

    Raises:
        ValidationError: if the body is missing (when required) or not an object
    """
    data = request.get_json(silent=True)
    if data is None:
        if required:
            raise ValidationError("body", "JSON request body is required")
        return {}
    if not isinstance(data, dict):
        raise ValidationError("body", "must be a JSON object")
    return data
