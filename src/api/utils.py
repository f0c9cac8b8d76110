"""
Shared utilities for the x402 distributor API.

Request validation helpers, operator API key authentication, and the
JSON error envelope used by every blueprint.
"""

import hmac
import logging
from functools import wraps
from typing import Any

from flask import jsonify, request

from api.state import get_settings
from distribution_errors import DistributionError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

# Bounded parameters
MAX_RESULTS = 100
MAX_OFFSET = 100000


# ============================================================
# Validation Utilities
# ============================================================

def validate_pagination_params(
    limit: int,
    offset: int = 0,
    max_limit: int = MAX_RESULTS,
    max_offset: int = MAX_OFFSET
) -> tuple:
    """
    Validate and bound pagination parameters.

    Args:
        limit: Requested limit
        offset: Requested offset
        max_limit: Maximum allowed limit
        max_offset: Maximum allowed offset

    Returns:
        Tuple of (bounded_limit, bounded_offset)
    """
    bounded_limit = max(1, min(int(limit) if limit else max_limit, max_limit))
    bounded_offset = max(0, min(int(offset) if offset else 0, max_offset))
    return bounded_limit, bounded_offset


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple],
    optional_fields: dict[str, type | tuple] | None = None,
    max_lengths: dict[str, int] | None = None
) -> tuple:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        if field_name not in data:
            return False, f"Missing required field: {field_name}"
        if not _is_type(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if optional_fields:
        for field_name, expected_type in optional_fields.items():
            if field_name in data and data[field_name] is not None:
                if not _is_type(data[field_name], expected_type):
                    return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if max_lengths:
        for field_name, max_len in max_lengths.items():
            if field_name in data and isinstance(data[field_name], str):
                if len(data[field_name]) > max_len:
                    return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def _is_type(value: Any, expected_type: type | tuple) -> bool:
    # bool is an int subclass; never accept it for numeric fields
    if isinstance(value, bool):
        types = expected_type if isinstance(expected_type, tuple) else (expected_type,)
        return bool in types
    return isinstance(value, expected_type)


def _type_name(expected_type: type | tuple) -> str:
    if isinstance(expected_type, tuple):
        return " or ".join(t.__name__ for t in expected_type)
    return expected_type.__name__


# ============================================================
# Responses
# ============================================================

def error_response(code: str, message: str, status: int, **extra: Any):
    """JSON error envelope: {"success": false, "error": {...}}."""
    error = {"code": code, "message": message}
    error.update(extra)
    return jsonify({"success": False, "error": error}), status


def distribution_error_response(error: DistributionError):
    return jsonify({"success": False, "error": error.to_dict()}), error.http_status


# ============================================================
# Authentication Decorator
# ============================================================

def require_api_key(f):
    """Decorator to require the operator API key (X402_API_KEY)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        settings = get_settings()
        if not settings.require_auth:
            return f(*args, **kwargs)

        provided_key = request.headers.get(API_KEY_HEADER)
        if not provided_key:
            return error_response(
                "unauthorized",
                "API key required",
                401,
                details={"hint": f"Provide the API key in the {API_KEY_HEADER} header"},
            )

        if not settings.api_key:
            logger.error("Operator route called but X402_API_KEY is not configured")
            return error_response(
                "auth_not_configured",
                "Server API key not configured",
                503,
                details={"hint": "Set the X402_API_KEY environment variable"},
            )

        if not hmac.compare_digest(provided_key.encode(), settings.api_key.encode()):
            logger.warning(f"Rejected API key on {request.path}")
            return error_response("forbidden", "Invalid API key", 403)

        return f(*args, **kwargs)
    return decorated_function
