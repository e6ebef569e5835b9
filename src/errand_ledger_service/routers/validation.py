"""Shared request validation helpers for routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from errand_ledger_service.exceptions import ServiceError, UnauthorizedError

if TYPE_CHECKING:
    from fastapi import Request

CALLER_HEADER = "X-User-Id"


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


async def read_optional_body(request: Request) -> dict[str, Any]:
    """Parse the JSON body, treating an empty body as an empty object."""
    body = await request.body()
    if not body.strip():
        return {}
    return parse_json_body(body)


def require_caller(request: Request) -> str:
    """
    Return the authenticated user id set by the upstream identity layer.

    Raises:
        ServiceError: MISSING_IDENTITY when the header is absent or blank.
    """
    caller = request.headers.get(CALLER_HEADER, "").strip()
    if not caller:
        raise ServiceError(
            "MISSING_IDENTITY",
            f"Missing {CALLER_HEADER} header",
            401,
            {},
        )
    return caller


def require_operator(caller_id: str, operator_id: str) -> None:
    """Check that the caller is the platform operator."""
    if caller_id != operator_id:
        raise UnauthorizedError("Only the platform operator can perform this action")


def require_int(data: dict[str, Any], field_name: str) -> int:
    """Extract a required integer field (bools rejected)."""
    if field_name not in data or data[field_name] is None:
        raise ServiceError("INVALID_PAYLOAD", f"Missing required field: {field_name}", 400, {})
    value = data[field_name]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be an integer",
            400,
            {},
        )
    return value


def require_str(data: dict[str, Any], field_name: str) -> str:
    """Extract a required non-empty string field."""
    value = data.get(field_name)
    if value is None:
        raise ServiceError("INVALID_PAYLOAD", f"Missing required field: {field_name}", 400, {})
    if not isinstance(value, str) or not value.strip():
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a non-empty string",
            400,
            {},
        )
    return value.strip()


def optional_str(data: dict[str, Any], field_name: str) -> str | None:
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError("INVALID_PAYLOAD", f"Field '{field_name}' must be a string", 400, {})
    return value


def parse_pagination(request: Request) -> tuple[int | None, int | None]:
    """Read optional ``limit`` and ``offset`` query parameters."""
    offset_raw = request.query_params.get("offset")
    limit_raw = request.query_params.get("limit")

    offset: int | None = None
    limit: int | None = None

    if offset_raw is not None:
        try:
            offset = int(offset_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "offset must be an integer", 400, {}) from exc
        if offset < 0:
            raise ServiceError("INVALID_PAYLOAD", "offset must be >= 0", 400, {})

    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "limit must be an integer", 400, {}) from exc
        if limit <= 0:
            raise ServiceError("INVALID_PAYLOAD", "limit must be >= 1", 400, {})

    return limit, offset
