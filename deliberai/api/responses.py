"""
Error envelopes for the HTTP surface.

Callers (the deliberation UI) expect HTTP 200 with a structured body on
every handled failure:

    {"success": false, "error": "<message>", "error_id": "<uuid>"}

The error_id is logged alongside the exception so a report from the UI can
be matched to the server-side log line. Only missing configuration is
answered with a 500.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import status
from fastapi.responses import JSONResponse

from deliberai.core.context import generate_error_id
from deliberai.core.errors import capture_exception

logger = structlog.get_logger(__name__)


def error_body(message: str, error_id: str) -> Dict[str, Any]:
    return {"success": False, "error": message, "error_id": error_id}


def error_response(
    message: str,
    exc: Optional[BaseException] = None,
    operation: Optional[str] = None,
    status_code: int = status.HTTP_200_OK,
) -> JSONResponse:
    error_id = generate_error_id()
    if exc is not None:
        capture_exception(exc, context={"error_id": error_id, "operation": operation})
    else:
        logger.warning("Request rejected", error=message, error_id=error_id, operation=operation)
    return JSONResponse(status_code=status_code, content=error_body(message, error_id))


def describe_validation_errors(errors: List[Dict[str, Any]]) -> str:
    """Flatten pydantic errors into one line, e.g. "deliberationId: Field required"."""
    parts = []
    for error in errors:
        location = [str(p) for p in error.get("loc", ()) if p != "body"]
        parts.append(f"{'.'.join(location) or 'body'}: {error.get('msg', 'invalid')}")
    return "Invalid request - " + "; ".join(parts)
