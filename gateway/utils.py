"""
Utility functions for the Plugin Gateway
"""

import json
import uuid
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class PrettyJSONResponse(JSONResponse):
    """JSON response rendered with a 2-space indent"""

    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=2,
        ).encode("utf-8")


def generate_request_id() -> str:
    """Generate a unique request ID"""
    return str(uuid.uuid4())


def get_client_ip(request: Request) -> Optional[str]:
    """
    Extract the real client IP address from the request
    Handles X-Forwarded-For and X-Real-IP headers for proxy scenarios
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first one
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return None


def format_error_response(error: str, message: str) -> dict:
    """Format the error body every failing gateway response carries"""
    return {"error": error, "message": message}


def error_response(status_code: int, error: str, message: str) -> PrettyJSONResponse:
    return PrettyJSONResponse(
        status_code=status_code, content=format_error_response(error, message)
    )
