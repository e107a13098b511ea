"""
Audit Logging Middleware

Logs all modifying requests (POST, PATCH, PUT, DELETE) to the audit log
of the store. Captures action, resource type/ID, client and status.
"""

import logging
from typing import Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from common.models import AuditEntry

from ..services.runtime import get_runtime

logger = logging.getLogger(__name__)


# Paths to exclude from audit logging
EXCLUDED_PATHS = [
    "/",
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
]

# HTTP methods to log (only modifying operations)
LOGGED_METHODS = ["POST", "PATCH", "PUT", "DELETE"]

# Facility placeholder for requests that do not name one in the query
UNSCOPED_FACILITY = "*"


def parse_resource_from_path(path: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Parse resource type and ID from URL path.

    Examples:
    - /load-shedding/abc-123 → ("load-shedding", "abc-123")
    - /savings/reports → ("savings", "reports")
    - /demand-response/events → ("demand-response", "events")

    Returns:
        Tuple of (resource_type, resource_id) - ID may be None
    """
    parts = [p for p in path.split("/") if p]
    if not parts:
        return (None, None)

    resource_type = parts[0]
    resource_id = parts[1] if len(parts) > 1 else None
    return (resource_type, resource_id)


def method_to_action(method: str) -> str:
    """Convert HTTP method to action name."""
    mapping = {
        "POST": "create",
        "PATCH": "update",
        "PUT": "update",
        "DELETE": "delete",
    }
    return mapping.get(method, method.lower())


def resolve_runtime(request: Request):
    """Runtime used by the routes (honours dependency overrides)."""
    factory = request.app.dependency_overrides.get(get_runtime, get_runtime)
    return factory()


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that logs modifying HTTP requests to the audit log.

    Only logs POST, PATCH, PUT, DELETE requests.
    Excludes health checks and docs.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process request and log if it's a modifying operation."""

        # Skip non-modifying methods
        if request.method not in LOGGED_METHODS:
            return await call_next(request)

        # Skip excluded paths
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        # Execute the request first
        response = await call_next(request)

        # Now log the action (after we know the status code)
        try:
            await self._log_action(request, response)
        except Exception as e:
            # Don't fail the request if logging fails
            logger.warning(f"[Audit Middleware] Error logging action: {e}")

        return response

    async def _log_action(self, request: Request, response: Response):
        """Append the action to the audit log."""

        path = request.url.path
        method = request.method

        resource_type, resource_id = parse_resource_from_path(path)
        if not resource_type:
            return

        user_agent = request.headers.get("user-agent", "")
        entry = AuditEntry(
            facility_id=request.query_params.get("facilityId", UNSCOPED_FACILITY),
            action=f"api_{method_to_action(method)}",
            detail={
                "method": method,
                "path": path,
                "resource_type": resource_type,
                "resource_id": resource_id,
                "status": "success" if 200 <= response.status_code < 400 else "failed",
                "status_code": response.status_code,
                "ip_address": request.client.host if request.client else None,
                "user_agent": user_agent[:500] if user_agent else None,  # Truncate if too long
            },
        )

        runtime = resolve_runtime(request)
        await runtime.store.append_audit(entry)
