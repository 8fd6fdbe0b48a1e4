"""API middleware components.

- Request ID tracking, reused as the audit correlation id
- Consistent error response formatting
- Principal resolution from gateway headers
"""

from docintake.api.middleware.auth import (
    AdminPrincipal,
    CurrentPrincipal,
    RolePrincipal,
    principal_from_headers,
    require_admin,
    require_principal,
    require_role_principal,
)
from docintake.api.middleware.errors import ErrorHandlerMiddleware
from docintake.api.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "AdminPrincipal",
    "CurrentPrincipal",
    "ErrorHandlerMiddleware",
    "RequestIDMiddleware",
    "RolePrincipal",
    "get_request_id",
    "principal_from_headers",
    "require_admin",
    "require_principal",
    "require_role_principal",
]
