"""Shared route dependencies."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from docintake.services import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """Service container attached to the application."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services are not initialized",
        )
    return services


Services = Annotated[ServiceContainer, Depends(get_services)]
