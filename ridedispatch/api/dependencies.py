"""FastAPI dependency injection helpers."""

from fastapi import Request

from ridedispatch.services.container import Services


def get_services(request: Request) -> Services:
    """The services the app was built (or injected) with."""
    return request.app.state.services
