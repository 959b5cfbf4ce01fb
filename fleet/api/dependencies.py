"""Request-scoped dependencies shared by the routers."""

from fastapi import Header, Request

from fleet.coordinator import Coordinator
from fleet.errors import AuthenticationError


def get_coordinator(request: Request) -> Coordinator:
    """The coordinator created by the application lifespan."""
    return request.app.state.coordinator


def bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    """
    Extract the API key from an ``Authorization: Bearer <key>`` header.

    Returns None when the header is absent; a header in any other shape is
    rejected outright.
    """
    if authorization is None:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <api key>'")
    return token.strip()


def authenticate_worker(coordinator: Coordinator, worker_id: str, token: str | None) -> None:
    """Raise unless ``token`` is the worker's key. No-op with auth disabled."""
    if coordinator.settings.auth_enabled:
        coordinator.registry.authenticate(worker_id, token)
    else:
        coordinator.registry.require(worker_id)
