"""
CampusBid Escrow — Shared Router Dependencies
"""
from fastapi import Request

from campusbid.auth import Principal
from campusbid.exceptions import UnauthorizedError
from campusbid.services.container import EngineServices


def get_services(request: Request) -> EngineServices:
    """The service bundle built by the app factory."""
    return request.app.state.services


def ensure_participant(principal: Principal, *user_ids: str) -> None:
    """Admins see everything; everyone else only records they are party to."""
    if principal.is_admin or principal.user_id in user_ids:
        return
    raise UnauthorizedError("You are not a party to this record")
