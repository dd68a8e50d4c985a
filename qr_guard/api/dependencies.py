"""FastAPI dependency injection functions."""
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from qr_guard.circuit_breaker import EmergencyCircuitBreaker
from qr_guard.request_manager import QRRequestManager


def get_request_manager(request: Request) -> QRRequestManager:
    """
    Get the application's QRRequestManager.

    Pattern: One manager per application, created in the lifespan and kept on
    app.state; never a module-level global.
    """
    return request.app.state.request_manager


def get_emergency_breaker(request: Request) -> EmergencyCircuitBreaker:
    """Get the application's EmergencyCircuitBreaker."""
    return request.app.state.emergency_breaker


async def verify_diagnostics_token(
    request: Request,
    x_diagnostics_token: Optional[str] = Header(None, description="Diagnostics token")
) -> None:
    """
    Guard for state-changing diagnostics endpoints.

    When no token is configured the guard is open (local development).

    Raises:
        HTTPException 401: If the token is missing or wrong
    """
    expected = request.app.state.diagnostics_token
    if not expected:
        return

    if not x_diagnostics_token or not secrets.compare_digest(x_diagnostics_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid diagnostics token",
            headers={"WWW-Authenticate": "DiagnosticsToken"}
        )
