"""
Admin guard for manual sync operations.

There are no user logins in this service; maintenance endpoints are
protected by a single shared ADMIN_API_TOKEN sent as X-Admin-Token.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header

from core.config import settings
from core.exceptions import ForbiddenError, UnauthorizedError

logger = logging.getLogger(__name__)


def require_admin(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    """FastAPI dependency: 401 without a token, 403 with a wrong one (or none configured)."""
    if not x_admin_token:
        raise UnauthorizedError("Admin token required")
    expected = settings.ADMIN_API_TOKEN
    if not expected or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        logger.warning("Rejected admin request with invalid token")
        raise ForbiddenError("Invalid admin token")
