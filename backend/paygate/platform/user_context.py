"""
User identity for request handlers.

SECURITY: user_id is ONLY read from request.state, where the upstream
authentication layer puts it. NEVER accept a user id from client input
(body/query/path).
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)


def get_optional_user_id(request: Request) -> Optional[str]:
    return getattr(request.state, "user_id", None) or None


def get_current_user_id(request: Request) -> str:
    """
    Extract the authenticated user id from request state.

    Raises 401 if the request was not authenticated.
    """
    user_id = get_optional_user_id(request)
    if not user_id:
        logger.warning("Route accessed without user context", extra={
            "path": request.url.path
        })
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return user_id
