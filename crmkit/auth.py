"""
Owner identity for the current session.

Authentication proper happens elsewhere; this module only tracks which user
identity scopes reads and writes. The identity is held in a ContextVar so a
nested `signed_in_as` block never leaks into the caller.
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional

from crmkit.config import config
from crmkit.errors import Unauthorized

logger = logging.getLogger(__name__)

_SIGNED_OUT = object()
_current_user: ContextVar = ContextVar('crmkit_current_user', default=None)


def get_current_user() -> Optional[str]:
    """Return the bound owner identity, falling back to CRM_USER_ID."""
    user_id = _current_user.get()
    if user_id is _SIGNED_OUT:
        return None
    if user_id is None:
        return config.CRM_USER_ID
    return user_id


def require_user() -> str:
    """Return the owner identity or raise Unauthorized."""
    user_id = get_current_user()
    if not user_id:
        raise Unauthorized()
    return user_id


def sign_in(user_id: str) -> None:
    if not user_id or not str(user_id).strip():
        raise Unauthorized()
    _current_user.set(str(user_id).strip())
    logger.debug(f"Signed in as {user_id}")


def sign_out() -> None:
    """Unbind the identity. The CRM_USER_ID fallback is suppressed too."""
    _current_user.set(_SIGNED_OUT)
    logger.debug("Signed out")


@contextmanager
def signed_in_as(user_id: Optional[str]):
    """
    Bind `user_id` for the duration of the block. Passing None runs the
    block unauthenticated.

    Usage:
        with signed_in_as('6f1c...'):
            actions.create_todo({'title': 'Call Ada'})
    """
    token = _current_user.set(str(user_id) if user_id else _SIGNED_OUT)
    try:
        yield
    finally:
        _current_user.reset(token)
