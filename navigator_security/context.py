"""
Ambient request context.

The Security Logger stamps every event with the current user and the
request being handled. Callers never pass these explicitly: the request
layer binds them once with ``request_context()`` (or ``set_current_user``
after login) and every event logged inside that context picks them up.
"""
import contextvars
from contextlib import contextmanager
from typing import Optional
from collections.abc import Iterator

from pydantic import BaseModel


class RequestContext(BaseModel):
    """URL and method of the request being processed."""

    url: Optional[str] = None
    method: Optional[str] = None

    model_config = {"frozen": True}


_current_user: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "navigator_security_user", default=None
)
_current_request: contextvars.ContextVar[Optional[RequestContext]] = (
    contextvars.ContextVar("navigator_security_request", default=None)
)


def get_current_user() -> Optional[str]:
    return _current_user.get()


def set_current_user(user_id: Optional[str]) -> contextvars.Token:
    """Bind the logged-in user for the current context.

    Returns:
        Token usable with ``reset_current_user``.
    """
    return _current_user.set(user_id)


def reset_current_user(token: contextvars.Token) -> None:
    _current_user.reset(token)


def get_request_context() -> Optional[RequestContext]:
    return _current_request.get()


@contextmanager
def request_context(
    url: Optional[str] = None,
    method: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Iterator[RequestContext]:
    """Bind a request (and optionally a user) for the enclosed block.

    Example:
        with request_context("/api/cart", "POST", user_id="u-1"):
            csrf.validate(token)   # violations carry url, method and user
    """
    ctx = RequestContext(
        url=url, method=method.upper() if method else None
    )
    request_token = _current_request.set(ctx)
    user_token = _current_user.set(user_id) if user_id is not None else None
    try:
        yield ctx
    finally:
        if user_token is not None:
            _current_user.reset(user_token)
        _current_request.reset(request_token)
