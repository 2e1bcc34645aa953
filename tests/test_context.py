"""Tests for the ambient request context."""
from navigator_security.context import (
    get_current_user,
    get_request_context,
    request_context,
    reset_current_user,
    set_current_user,
)


class TestRequestContext:
    """request_context binds and restores request and user."""

    def test_binds_and_restores(self):
        assert get_request_context() is None
        with request_context("/a", "get", user_id="u1") as ctx:
            assert ctx.method == "GET"
            assert get_request_context().url == "/a"
            assert get_current_user() == "u1"
        assert get_request_context() is None
        assert get_current_user() is None

    def test_nested(self):
        with request_context("/outer", "post"):
            with request_context("/inner"):
                assert get_request_context().url == "/inner"
                assert get_request_context().method is None
            assert get_request_context().url == "/outer"

    def test_user_survives_request_without_user(self):
        token = set_current_user("u2")
        try:
            with request_context("/a"):
                assert get_current_user() == "u2"
        finally:
            reset_current_user(token)
        assert get_current_user() is None
