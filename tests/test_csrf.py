"""
Tests for the CSRF Manager.

Tests cover:
- Token generation and the CSPRNG fallback
- Token lifecycle (issue, expiry, refresh, clear)
- Validation and violation logging
- Header/form stamping for state-changing verbs
- Header, form and origin validation helpers
- Background refresh semantics
"""
import re
import asyncio

import pytest

from navigator_security import conf
from navigator_security.context import request_context
from navigator_security.csrf import CSRFConfig, CSRFManager, is_state_changing
from navigator_security.csrf import secrets as csrf_secrets
from navigator_security.logger import SecurityEventType

HEX64 = re.compile(r"^[0-9a-f]{64}$")


@pytest.fixture
def csrf(session, security_logger, clock):
    return CSRFManager(
        session,
        CSRFConfig(allowed_origins=["https://shop.example.com/"]),
        security_logger=security_logger,
        clock=clock,
    )


# --- Test Generation ---

class TestGeneration:
    """Token values are 64 lowercase hex characters."""

    def test_thousand_unique_tokens(self, csrf):
        tokens = {csrf.generate() for _ in range(1000)}
        assert len(tokens) == 1000
        assert all(HEX64.match(token) for token in tokens)

    def test_fallback_when_csprng_fails(self, csrf, monkeypatch, security_logger):
        def broken(n):
            raise OSError("no entropy")
        monkeypatch.setattr(csrf_secrets, "token_hex", broken)
        token = csrf.generate()
        assert HEX64.match(token)
        events = security_logger.get_logs_by_type(
            SecurityEventType.DEGRADED_SECURITY
        )
        assert len(events) == 1


# --- Test Lifecycle ---

class TestLifecycle:
    """Issue, expiry, refresh and clear."""

    def test_no_token_initially(self, csrf):
        assert csrf.current() is None
        assert csrf.has_valid_token() is False

    def test_issue_and_validate(self, csrf):
        token = csrf.issue()
        assert csrf.current() == token
        assert csrf.validate(token) is True

    def test_issue_explicit_value(self, csrf):
        value = "a" * 64
        assert csrf.issue(value) == value
        assert csrf.validate(value) is True

    def test_expired_token_is_cleared(self, csrf, clock, session):
        token = csrf.issue()
        clock.advance(csrf.config.token_ttl + 1)
        assert csrf.current() is None
        assert csrf.validate(token) is False
        assert conf.CSRF_TOKEN_KEY not in session

    def test_live_at_expiry_instant(self, csrf, clock):
        token = csrf.issue()
        clock.advance(csrf.config.token_ttl)
        assert csrf.validate(token) is True

    def test_refresh_invalidates_previous(self, csrf):
        old = csrf.issue()
        new = csrf.refresh()
        assert old != new
        assert csrf.validate(old) is False
        assert csrf.validate(new) is True

    def test_ensure_reuses_live_token(self, csrf):
        token = csrf.ensure()
        assert csrf.ensure() == token

    def test_clear(self, csrf):
        token = csrf.issue()
        csrf.clear()
        assert csrf.validate(token) is False

    def test_malformed_stored_token(self, csrf, session):
        session[conf.CSRF_TOKEN_KEY] = "not-json"
        assert csrf.current() is None
        assert conf.CSRF_TOKEN_KEY not in session

    def test_session_invalidation_drops_token(self, csrf, session):
        token = csrf.issue()
        session.invalidate()
        assert csrf.validate(token) is False


# --- Test Validation ---

class TestValidation:
    """Failures are reported as CSRF violations."""

    def test_mismatch_logged(self, csrf, security_logger):
        csrf.issue()
        assert csrf.validate("b" * 64) is False
        events = security_logger.get_logs_by_type(SecurityEventType.CSRF_VIOLATION)
        assert len(events) == 1
        assert events[0].details["reason"] == "token_mismatch"

    def test_missing_candidate(self, csrf, security_logger):
        csrf.issue()
        assert csrf.validate(None) is False
        assert csrf.validate("") is False
        events = security_logger.get_logs_by_type(SecurityEventType.CSRF_VIOLATION)
        assert {e.details["reason"] for e in events} == {"missing_candidate"}

    def test_no_token_stored(self, csrf, security_logger):
        assert csrf.validate("a" * 64) is False
        event = security_logger.get_logs_by_type(SecurityEventType.CSRF_VIOLATION)[0]
        assert event.details["reason"] == "missing_token"

    def test_violation_carries_request_context(self, csrf, security_logger):
        csrf.issue()
        with request_context("/api/cart", "post", user_id="u-1"):
            csrf.validate("b" * 64)
        event = security_logger.get_logs_by_type(SecurityEventType.CSRF_VIOLATION)[0]
        assert event.url == "/api/cart"
        assert event.method == "POST"
        assert event.user_id == "u-1"

    def test_validate_headers_case_insensitive(self, csrf):
        token = csrf.issue()
        assert csrf.validate_headers({"x-csrf-token": token}) is True
        assert csrf.validate_headers({"X-CSRF-TOKEN": token}) is True
        assert csrf.validate_headers({"Accept": "*/*"}) is False

    def test_validate_form(self, csrf):
        token = csrf.issue()
        assert csrf.validate_form({"csrf_token": token}) is True
        assert csrf.validate_form({"csrf_token": 123}) is False
        assert csrf.validate_form({}) is False

    def test_validate_origin(self, csrf):
        assert csrf.validate_origin("https://shop.example.com") is True
        assert csrf.validate_origin("https://SHOP.example.com/") is True
        assert csrf.validate_origin("https://evil.example.com") is False
        assert csrf.validate_origin(None) is False
        assert csrf.validate_origin("not a url") is False

    def test_validate_origin_explicit_list(self, csrf):
        assert csrf.validate_origin(
            "http://localhost:3000", ["http://localhost:3000"]
        ) is True


# --- Test Request Stamping ---

class TestStamping:
    """Tokens are attached for state-changing verbs only."""

    @pytest.mark.parametrize("method", ["POST", "put", "Patch", "DELETE"])
    def test_header_for_mutating_verbs(self, csrf, method):
        headers = csrf.attach_to_header({}, method)
        assert headers[conf.CSRF_HEADER_NAME] == csrf.current()

    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    def test_no_header_for_safe_verbs(self, csrf, method):
        assert csrf.attach_to_header({}, method) == {}
        assert csrf.current() is None

    def test_form_field(self, csrf):
        fields = csrf.attach_to_form({"qty": 1}, "post")
        assert fields["csrf_token"] == csrf.current()
        assert csrf.attach_to_form({"qty": 1}, "get") == {"qty": 1}

    def test_prepare_request(self, csrf):
        request = csrf.prepare_request(
            "post", {"Accept": "application/json"}, "/api/orders"
        )
        assert request["method"] == "POST"
        assert request["url"] == "/api/orders"
        assert request["headers"]["Accept"] == "application/json"
        assert csrf.validate_headers(request["headers"]) is True

    def test_is_state_changing(self):
        assert is_state_changing("delete") is True
        assert is_state_changing("get") is False
        assert is_state_changing(None) is False


# --- Test Background Refresh ---

class TestBackgroundRefresh:
    """The refresh tick only issues when no live token exists."""

    def test_refresh_interval_is_half_ttl(self):
        assert CSRFConfig(token_ttl=600).refresh_interval == 300

    @pytest.mark.asyncio
    async def test_tick_keeps_live_token(self, csrf):
        token = csrf.issue()
        await csrf.refresher.run_once()
        assert csrf.current() == token

    @pytest.mark.asyncio
    async def test_tick_issues_after_expiry(self, csrf, clock):
        token = csrf.issue()
        clock.advance(csrf.config.token_ttl + 1)
        await csrf.refresher.run_once()
        current = csrf.current()
        assert current is not None
        assert current != token

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session, clock):
        manager = CSRFManager(session, CSRFConfig(token_ttl=0.02), clock=clock)
        manager.start()
        assert manager.refresher.running
        assert manager.current() is not None
        await asyncio.sleep(0.05)
        assert manager.refresher.runs >= 1
        manager.stop()
        assert not manager.refresher.running
