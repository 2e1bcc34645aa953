"""
CSRF Manager: issue, stamp and validate anti-forgery tokens.

At most one live token exists per session. It lives in the session-scoped
store as a small JSON document ``{"value": ..., "expires_at": ...}``:

    NO_TOKEN --issue--> ISSUED --(now <= expires_at)--> VALID
                           \\--(now > expires_at)--> EXPIRED --> NO_TOKEN

State-changing requests (POST, PUT, PATCH, DELETE) carry the token in the
``X-CSRF-Token`` header or the ``csrf_token`` form field. Validation
always compares against the token currently stored: a refresh between
building a request and validating it rejects that request.
"""
import time
import random
import secrets
import logging
from typing import Any, Callable, Optional
from urllib.parse import urlsplit
from collections.abc import Mapping, MutableMapping

import orjson
from pydantic import BaseModel, Field, ValidationError, field_validator

from . import conf
from .logger import SecurityLogger
from .scheduler import PeriodicTask
from .vault.crypto import constant_time_equals

logger = logging.getLogger("navigator.csrf")

TOKEN_BYTES = 32
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class CSRFToken(BaseModel):
    value: str = Field(min_length=TOKEN_BYTES * 2, max_length=TOKEN_BYTES * 2)
    expires_at: float

    model_config = {"frozen": True}

    def is_live(self, now: float) -> bool:
        return now <= self.expires_at


class CSRFConfig(BaseModel):
    """Validated CSRF settings."""

    token_ttl: float = Field(default=60 * 60, gt=0)
    header_name: str = conf.CSRF_HEADER_NAME
    field_name: str = conf.CSRF_FIELD_NAME
    allowed_origins: list[str] = Field(default_factory=list)

    @field_validator("allowed_origins")
    @classmethod
    def normalize_origins(cls, v: list[str]) -> list[str]:
        return [origin.rstrip("/").lower() for origin in v]

    @property
    def refresh_interval(self) -> float:
        return self.token_ttl / 2

    @classmethod
    def from_env(cls) -> "CSRFConfig":
        """Create CSRFConfig from NAVIGATOR_SECURITY_* variables."""
        return cls(
            token_ttl=conf.CSRF_TOKEN_TTL,
            allowed_origins=conf.CSRF_ALLOWED_ORIGINS,
        )


def is_state_changing(method: Optional[str]) -> bool:
    return bool(method) and method.upper() in STATE_CHANGING_METHODS


class CSRFManager:
    """Anti-forgery token lifecycle for one session.

    Args:
        session: Session-scoped store (the token dies with the session).
        config: CSRF settings; defaults to ``CSRFConfig()``.
        security_logger: Receives CSRF violation and degraded events.
        clock: Wall clock returning epoch seconds.
    """

    def __init__(
        self,
        session: MutableMapping[str, str],
        config: Optional[CSRFConfig] = None,
        *,
        security_logger: Optional[SecurityLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._session = session
        self.config = config or CSRFConfig()
        self._security = security_logger
        self._clock = clock
        self._refresher = PeriodicTask(
            self.config.refresh_interval,
            self._refresh_tick,
            name="csrf-refresh",
        )

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def generate(self) -> str:
        """Return a new 64 hex character token value.

        Falls back to a non-cryptographic generator when the system
        CSPRNG is unavailable and records a degraded security event.
        """
        try:
            return secrets.token_hex(TOKEN_BYTES)
        except (OSError, NotImplementedError) as err:
            logger.error("Secure random source unavailable: %s", err)
            if self._security is not None:
                self._security.log_degraded_security(
                    "csrf", "CSPRNG unavailable, using fallback generator"
                )
            value = random.Random().getrandbits(TOKEN_BYTES * 8)
            return f"{value:0{TOKEN_BYTES * 2}x}"

    def issue(self, token: Optional[str] = None) -> str:
        """Store ``token`` (or a new one) as the live token."""
        value = token or self.generate()
        record = CSRFToken(
            value=value, expires_at=self._clock() + self.config.token_ttl
        )
        self._session[conf.CSRF_TOKEN_KEY] = orjson.dumps(
            record.model_dump()
        ).decode("utf-8")
        logger.debug("Issued CSRF token (expires_at=%s)", record.expires_at)
        return record.value

    def _load(self) -> Optional[CSRFToken]:
        raw = self._session.get(conf.CSRF_TOKEN_KEY)
        if raw is None:
            return None
        try:
            return CSRFToken.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as err:
            logger.warning("Discarding malformed CSRF token: %s", err)
            self.clear()
            return None

    def current(self) -> Optional[str]:
        """The live token value, or None. An expired token is cleared."""
        token = self._load()
        if token is None:
            return None
        if not token.is_live(self._clock()):
            self.clear()
            return None
        return token.value

    def has_valid_token(self) -> bool:
        return self.current() is not None

    def ensure(self) -> str:
        return self.current() or self.issue()

    def refresh(self) -> str:
        """Replace the token wholesale. The previous value stops validating."""
        return self.issue()

    def clear(self) -> None:
        self._session.pop(conf.CSRF_TOKEN_KEY, None)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, candidate: Optional[str], **details: Any) -> bool:
        """Constant-time check of ``candidate`` against the live token.

        Failures are logged as CSRF violations with a reason.
        """
        stored = self.current()
        if stored is None:
            reason = "missing_token"
        elif not candidate:
            reason = "missing_candidate"
        elif not constant_time_equals(stored, candidate):
            reason = "token_mismatch"
        else:
            return True
        self._violation(reason, **details)
        return False

    def _violation(self, reason: str, **details: Any) -> None:
        logger.warning("CSRF validation failed: %s", reason)
        if self._security is not None:
            self._security.log_csrf_violation({"reason": reason, **details})

    def validate_headers(self, headers: Mapping[str, str]) -> bool:
        """Validate the token carried in request headers (any case)."""
        wanted = self.config.header_name.lower()
        candidate = next(
            (v for k, v in headers.items() if k.lower() == wanted), None
        )
        return self.validate(candidate, source="header")

    def validate_form(self, fields: Mapping[str, Any]) -> bool:
        candidate = fields.get(self.config.field_name)
        if candidate is not None and not isinstance(candidate, str):
            candidate = None
        return self.validate(candidate, source="form")

    def validate_origin(
        self, origin: Optional[str], allowed_origins: Optional[list[str]] = None
    ) -> bool:
        """Check that a request origin belongs to the allowed set."""
        if allowed_origins is None:
            allowed = self.config.allowed_origins
        else:
            allowed = [o.rstrip("/").lower() for o in allowed_origins]
        if not origin:
            self._violation("missing_origin")
            return False
        parts = urlsplit(origin.strip())
        if not parts.scheme or not parts.netloc:
            self._violation("malformed_origin", origin=origin)
            return False
        normalized = f"{parts.scheme}://{parts.netloc}".lower()
        if normalized in allowed:
            return True
        self._violation("origin_not_allowed", origin=origin)
        return False

    # ------------------------------------------------------------------
    # Request stamping
    # ------------------------------------------------------------------

    def attach_to_header(
        self, headers: MutableMapping[str, str], method: str
    ) -> MutableMapping[str, str]:
        """Inject the token into ``headers`` for state-changing verbs."""
        if is_state_changing(method):
            headers[self.config.header_name] = self.ensure()
        return headers

    def attach_to_form(
        self, fields: MutableMapping[str, Any], method: str
    ) -> MutableMapping[str, Any]:
        if is_state_changing(method):
            fields[self.config.field_name] = self.ensure()
        return fields

    def prepare_request(
        self,
        method: str,
        headers: Optional[Mapping[str, str]] = None,
        url: Optional[str] = None,
    ) -> dict[str, Any]:
        """Request-config middleware: returns a stamped copy of the request.

        Example:
            req = csrf.prepare_request("POST", {"Accept": "application/json"})
            session.post(url, headers=req["headers"])
        """
        stamped = dict(headers or {})
        self.attach_to_header(stamped, method)
        return {"method": method.upper(), "url": url, "headers": stamped}

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    def _refresh_tick(self) -> None:
        # never replace a live token, requests may already carry it
        if self.current() is None:
            self.issue()

    def start(self) -> None:
        """Issue a token if needed and start the background refresh."""
        self.ensure()
        self._refresher.start()

    def stop(self) -> None:
        self._refresher.stop()

    @property
    def refresher(self) -> PeriodicTask:
        return self._refresher
