"""
Security Logger: a structured, bounded, append-only security event log.

Every event is stamped automatically with an id, a timestamp, the current
user and the current request (see ``navigator_security.context``).
Sensitive values in ``details`` are redacted before storage, so the log
cannot become a secondary leak vector:

- email addresses are masked (``ab***@example.com``)
- any other string is capped at 100 characters

Storage is bounded by ``max_log_size`` (oldest evicted first) and by a
retention window enforced by ``purge_expired()``, which ``start()``
schedules periodically.

Each stored event is mirrored to the stdlib logger ``navigator.security``
and, when a ``RemoteLogSink`` is configured, posted to a remote endpoint.
"""
import io
import csv
import re
import time
import uuid
import asyncio
import logging
from enum import Enum
from collections import deque
from collections.abc import MutableMapping
from typing import Any, Callable, Optional

import orjson
import aiohttp
from pydantic import BaseModel, Field, ValidationError, field_validator

from . import conf
from .context import get_current_user, get_request_context
from .scheduler import PeriodicTask

logger = logging.getLogger("navigator.security")

MAX_DETAIL_LENGTH = 100
RECENT_WINDOW = 24 * 60 * 60

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


class SecurityEventType(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    XSS_ATTEMPT = "xss_attempt"
    CSRF_VIOLATION = "csrf_violation"
    SQL_INJECTION = "sql_injection"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_BREACH = "data_breach"
    MALICIOUS_REQUEST = "malicious_request"
    VALIDATION_FAILURE = "validation_failure"
    ENCRYPTION_ERROR = "encryption_error"
    SESSION_HIJACK = "session_hijack"
    BRUTE_FORCE = "brute_force"
    DEGRADED_SECURITY = "degraded_security"


class SecuritySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def log_level(self) -> int:
        """stdlib logging level used when mirroring an event."""
        return _SEVERITY_LOG_LEVEL[self]


_SEVERITY_RANK = {
    SecuritySeverity.LOW: 0,
    SecuritySeverity.MEDIUM: 1,
    SecuritySeverity.HIGH: 2,
    SecuritySeverity.CRITICAL: 3,
}

_SEVERITY_LOG_LEVEL = {
    SecuritySeverity.LOW: logging.INFO,
    SecuritySeverity.MEDIUM: logging.WARNING,
    SecuritySeverity.HIGH: logging.ERROR,
    SecuritySeverity.CRITICAL: logging.CRITICAL,
}


class SecurityEvent(BaseModel):
    """A single security event. Never mutated after creation."""

    id: str
    type: SecurityEventType
    severity: SecuritySeverity
    timestamp: float
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    status_code: Optional[int] = None

    model_config = {"frozen": True}


class EventFilter(BaseModel):
    """Criteria for ``SecurityLogger.query``. Unset fields match anything."""

    type: Optional[SecurityEventType] = None
    severity: Optional[SecuritySeverity] = None
    min_severity: Optional[SecuritySeverity] = None
    since: Optional[float] = None
    until: Optional[float] = None
    user_id: Optional[str] = None
    limit: int = Field(default=100, ge=1)

    def matches(self, event: SecurityEvent) -> bool:
        if self.type is not None and event.type != self.type:
            return False
        if self.severity is not None and event.severity != self.severity:
            return False
        if (
            self.min_severity is not None
            and event.severity.rank < self.min_severity.rank
        ):
            return False
        if self.since is not None and event.timestamp < self.since:
            return False
        if self.until is not None and event.timestamp > self.until:
            return False
        if self.user_id is not None and event.user_id != self.user_id:
            return False
        return True


class LoggerConfig(BaseModel):
    """Validated Security Logger settings."""

    console_logging: bool = True
    max_log_size: int = Field(default=1000, ge=1)
    retention: float = Field(default=7 * 24 * 60 * 60, gt=0)
    min_severity: SecuritySeverity = SecuritySeverity.LOW
    sweep_interval: float = Field(default=60 * 60, gt=0)
    remote_endpoint: Optional[str] = None

    @field_validator("remote_endpoint")
    @classmethod
    def validate_endpoint(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"Unsupported remote log endpoint: {v}")
        return v

    @classmethod
    def from_env(cls) -> "LoggerConfig":
        """Create LoggerConfig from NAVIGATOR_SECURITY_* variables."""
        return cls(
            console_logging=conf.SECURITY_CONSOLE_LOGGING,
            max_log_size=conf.SECURITY_MAX_LOG_SIZE,
            retention=conf.SECURITY_LOG_RETENTION,
            min_severity=conf.SECURITY_LOG_LEVEL,
            remote_endpoint=conf.SECURITY_REMOTE_LOG_ENDPOINT,
        )


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

def mask_email(email: str) -> str:
    """Keep the first two characters of the local part and the domain."""
    local, sep, domain = email.partition("@")
    if not sep:
        return truncate(email)
    return f"{local[:2]}***@{domain}"


def truncate(value: str, limit: int = MAX_DETAIL_LENGTH) -> str:
    if len(value) > limit:
        return value[:limit] + "..."
    return value


def redact(value: Any, key: Optional[str] = None) -> Any:
    """Recursively redact a details value before it is stored."""
    if isinstance(value, str):
        if (key and "email" in key.lower()) or _EMAIL_RE.match(value):
            return truncate(mask_email(value))
        return truncate(value)
    if isinstance(value, dict):
        return {str(k): redact(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v, key) for v in value]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return truncate(str(value))


# ---------------------------------------------------------------------------
# Remote shipping
# ---------------------------------------------------------------------------

class RemoteLogSink:
    """POST each stored event as JSON to a remote collector."""

    def __init__(self, endpoint: str, timeout: float = 5.0):
        self.endpoint = endpoint
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def send(self, event: SecurityEvent) -> bool:
        payload = orjson.dumps(event.model_dump(mode="json"))
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    self.endpoint,
                    data=payload,
                    headers={"Content-Type": "application/json"},
                ) as response:
                    if response.status >= 400:
                        logger.warning(
                            "Remote log endpoint %s answered %s",
                            self.endpoint, response.status,
                        )
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            logger.error(
                "Failed to send security event to %s: %s", self.endpoint, err
            )
            return False


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------

class SecurityLogger:
    """Bounded security event log.

    Args:
        config: Logger settings; defaults to ``LoggerConfig()``.
        storage: Optional persistent store; events are saved under
            ``SECURITY_LOGS_KEY`` and reloaded on construction.
        clock: Wall clock returning epoch seconds.
        sink: Optional remote sink; built from ``config.remote_endpoint``
            when not given.
    """

    def __init__(
        self,
        config: Optional[LoggerConfig] = None,
        *,
        storage: Optional[MutableMapping[str, str]] = None,
        clock: Callable[[], float] = time.time,
        sink: Optional[RemoteLogSink] = None,
    ):
        self.config = config or LoggerConfig()
        self._storage = storage
        self._clock = clock
        if sink is None and self.config.remote_endpoint:
            sink = RemoteLogSink(self.config.remote_endpoint)
        self._sink = sink
        self._pending: set[asyncio.Task] = set()
        self._events: deque[SecurityEvent] = deque(
            maxlen=self.config.max_log_size
        )
        self._sweeper = PeriodicTask(
            self.config.sweep_interval,
            self.purge_expired,
            name="security-log-retention",
        )
        self._load()
        self.purge_expired()

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> list[SecurityEvent]:
        """Retained events, oldest first."""
        return list(self._events)

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def should_log(self, severity: SecuritySeverity) -> bool:
        return severity.rank >= self.config.min_severity.rank

    def log(
        self,
        type: SecurityEventType,
        severity: SecuritySeverity,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        """Record a security event.

        Returns:
            The stored event, or None when dropped by ``min_severity``.
        """
        type = SecurityEventType(type)
        severity = SecuritySeverity(severity)
        if not self.should_log(severity):
            return None
        details = dict(details or {})
        request = get_request_context()
        method = details.pop("method", None) or (
            request.method if request else None
        )
        status_code = details.pop("status_code", None)
        event = SecurityEvent(
            id=f"sec_{uuid.uuid4().hex}",
            type=type,
            severity=severity,
            timestamp=self._clock(),
            message=truncate(message, 200),
            details=redact(details),
            user_id=get_current_user(),
            url=request.url if request else None,
            method=method,
            status_code=status_code,
        )
        self._append(event)
        return event

    def _append(self, event: SecurityEvent) -> None:
        self._events.append(event)
        self._save()
        if self.config.console_logging:
            logger.log(
                event.severity.log_level,
                "[Security] %s - %s",
                event.type.value.upper(), event.message,
            )
        if self._sink is not None:
            self._ship(event)

    def _ship(self, event: SecurityEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, remote shipping skipped")
            return
        task = loop.create_task(self._sink.send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for in-flight remote deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if self._storage is None:
            return
        raw = self._storage.get(conf.SECURITY_LOGS_KEY)
        if not raw:
            return
        try:
            items = orjson.loads(raw)
            events = [SecurityEvent.model_validate(item) for item in items]
        except (orjson.JSONDecodeError, ValidationError, TypeError) as err:
            logger.error("Discarding unreadable security log: %s", err)
            self._storage.pop(conf.SECURITY_LOGS_KEY, None)
            return
        events.sort(key=lambda e: e.timestamp)
        self._events.extend(events)

    def _save(self) -> None:
        if self._storage is None:
            return
        payload = [event.model_dump(mode="json") for event in self._events]
        self._storage[conf.SECURITY_LOGS_KEY] = orjson.dumps(payload).decode()

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Evict events older than the retention window.

        Returns:
            Number of evicted events.
        """
        cutoff = self._clock() - self.config.retention
        kept = [event for event in self._events if event.timestamp >= cutoff]
        removed = len(self._events) - len(kept)
        if removed:
            self._events = deque(kept, maxlen=self.config.max_log_size)
            self._save()
            logger.debug("Evicted %d expired security event(s)", removed)
        return removed

    def start(self) -> None:
        """Start the periodic retention sweep (needs a running loop)."""
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()

    def clear(self) -> None:
        self._events.clear()
        self._save()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def query(self, filter: Optional[EventFilter] = None) -> list[SecurityEvent]:
        """Matching events, newest first, capped at ``filter.limit``."""
        filter = filter or EventFilter()
        matched = [event for event in self._events if filter.matches(event)]
        matched.sort(key=lambda e: e.timestamp, reverse=True)
        return matched[:filter.limit]

    def get_logs_by_type(
        self, type: SecurityEventType, limit: int = 100
    ) -> list[SecurityEvent]:
        return self.query(EventFilter(type=type, limit=limit))

    def get_logs_by_severity(
        self, severity: SecuritySeverity, limit: int = 100
    ) -> list[SecurityEvent]:
        return self.query(EventFilter(severity=severity, limit=limit))

    def get_recent_logs(
        self, hours: float = 24, limit: int = 100
    ) -> list[SecurityEvent]:
        since = self._clock() - hours * 60 * 60
        return self.query(EventFilter(since=since, limit=limit))

    def stats(self) -> dict[str, Any]:
        """Aggregates computed in a single pass over retained events."""
        by_type = {t.value: 0 for t in SecurityEventType}
        by_severity = {s.value: 0 for s in SecuritySeverity}
        recent_cutoff = self._clock() - RECENT_WINDOW
        recent = 0
        critical = 0
        for event in self._events:
            by_type[event.type.value] += 1
            by_severity[event.severity.value] += 1
            if event.timestamp >= recent_cutoff:
                recent += 1
            if event.severity is SecuritySeverity.CRITICAL:
                critical += 1
        return {
            "total_events": len(self._events),
            "events_by_type": by_type,
            "events_by_severity": by_severity,
            "recent_events": recent,
            "critical_events": critical,
        }

    def export(self, format: str = "json") -> str:
        """Export retained events as ``json`` or ``csv``.

        Raises:
            ValueError: For any other format.
        """
        if format == "json":
            payload = [event.model_dump(mode="json") for event in self._events]
            return orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode()
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(
                ["ID", "Type", "Severity", "Timestamp", "Message", "User ID", "URL"]
            )
            for event in self._events:
                writer.writerow([
                    event.id,
                    event.type.value,
                    event.severity.value,
                    time.strftime(
                        "%Y-%m-%dT%H:%M:%SZ", time.gmtime(event.timestamp)
                    ),
                    event.message,
                    event.user_id or "",
                    event.url or "",
                ])
            return buffer.getvalue()
        raise ValueError(f"Unsupported export format: {format}")

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def log_failed_login(
        self, email: str, reason: str, details: Optional[dict[str, Any]] = None
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.AUTHENTICATION,
            SecuritySeverity.HIGH,
            f"Failed login attempt for email: {mask_email(email)}",
            {"email": email, "reason": reason, **(details or {})},
        )

    def log_successful_login(
        self, user_id: str, details: Optional[dict[str, Any]] = None
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.AUTHENTICATION,
            SecuritySeverity.LOW,
            f"Successful login for user: {user_id}",
            {"user_id": user_id, **(details or {})},
        )

    def log_xss_attempt(
        self, input: str, location: str, details: Optional[dict[str, Any]] = None
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.XSS_ATTEMPT,
            SecuritySeverity.HIGH,
            f"XSS attempt detected at: {location}",
            {"input": input, "location": location, **(details or {})},
        )

    def log_csrf_violation(
        self, details: Optional[dict[str, Any]] = None
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.CSRF_VIOLATION,
            SecuritySeverity.HIGH,
            "CSRF token validation failed",
            details,
        )

    def log_sql_injection(
        self, input: str, location: str, details: Optional[dict[str, Any]] = None
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.SQL_INJECTION,
            SecuritySeverity.CRITICAL,
            f"SQL injection attempt detected at: {location}",
            {"input": input, "location": location, **(details or {})},
        )

    def log_rate_limit_exceeded(
        self,
        endpoint: str,
        identifier: str,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            SecuritySeverity.MEDIUM,
            f"Rate limit exceeded for endpoint: {endpoint}",
            {"endpoint": endpoint, "identifier": identifier, **(details or {})},
        )

    def log_suspicious_activity(
        self, activity: str, details: Optional[dict[str, Any]] = None
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            SecuritySeverity.MEDIUM,
            f"Suspicious activity detected: {truncate(activity)}",
            {"activity": activity, **(details or {})},
        )

    def log_validation_failure(
        self,
        field: str,
        value: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.VALIDATION_FAILURE,
            SecuritySeverity.LOW,
            f"Validation failed for field: {field}",
            {"field": field, "value": value, "reason": reason, **(details or {})},
        )

    def log_encryption_error(
        self, operation: str, error: str, details: Optional[dict[str, Any]] = None
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.ENCRYPTION_ERROR,
            SecuritySeverity.HIGH,
            f"Encryption error during {operation}",
            {"operation": operation, "error": error, **(details or {})},
        )

    def log_degraded_security(
        self, component: str, reason: str, details: Optional[dict[str, Any]] = None
    ) -> Optional[SecurityEvent]:
        return self.log(
            SecurityEventType.DEGRADED_SECURITY,
            SecuritySeverity.HIGH,
            f"Degraded security in {component}",
            {"component": component, "reason": reason, **(details or {})},
        )
