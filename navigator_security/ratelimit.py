"""
Rate Limiter: fixed-window request budgets per identifier.

Each identifier gets ``max_requests`` per ``window`` seconds. The window
starts with the first request and resets once ``now >= reset_at``. A
request over budget is denied without being counted, so the count never
exceeds the budget and ``retry_after`` points at the real window end.

State is in memory only and local to one limiter instance; two processes
limiting the same identifier do not see each other's counts.
"""
import math
import time
import random
import asyncio
import inspect
import logging
import functools
from typing import Any, Callable, Optional
from collections.abc import Awaitable

from pydantic import BaseModel, Field

from .exceptions import RateLimitExceeded
from .logger import SecurityLogger
from .scheduler import PeriodicTask

logger = logging.getLogger("navigator.ratelimit")

SWEEP_INTERVAL = 60


class RateLimitConfig(BaseModel):
    """Budget for one limiter.

    ``skip_successful_requests`` gives the unit back on ``record_success``
    (only failures count, as for login attempts); ``skip_failed_requests``
    does the same on ``record_failure``.
    """

    max_requests: int = Field(gt=0)
    window: float = Field(gt=0, description="Window length in seconds")
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False
    key_generator: Optional[Callable[[str], str]] = None
    name: str = "default"


class RateLimitRecord(BaseModel):
    identifier: str
    count: int = Field(ge=0)
    window_start: float
    reset_at: float
    last_request_at: float


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


DEFAULT_LIMITS: dict[str, RateLimitConfig] = {
    "login": RateLimitConfig(
        max_requests=5, window=15 * 60,
        skip_successful_requests=True, name="login",
    ),
    "register": RateLimitConfig(max_requests=5, window=15 * 60, name="register"),
    "api": RateLimitConfig(max_requests=100, window=60, name="api"),
    "form": RateLimitConfig(max_requests=10, window=60 * 60, name="form"),
    "upload": RateLimitConfig(max_requests=5, window=60 * 60, name="upload"),
    "password_reset": RateLimitConfig(
        max_requests=3, window=60 * 60, name="password_reset"
    ),
    "search": RateLimitConfig(max_requests=30, window=60, name="search"),
    "review": RateLimitConfig(max_requests=5, window=60 * 60, name="review"),
}


class RateLimiter:
    """In-memory fixed-window limiter.

    Args:
        config: Budget for this limiter.
        security_logger: Receives ``rate_limit_exceeded`` events on denial.
        clock: Wall clock returning epoch seconds.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        security_logger: Optional[SecurityLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._security = security_logger
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}
        self._sweeper = PeriodicTask(
            SWEEP_INTERVAL, self.sweep, name=f"ratelimit-sweep-{config.name}"
        )

    def __repr__(self) -> str:
        return (
            f'<RateLimiter {self.config.name} '
            f'{self.config.max_requests}/{self.config.window}s '
            f'identifiers={len(self._records)}>'
        )

    def __len__(self) -> int:
        return len(self._records)

    def _key(self, identifier: str) -> str:
        if self.config.key_generator is not None:
            return self.config.key_generator(identifier)
        return identifier

    def _new_window(self, key: str, now: float) -> RateLimitRecord:
        record = RateLimitRecord(
            identifier=key,
            count=1,
            window_start=now,
            reset_at=now + self.config.window,
            last_request_at=now,
        )
        self._records[key] = record
        return record

    def check_limit(self, identifier: str) -> RateLimitResult:
        """Count one request for ``identifier`` if the budget allows it."""
        key = self._key(identifier)
        now = self._clock()
        record = self._records.get(key)

        if record is None or now >= record.reset_at:
            record = self._new_window(key, now)
            return RateLimitResult(
                allowed=True,
                remaining=self.config.max_requests - 1,
                reset_at=record.reset_at,
            )

        if record.count >= self.config.max_requests:
            retry_after = max(1, math.ceil(record.reset_at - now))
            self._denied(key, retry_after)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=record.reset_at,
                retry_after=retry_after,
            )

        record.count += 1
        record.last_request_at = now
        return RateLimitResult(
            allowed=True,
            remaining=self.config.max_requests - record.count,
            reset_at=record.reset_at,
        )

    def _denied(self, key: str, retry_after: int) -> None:
        logger.info(
            "Rate limit %s exceeded for %s (retry in %ss)",
            self.config.name, key, retry_after,
        )
        if self._security is not None:
            self._security.log_rate_limit_exceeded(
                self.config.name, key, {"retry_after": retry_after}
            )

    def _give_back(self, identifier: str) -> None:
        record = self._records.get(self._key(identifier))
        if record is not None and record.count > 0:
            record.count -= 1

    def record_success(self, identifier: str) -> None:
        if self.config.skip_successful_requests:
            self._give_back(identifier)

    def record_failure(self, identifier: str) -> None:
        if self.config.skip_failed_requests:
            self._give_back(identifier)

    def status(self, identifier: str) -> Optional[RateLimitResult]:
        """Current budget for ``identifier`` without counting a request."""
        record = self._records.get(self._key(identifier))
        if record is None:
            return None
        now = self._clock()
        if now >= record.reset_at:
            return RateLimitResult(
                allowed=True,
                remaining=self.config.max_requests,
                reset_at=now + self.config.window,
            )
        exhausted = record.count >= self.config.max_requests
        return RateLimitResult(
            allowed=not exhausted,
            remaining=max(0, self.config.max_requests - record.count),
            reset_at=record.reset_at,
            retry_after=max(1, math.ceil(record.reset_at - now)) if exhausted else None,
        )

    def reset(self, identifier: str) -> None:
        self._records.pop(self._key(identifier), None)

    def reset_all(self) -> None:
        self._records.clear()

    def stats(self) -> dict[str, int]:
        now = self._clock()
        active = 0
        total = 0
        for record in self._records.values():
            total += record.count
            if now < record.reset_at:
                active += 1
        return {
            "total_identifiers": len(self._records),
            "active_identifiers": active,
            "total_requests": total,
        }

    def sweep(self) -> int:
        """Drop records whose window has elapsed. Returns the number dropped."""
        now = self._clock()
        expired = [
            key for key, record in self._records.items() if now >= record.reset_at
        ]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug(
                "Swept %d expired record(s) from %s", len(expired), self.config.name
            )
        return len(expired)

    def start(self) -> None:
        """Start the periodic sweep (needs a running loop)."""
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()


class RateLimiters:
    """The preconfigured limiters of an application, built explicitly."""

    def __init__(self, limiters: dict[str, RateLimiter]):
        self._limiters = limiters

    def __getattr__(self, name: str) -> RateLimiter:
        try:
            return self.__dict__["_limiters"][name]
        except KeyError:
            raise AttributeError(name) from None

    def __getitem__(self, name: str) -> RateLimiter:
        return self._limiters[name]

    def __iter__(self):
        return iter(self._limiters.values())

    def names(self) -> list[str]:
        return list(self._limiters)

    def start(self) -> None:
        for limiter in self._limiters.values():
            limiter.start()

    def stop(self) -> None:
        for limiter in self._limiters.values():
            limiter.stop()


def create_rate_limiters(
    security_logger: Optional[SecurityLogger] = None,
    clock: Callable[[], float] = time.time,
    limits: Optional[dict[str, RateLimitConfig]] = None,
) -> RateLimiters:
    """Build one limiter per entry of ``limits`` (``DEFAULT_LIMITS``)."""
    limits = DEFAULT_LIMITS if limits is None else limits
    return RateLimiters({
        name: RateLimiter(config, security_logger=security_logger, clock=clock)
        for name, config in limits.items()
    })


# ---------------------------------------------------------------------------
# Caller helpers
# ---------------------------------------------------------------------------

def rate_limited(limiter: RateLimiter, identifier: str) -> Callable:
    """Decorate a function so each call is counted against ``limiter``.

    A denied call raises ``RateLimitExceeded`` without running. A call
    that returns is reported with ``record_success``, one that raises
    with ``record_failure``. Works for plain and coroutine functions.

    Example:
        @rate_limited(limiters.search, user_id)
        async def search(query): ...
    """
    def _check() -> None:
        result = limiter.check_limit(identifier)
        if not result.allowed:
            raise RateLimitExceeded(identifier, result.retry_after)

    def decorator(fn: Callable) -> Callable:
        if inspect.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                _check()
                try:
                    response = await fn(*args, **kwargs)
                except Exception:
                    limiter.record_failure(identifier)
                    raise
                limiter.record_success(identifier)
                return response
            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            _check()
            try:
                response = fn(*args, **kwargs)
            except Exception:
                limiter.record_failure(identifier)
                raise
            limiter.record_success(identifier)
            return response
        return wrapper

    return decorator


def get_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 1.0,
) -> float:
    """Exponential backoff in seconds, capped, plus up to ``jitter`` seconds."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + random.uniform(0, jitter)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Await ``fn()`` until it succeeds or ``max_attempts`` are used.

    Raises:
        The last exception raised by ``fn``.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    for attempt in range(max_attempts):
        try:
            return await fn()
        except retry_on as err:
            if attempt == max_attempts - 1:
                raise
            delay = get_backoff_delay(attempt, base_delay)
            logger.debug(
                "Attempt %d failed (%s), retrying in %.2fs", attempt + 1, err, delay
            )
            await sleep(delay)
