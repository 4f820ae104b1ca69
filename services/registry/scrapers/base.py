"""
Base provider adapter framework with pacing, retry/backoff, dead letter
queue, and alerting. All provider adapters inherit from BaseAdapter.

Failure taxonomy:
  RetryableProviderError  -- 429 (with optional retry-after), 5xx, timeouts,
                             transport errors. Retried with backoff.
  FatalProviderError      -- other 4xx, malformed payloads. Never retried.
  ProviderAuthError       -- 401/403. Fatal, and aborts the provider run.
"""

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar, Union

import httpx
import sentry_sdk

from services.registry.pipeline.geo import BoundingBox, GridCell
from services.registry.pipeline.models import Page, RawEventRecord, RawVenueRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ProviderError(Exception):
    """Base class for provider request failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableProviderError(ProviderError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class RateLimitedError(RetryableProviderError):
    """HTTP 429. retry_after holds the provider hint in seconds, if any."""


class FatalProviderError(ProviderError):
    pass


class ProviderAuthError(FatalProviderError):
    pass


class IngestionSetupError(Exception):
    """Run cannot start: missing credentials, owner identity, or store."""


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def raise_for_provider_status(response: httpx.Response) -> None:
    """Translate a non-2xx response into the provider error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    reason = f"HTTP {status}: {response.reason_phrase or ''}".strip()
    if status == 429:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        raise RateLimitedError(reason, status_code=status, retry_after=retry_after)
    if status >= 500:
        raise RetryableProviderError(reason, status_code=status)
    if status in (401, 403):
        raise ProviderAuthError(reason, status_code=status)
    raise FatalProviderError(reason, status_code=status)


def classify_exception(exc: BaseException) -> ProviderError:
    """Map arbitrary exceptions from a provider call onto the taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return RetryableProviderError(f"Timeout: {exc}")
    if isinstance(exc, httpx.TransportError):
        return RetryableProviderError(f"Transport error: {exc}")
    if isinstance(exc, (json.JSONDecodeError, ValueError, KeyError, TypeError)):
        return FatalProviderError(f"Malformed payload: {exc}")
    return FatalProviderError(f"{type(exc).__name__}: {exc}")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff with jitter.

    Delay before retry n (0-based) is base_delay * 2**n + uniform(0, max_jitter).
    A provider retry-after hint raises the delay to at least that value,
    capped at max_retry_after.
    """
    max_attempts: int = 4
    base_delay: float = 1.0
    max_jitter: float = 1.0
    max_retry_after: float = 60.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)
    jitter: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    def backoff(self, attempt: int, error: Optional[ProviderError] = None) -> float:
        delay = self.base_delay * (2 ** attempt) + self.jitter(0.0, self.max_jitter)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, min(retry_after, self.max_retry_after))
        return delay


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    label: str = "request",
) -> T:
    """
    Run one async operation under the retry policy.

    Fatal errors propagate immediately. Retryable errors are retried up to
    policy.max_attempts total attempts; the last error then propagates and
    the caller skips its unit of work.
    """
    policy = policy or RetryPolicy()
    last_error: Optional[ProviderError] = None

    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as exc:
            error = classify_exception(exc)
            if isinstance(error, FatalProviderError):
                logger.warning("%s failed (fatal, not retrying): %s", label, error)
                if error is exc:
                    raise
                raise error from exc

            last_error = error
            if attempt < policy.max_attempts - 1:
                delay = policy.backoff(attempt, error)
                logger.warning(
                    "%s attempt %d/%d failed: %s. Retrying in %.2fs...",
                    label, attempt + 1, policy.max_attempts, error, delay,
                )
                await policy.sleep(delay)
            else:
                logger.error("%s: all %d attempts failed: %s", label, policy.max_attempts, error)

    assert last_error is not None
    raise last_error


# ---------------------------------------------------------------------------
# Pacing
# ---------------------------------------------------------------------------

class RequestPacer:
    """
    Enforces a minimum interval between consecutive provider requests.

    One pacer per adapter; primary page requests and secondary detail
    requests share it.
    """

    def __init__(
        self,
        min_interval_s: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.min_interval_s = min_interval_s
        self._sleep = sleep
        self._clock = clock or (lambda: asyncio.get_running_loop().time())
        self._last_request: Optional[float] = None
        self.total_waited_s = 0.0

    async def acquire(self) -> None:
        """Wait until min_interval_s has elapsed since the previous request."""
        if self._last_request is not None and self.min_interval_s > 0:
            elapsed = self._clock() - self._last_request
            wait = self.min_interval_s - elapsed
            if wait > 0:
                self.total_waited_s += wait
                await self._sleep(wait)
        self._last_request = self._clock()


# ---------------------------------------------------------------------------
# Dead letter queue
# ---------------------------------------------------------------------------

class DeadLetterQueue:
    """JSONL dead letter queue for records the store rejected."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def add(self, source: str, item: dict[str, Any], error: str) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": source,
            "error": str(error),
            "item": item,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

        logger.warning("Added item to dead letter queue: %s - %s", source, error)

    def read_all(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, "r") as f:
            return [json.loads(line) for line in f if line.strip()]

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


# ---------------------------------------------------------------------------
# Adapter base
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceRegistry:
    """Provider registration metadata."""
    name: str
    base_url: str
    request_delay_s: float
    # Grid step for swept providers; None for query-driven providers
    grid_step_deg: Optional[float] = None


class BaseAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Provides:
    - Paced HTTP requests through a shared httpx.AsyncClient
    - HTTP status -> provider error translation (429 retry-after included)
    - Retry with exponential backoff per page
    - Alerting on consecutive unit failures

    Subclasses map provider payloads into Raw* records and define the sweep
    units (grid cells or queries) for a scope.
    """

    SOURCE_REGISTRY: Optional[SourceRegistry] = None

    USER_AGENT = "VenueRegistry/1.0 (venue ingestion; +https://example.org/venue-registry)"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        pacer: Optional[RequestPacer] = None,
    ):
        if self.SOURCE_REGISTRY is None:
            raise ValueError(f"{self.__class__.__name__} must define SOURCE_REGISTRY")

        self.client = client
        self.registry = self.SOURCE_REGISTRY
        self.retry_policy = retry_policy or RetryPolicy()
        self.pacer = pacer or RequestPacer(self.registry.request_delay_s)
        self.consecutive_failures = 0
        self._alert_threshold = 3

    @property
    def name(self) -> str:
        return self.registry.name

    # -- Subclass interface --------------------------------------------------

    @abstractmethod
    def iter_units(self, bounds: BoundingBox) -> Iterator[Any]:
        """Sweep units covering bounds, in deterministic order."""

    @abstractmethod
    async def fetch_page(self, unit: Any, page_token: Optional[str] = None) -> Page:
        """Fetch one page for a unit and map it into raw records."""

    # -- Shared helpers ------------------------------------------------------

    def get_headers(self) -> dict[str, str]:
        return {"User-Agent": self.USER_AGENT, "Accept": "application/json"}

    async def _request_json(self, method: str, url: str, **kwargs) -> Any:
        """
        One paced request. Raises provider errors for non-2xx status and
        FatalProviderError when the body is not JSON.
        """
        await self.pacer.acquire()
        headers = {**self.get_headers(), **kwargs.pop("headers", {})}
        response = await self.client.request(method, url, headers=headers, **kwargs)
        raise_for_provider_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise FatalProviderError(
                f"Malformed JSON from {self.name}: {exc}", status_code=response.status_code,
            ) from exc

    async def fetch_page_with_retry(self, unit: Any, page_token: Optional[str] = None) -> Page:
        return await retry_with_backoff(
            lambda: self.fetch_page(unit, page_token),
            self.retry_policy,
            label=f"{self.name} {self.unit_label(unit)} page={page_token}",
        )

    async def resolve_event_venue(self, event: RawEventRecord) -> Optional[RawVenueRecord]:
        """
        Venue for a raw event. Adapters whose listings may omit the venue
        override this with a secondary request.
        """
        return event.venue

    def unit_label(self, unit: Any) -> str:
        if isinstance(unit, GridCell):
            return str(unit)
        return repr(unit)

    # -- Failure tracking ----------------------------------------------------

    def record_unit_success(self) -> None:
        self.consecutive_failures = 0

    def record_unit_failure(self) -> None:
        self.consecutive_failures += 1
        self._check_alert()

    def _check_alert(self) -> None:
        """Alert on consecutive unit failures."""
        if self.consecutive_failures >= self._alert_threshold:
            error_msg = (
                f"ALERT: {self.name} has failed "
                f"{self.consecutive_failures} consecutive units"
            )
            logger.warning(error_msg)
            sentry_sdk.capture_message(error_msg, level="warning")
