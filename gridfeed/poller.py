"""
GridFeed — Market Data Poller
Periodically requests market data types from the function gateway, caches
live answers for a short TTL, and substitutes simulated values whenever the
gateway fails or reports degraded data.

Request flow (one ``fetch``)
----------------------------
  1. Fresh cache hit   → return cached response (source="cached"), no I/O.
  2. Gateway call      → the only suspension point (plus retry sleeps).
  3. Live success      → cache it, status "connected", return it.
  4. Any failure       → synthesize, status "fallback", return it.

Every path ends in a shaped ``DataResponse`` (or None for an unknown data
type).  Nothing is raised to the caller.

Lifecycle
---------
  poller = MarketDataPoller(gateway)
  handle = poller.start()     # immediate refetch_all(), then every interval
  ...
  await poller.stop()         # or handle.cancel(), or ``async with poller``

Connection status
-----------------
  connecting ──live──▶ connected ◀──live── fallback
       └───────failure──────┴──failure──▶ fallback

The first entry into fallback emits one warning notice; consecutive
failures stay silent until a live success resets the flag.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from loguru import logger
from pydantic import ValidationError

from gridfeed.cache import ResponseCache
from gridfeed.config import (
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_FUNCTION_NAME,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    Settings,
)
from gridfeed.gateway import GatewayError, GatewayResult, RemoteGateway
from gridfeed.models import (
    PAYLOAD_MODELS,
    ConnectionStatus,
    DataRequest,
    DataResponse,
    DataSource,
    DataType,
    utc_now_iso,
)
from gridfeed.notices import (
    ESCALATION_NOTICE,
    FALLBACK_NOTICE,
    RECOVERED_NOTICE,
    Notice,
    NoticeLevel,
    Notifier,
    log_notice,
)
from gridfeed.synthetic import synthesize

# 24 hours of history at the default 5-minute poll interval
DEFAULT_HISTORY_SIZE = 288


class PollHandle:
    """Cancellable handle for a running poll loop."""

    def __init__(self, task: asyncio.Task) -> None:
        self._task = task

    @property
    def running(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


class MarketDataPoller:
    """
    Polls a function gateway for market data with TTL caching and simulated
    fallback.

    Parameters
    ----------
    gateway:
        Any ``RemoteGateway`` (e.g. ``HttpGateway``).
    function_name:
        Gateway function that serves every data type.
    data_types:
        Data types refreshed by ``refetch_all()``.  Defaults to all of them.
    ttl:
        Seconds a live response is served from cache.
    poll_interval:
        Seconds between automatic ``refetch_all()`` rounds after ``start()``.
    notifier:
        Receives user-facing notices.  Defaults to logging them.
    clock:
        Monotonic time source used for cache freshness.
    wall_clock:
        Wall-clock source handed to the synthesizer.  None means "now".
    max_retries:
        Extra attempts on retryable gateway errors (429, 5xx, network).
    retry_backoff:
        Base delay in seconds; attempt *n* waits ``retry_backoff * n``.
    coalesce:
        When True, concurrent fetches of the same key share one gateway call.
    notify_on_recovery:
        Emit an info notice when live data returns after a fallback notice.
    escalate_after:
        Emit one error notice after this many consecutive failures.  None
        disables escalation.
    history_size:
        Number of returned responses kept per data type.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        function_name: str = DEFAULT_FUNCTION_NAME,
        data_types: Optional[Iterable[Union[DataType, str]]] = None,
        ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        notifier: Notifier = log_notice,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Optional[Callable[[], datetime]] = None,
        max_retries: int = 0,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        coalesce: bool = False,
        notify_on_recovery: bool = True,
        escalate_after: Optional[int] = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        if max_retries < 0:
            raise ValueError(f"max_retries cannot be negative, got {max_retries}")
        if escalate_after is not None and escalate_after < 1:
            raise ValueError(f"escalate_after must be >= 1, got {escalate_after}")

        requested = list(DataType) if data_types is None else list(data_types)
        types = [DataType.parse(t) for t in requested]
        unknown = [t for t, parsed in zip(requested, types) if parsed is None]
        if unknown:
            raise ValueError(f"Unknown data types: {unknown}")

        self._gateway = gateway
        self.function_name = function_name
        self.data_types: tuple[DataType, ...] = tuple(dict.fromkeys(types))
        self.poll_interval = poll_interval
        self._cache = ResponseCache(ttl, clock)
        self._notifier = notifier
        self._wall_clock = wall_clock
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._coalesce = coalesce
        self._notify_on_recovery = notify_on_recovery
        self._escalate_after = escalate_after

        self._status = ConnectionStatus.CONNECTING
        self._consecutive_failures = 0
        self._fallback_notice_shown = False
        self._escalated = False

        self._current: dict[DataType, DataResponse] = {}
        self._history: dict[DataType, deque[DataResponse]] = {
            dt: deque(maxlen=history_size) for dt in DataType
        }
        self._in_flight: dict[str, asyncio.Future] = {}
        self._ticker: Optional[asyncio.Task] = None
        self._handle: Optional[PollHandle] = None
        self._rounds: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, gateway: RemoteGateway, settings: Settings, **kwargs: Any) -> "MarketDataPoller":
        return cls(
            gateway,
            function_name=settings.function_name,
            ttl=settings.cache_ttl,
            poll_interval=settings.poll_interval,
            max_retries=settings.max_retries,
            retry_backoff=settings.retry_backoff,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def get_current(self, data_type: Union[DataType, str]) -> Optional[DataResponse]:
        """Last value returned by ``fetch`` for *data_type*, without any I/O."""
        dt = DataType.parse(data_type)
        return self._current.get(dt) if dt is not None else None

    def history(self, data_type: Union[DataType, str]) -> list[DataResponse]:
        """Recent responses for *data_type*, oldest first."""
        dt = DataType.parse(data_type)
        return list(self._history[dt]) if dt is not None else []

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch(
        self,
        data_type: Union[DataType, str],
        params: Optional[Mapping[str, Any]] = None,
    ) -> Optional[DataResponse]:
        """
        Return the freshest available value for *data_type*.

        Served from cache when a live response younger than the TTL exists,
        otherwise from the gateway, otherwise simulated.  Returns None only
        for an unrecognized data type.  Param names and values are sent as
        strings; non-string values are converted with ``str()``.
        """
        dt = DataType.parse(data_type)
        if dt is None:
            logger.warning("Poller: unrecognized data type {!r}; no data available.", data_type)
            return None

        request = DataRequest(
            data_type=dt,
            params={str(k): str(v) for k, v in (params or {}).items()},
        )
        entry = self._cache.get(request.key)
        if entry is not None:
            logger.debug("Poller: cache hit for {}.", request.key)
            return self._remember(entry.data.as_cached())

        if not self._coalesce:
            return await self._fetch_remote(request)

        pending = self._in_flight.get(request.key)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_remote(request))
            self._in_flight[request.key] = pending
            pending.add_done_callback(lambda fut, key=request.key: self._release(key, fut))
        else:
            logger.debug("Poller: joining in-flight request for {}.", request.key)
        return await asyncio.shield(pending)

    async def refetch_all(self) -> dict[DataType, Optional[DataResponse]]:
        """Fetch every configured data type concurrently; outcomes are independent."""
        results = await asyncio.gather(*(self.fetch(dt) for dt in self.data_types))
        logger.info(
            "Poller: refreshed {} data types | status={}",
            len(results), self._status.value,
        )
        return dict(zip(self.data_types, results))

    def _release(self, key: str, fut: asyncio.Future) -> None:
        if self._in_flight.get(key) is fut:
            del self._in_flight[key]

    async def _fetch_remote(self, request: DataRequest) -> Optional[DataResponse]:
        response, failure = await self._invoke(request)

        if response is not None:
            self._cache.put(request.key, response)
            self._mark_success()
            return self._remember(response)

        logger.warning(
            "Poller: {} unavailable ({}); serving simulated data.",
            request.data_type.value, failure,
        )
        now = self._wall_clock() if self._wall_clock else None
        fallback = synthesize(request.data_type, now, error=failure)
        self._mark_failure()
        return self._remember(fallback) if fallback is not None else None

    async def _invoke(self, request: DataRequest) -> tuple[Optional[DataResponse], Optional[str]]:
        """Call the gateway with retry.  Returns (live response, None) or (None, reason)."""
        body = request.gateway_body()
        attempts = self._max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                result = await self._gateway.invoke(self.function_name, body)
            except Exception as exc:
                logger.warning("Poller: gateway raised for {}: {!r}", request.data_type.value, exc)
                result = GatewayResult(error=GatewayError(str(exc) or type(exc).__name__, retryable=True))

            if result.error is None:
                return self._parse(request, result.data or {})

            if not result.error.retryable or attempt >= attempts:
                return None, result.error.message

            wait = self._retry_backoff * attempt
            logger.info(
                "Poller: retrying {} in {:.1f}s (attempt {}/{})…",
                request.data_type.value, wait, attempt + 1, attempts,
            )
            await asyncio.sleep(wait)

        return None, "No attempts made"

    @staticmethod
    def _parse(request: DataRequest, body: dict[str, Any]) -> tuple[Optional[DataResponse], Optional[str]]:
        if body.get("success") is False:
            return None, str(body.get("error") or "Gateway reported failure")

        if body.get("source") == DataSource.FALLBACK.value:
            return None, str(body.get("error") or "Gateway is serving degraded data")

        model = PAYLOAD_MODELS[request.data_type]
        try:
            payload = model.model_validate(body.get("data"))
        except ValidationError as exc:
            return None, f"Malformed {request.data_type.value} payload ({exc.error_count()} errors)"

        response = DataResponse(
            success=True,
            data_type=request.data_type,
            source=DataSource.LIVE,
            payload=payload,
            timestamp=str(body.get("timestamp") or utc_now_iso()),
        )
        return response, None

    def _remember(self, response: DataResponse) -> DataResponse:
        self._current[response.data_type] = response
        self._history[response.data_type].append(response)
        return response

    # ------------------------------------------------------------------
    # Status machine
    # ------------------------------------------------------------------

    def _mark_success(self) -> None:
        if self._status is not ConnectionStatus.CONNECTED:
            logger.info("Poller: status {} → connected.", self._status.value)
        self._status = ConnectionStatus.CONNECTED
        self._consecutive_failures = 0
        self._escalated = False

        if self._fallback_notice_shown:
            self._fallback_notice_shown = False
            if self._notify_on_recovery:
                self._notify(NoticeLevel.INFO, *RECOVERED_NOTICE)

    def _mark_failure(self) -> None:
        if self._status is not ConnectionStatus.FALLBACK:
            logger.info("Poller: status {} → fallback.", self._status.value)
        self._status = ConnectionStatus.FALLBACK
        self._consecutive_failures += 1

        if not self._fallback_notice_shown:
            self._fallback_notice_shown = True
            self._notify(NoticeLevel.WARNING, *FALLBACK_NOTICE)

        if (
            self._escalate_after is not None
            and not self._escalated
            and self._consecutive_failures >= self._escalate_after
        ):
            self._escalated = True
            title, message = ESCALATION_NOTICE
            self._notify(NoticeLevel.ERROR, title, message.format(count=self._consecutive_failures))

    def _notify(self, level: NoticeLevel, title: str, message: str) -> None:
        try:
            self._notifier(Notice(level=level, title=title, message=message))
        except Exception:
            logger.exception("Poller: notifier failed for notice {!r}.", title)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> PollHandle:
        """
        Issue an immediate ``refetch_all()`` and re-poll every interval.

        Must be called from a running event loop.  Calling it again while
        the loop is running returns the existing handle.
        """
        if self.running and self._handle is not None:
            return self._handle

        self._ticker = asyncio.get_running_loop().create_task(self._run(), name="gridfeed-poller")
        self._handle = PollHandle(self._ticker)
        logger.info(
            "Poller: started | types={} | interval={:.0f}s | ttl={:.0f}s",
            [dt.value for dt in self.data_types], self.poll_interval, self._cache.ttl,
        )
        return self._handle

    async def stop(self) -> None:
        """Cancel the poll loop, any rounds and any coalesced gateway calls still in flight."""
        pending = (self._ticker, *self._rounds, *self._in_flight.values())
        tasks = [t for t in pending if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._ticker = None
        self._handle = None
        logger.info("Poller: stopped.")

    async def _run(self) -> None:
        try:
            while True:
                # Rounds are not awaited: a slow round never delays the next one.
                round_task = asyncio.create_task(self.refetch_all())
                self._rounds.add(round_task)
                round_task.add_done_callback(self._rounds.discard)
                await asyncio.sleep(self.poll_interval)
        finally:
            for task in (*self._rounds, *self._in_flight.values()):
                task.cancel()

    async def __aenter__(self) -> "MarketDataPoller":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
