"""
Display connection service.

Runs on the display device and keeps a soft session with the server by
polling the pairing status endpoint:

- the poll interval follows activity (tight while a day plan is shown,
  slow while waiting for an operator)
- failures back off exponentially, up to ``max_interval``
- the connection is reported lost on the 3rd consecutive failure
- after ``timeout`` ms without a successful poll the service gives up
- a 404 means the server forgot this display: local state is wiped and
  the host is asked to pair again

Exactly one poll is pending or in flight at any time. The next poll is
scheduled only once the previous one has been handled.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from dayplanner.config import settings
from dayplanner.schemas.display import DisplayStatusResponse, PairingInitResponse
from dayplanner.services.device_store import DeviceStateStore

logger = logging.getLogger(__name__)

PAIRING_PATH = "/api/displays/pairing"

# Consecutive failures before the connection is reported as lost.
CONNECTION_LOST_AFTER = 3


@dataclass(frozen=True)
class ActivityIntervals:
    """Poll intervals (ms) used after a successful poll."""

    showing_day_plan: int = 3000
    paired: int = 5000
    unpaired: int = 10000

    def for_status(self, status: DisplayStatusResponse) -> int:
        if status.is_paired and status.day_plan:
            return self.showing_day_plan
        if status.is_paired:
            return self.paired
        return self.unpaired


@dataclass(frozen=True)
class ConnectionState:
    is_connected: bool
    last_seen: datetime | None
    consecutive_failures: int
    current_interval: float  # ms


class PairingApiClient:
    """Thin wrapper over the pairing endpoints used by devices."""

    def __init__(self, http: httpx.AsyncClient) -> None:
        self._http = http

    async def init_pairing(self) -> PairingInitResponse:
        resp = await self._http.post(f"{PAIRING_PATH}/init")
        resp.raise_for_status()
        return PairingInitResponse.model_validate(resp.json())

    async def reset(self, display_id: str) -> PairingInitResponse:
        resp = await self._http.post(f"{PAIRING_PATH}/{display_id}/reset")
        resp.raise_for_status()
        return PairingInitResponse.model_validate(resp.json())

    async def fetch_status(self, device_id: str, *, timeout: float) -> httpx.Response:
        return await self._http.get(f"{PAIRING_PATH}/status/{device_id}", timeout=timeout)


Callback = Callable[..., Any]


def _or_default(value: float | None, default: float) -> float:
    return default if value is None else value


class DisplayConnectionService:
    """
    Polls the status of one display and reports changes through callbacks.

    Callbacks may be plain functions or coroutine functions:
        on_status_update(status)      after every successful poll
        on_connection_change(bool)    False on the 3rd failure, True on recovery
        on_timeout()                  once, when polling gives up
        on_repair_required()          once, when the server no longer knows the display

    Usage:
        service = DisplayConnectionService(device_id, http=client, store=store,
                                           on_status_update=render)
        service.start()
        ...
        await service.aclose()
    """

    def __init__(
        self,
        device_id: str,
        *,
        http: httpx.AsyncClient,
        store: DeviceStateStore | None = None,
        on_status_update: Callback | None = None,
        on_connection_change: Callback | None = None,
        on_timeout: Callback | None = None,
        on_repair_required: Callback | None = None,
        min_interval: float | None = None,
        max_interval: float | None = None,
        backoff_multiplier: float | None = None,
        request_timeout: float | None = None,
        timeout: float | None = None,
        intervals: ActivityIntervals | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._device_id = device_id
        self._api = PairingApiClient(http)
        self._store = store
        self._on_status_update = on_status_update
        self._on_connection_change = on_connection_change
        self._on_timeout = on_timeout
        self._on_repair_required = on_repair_required

        # All durations in milliseconds
        self._min_interval = _or_default(min_interval, settings.poll_min_interval_ms)
        self._max_interval = _or_default(max_interval, settings.poll_max_interval_ms)
        self._multiplier = _or_default(backoff_multiplier, settings.poll_backoff_multiplier)
        self._request_timeout = _or_default(request_timeout, settings.poll_request_timeout_ms)
        self._timeout = _or_default(timeout, settings.poll_timeout_ms)
        self._intervals = intervals or ActivityIntervals()
        self._clock = clock

        self._interval: float = self._min_interval
        self._consecutive_failures = 0
        self._last_success: float | None = None
        self._last_seen: datetime | None = None
        self._started_at: float | None = None

        self._active = False
        self._timed_out = False
        self._repair_required = False
        self._timer: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task | None = None

    # --- Properties ---

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def active(self) -> bool:
        return self._active

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def repair_required(self) -> bool:
        """True once the server answered 404 for this device id."""
        return self._repair_required

    def get_connection_state(self) -> ConnectionState:
        return ConnectionState(
            is_connected=self._consecutive_failures == 0,
            last_seen=self._last_seen,
            consecutive_failures=self._consecutive_failures,
            current_interval=self._interval,
        )

    # --- Lifecycle ---

    def start(self) -> None:
        """Start polling, beginning with an immediate poll. Needs a running loop."""
        if self._active:
            return
        self._active = True
        self._timed_out = False
        self._repair_required = False
        self._consecutive_failures = 0
        self._interval = self._min_interval
        self._started_at = self._clock()
        self._spawn_poll()

    def stop(self) -> None:
        self._active = False
        self._cancel_pending()

    def refresh(self) -> None:
        """Drop the pending poll and poll right away."""
        self._cancel_pending()
        self._interval = self._min_interval
        if self._active:
            self._spawn_poll()

    def update_device_id(self, device_id: str) -> None:
        """Switch to a new device id, e.g. after a hard reset."""
        self._device_id = device_id
        self._consecutive_failures = 0
        self._last_success = None
        self._last_seen = None
        self._started_at = self._clock()
        self.refresh()

    async def aclose(self) -> None:
        """Stop and wait for an in-flight poll to finish cancelling."""
        task = self._poll_task
        self.stop()
        if task and not task.done() and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    # --- Scheduling ---

    def _cancel_pending(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None
        task = self._poll_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _spawn_poll(self) -> None:
        self._timer = None
        self._poll_task = asyncio.get_running_loop().create_task(self._run_poll())

    async def _run_poll(self) -> None:
        await self.poll_once()
        # A refresh() from a callback may have started a newer chain.
        if self._active and self._poll_task is asyncio.current_task():
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self._interval / 1000, self._spawn_poll)

    # --- Polling ---

    async def poll_once(self) -> None:
        """Run one status poll and apply its outcome. Never raises."""
        if not self._active:
            return

        timeout = self._request_timeout / 1000
        try:
            # httpx timeouts apply per connect/read step; wait_for bounds the whole request
            resp = await asyncio.wait_for(
                self._api.fetch_status(self._device_id, timeout=timeout), timeout=timeout
            )
            if resp.status_code == 404:
                await self._handle_device_not_found()
                return
            resp.raise_for_status()
            status = DisplayStatusResponse.model_validate(resp.json())
        except asyncio.TimeoutError:
            await self._handle_failure(
                TimeoutError(f"status request exceeded {self._request_timeout:.0f} ms")
            )
            return
        except (httpx.HTTPError, ValueError) as exc:
            # ValueError covers undecodable JSON and payload validation errors
            await self._handle_failure(exc)
            return
        except Exception as exc:
            logger.exception("Unexpected error while polling display %s", self._device_id)
            await self._handle_failure(exc)
            return

        await self._handle_success(status)

    async def _handle_success(self, status: DisplayStatusResponse) -> None:
        was_disconnected = self._consecutive_failures > 0

        self._consecutive_failures = 0
        self._last_success = self._clock()
        self._last_seen = datetime.now(timezone.utc)
        self._interval = self._intervals.for_status(status)

        if status.was_reset:
            logger.warning("Display %s was reset by the server: %s", self._device_id, status.reset_reason)

        if was_disconnected:
            logger.info("Display connection restored")
            await self._notify(self._on_connection_change, True)

        await self._notify(self._on_status_update, status)

    async def _handle_failure(self, exc: Exception) -> None:
        self._consecutive_failures += 1
        logger.warning(
            "Display poll failed (%d in a row): %s", self._consecutive_failures, exc
        )

        since = self._last_success if self._last_success is not None else self._started_at
        if since is not None and (self._clock() - since) * 1000 > self._timeout:
            await self._handle_timeout()
            return

        self._interval = min(self._interval * self._multiplier, self._max_interval)

        if self._consecutive_failures == CONNECTION_LOST_AFTER:
            logger.warning("Display connection lost")
            await self._notify(self._on_connection_change, False)

    async def _handle_device_not_found(self) -> None:
        logger.error("Display %s not found on server, clearing local state", self._device_id)
        self.stop()
        self._repair_required = True
        if self._store:
            self._store.clear()
        await self._notify(self._on_repair_required)

    async def _handle_timeout(self) -> None:
        logger.error("Display connection timed out")
        self.stop()
        self._timed_out = True
        await self._notify(self._on_timeout)

    @staticmethod
    async def _notify(callback: Callback | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Display connection callback %r failed", callback)
