"""Display device runner.

Pairs this machine with the server (or resumes a stored pairing), then keeps
polling its status. When the server forgets the display the runner pairs
again under a new id; when the server stays unreachable past the hard
timeout it exits with status 1 so a supervisor can restart it.
"""

from __future__ import annotations

import asyncio
import logging
import sys

import httpx

from dayplanner.config import Settings, settings
from dayplanner.schemas.display import DisplayStatusResponse
from dayplanner.services.device_store import DeviceStateStore
from dayplanner.services.display_connection import DisplayConnectionService, PairingApiClient

logger = logging.getLogger(__name__)


async def pair_new_display(
    api: PairingApiClient,
    store: DeviceStateStore,
    *,
    retry_delay: float = 5.0,
) -> str:
    """Request a pairing code, retrying until the server answers."""
    while True:
        try:
            result = await api.init_pairing()
            break
        except httpx.HTTPError as exc:
            logger.warning("Pairing init failed, retrying in %.0fs: %s", retry_delay, exc)
            await asyncio.sleep(retry_delay)

    store.update({
        "displayId": result.device_id,
        "displayPaired": False,
        "displayOrgId": None,
        "assignedDayPlan": None,
    })
    logger.info("Pairing code: %s (display %s)", result.code, result.device_id)
    return result.device_id


def persist_status(store: DeviceStateStore, status: DisplayStatusResponse) -> None:
    store.update({
        "displayPaired": status.is_paired,
        "displayOrgId": status.organisation_id,
        "assignedDayPlan": (
            status.day_plan.model_dump(by_alias=True, mode="json") if status.day_plan else None
        ),
    })


def _log_connection(connected: bool) -> None:
    if connected:
        logger.info("Server reachable again")
    else:
        logger.warning("Server unreachable, showing last known day plan")


async def run_display(
    config: Settings = settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    store = DeviceStateStore(config.device_state_path)
    repair_required = asyncio.Event()
    timed_out = asyncio.Event()

    async with httpx.AsyncClient(base_url=config.api_base_url, transport=transport) as http:
        api = PairingApiClient(http)
        retry_delay = config.poll_min_interval_ms / 1000

        device_id = store.get("displayId")
        if device_id:
            logger.info("Resuming display %s", device_id)
        else:
            device_id = await pair_new_display(api, store, retry_delay=retry_delay)

        service = DisplayConnectionService(
            device_id,
            http=http,
            store=store,
            on_status_update=lambda status: persist_status(store, status),
            on_connection_change=_log_connection,
            on_timeout=timed_out.set,
            on_repair_required=repair_required.set,
            min_interval=config.poll_min_interval_ms,
            max_interval=config.poll_max_interval_ms,
            backoff_multiplier=config.poll_backoff_multiplier,
            request_timeout=config.poll_request_timeout_ms,
            timeout=config.poll_timeout_ms,
        )
        service.start()

        try:
            while True:
                waiters = [
                    asyncio.create_task(repair_required.wait()),
                    asyncio.create_task(timed_out.wait()),
                ]
                _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                for waiter in pending:
                    waiter.cancel()

                if timed_out.is_set():
                    logger.error("Giving up after %d ms without server contact", config.poll_timeout_ms)
                    return 1

                repair_required.clear()
                new_id = await pair_new_display(api, store, retry_delay=retry_delay)
                service.update_device_id(new_id)
                service.start()
        finally:
            await service.aclose()


def main() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else settings.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    try:
        code = asyncio.run(run_display())
    except KeyboardInterrupt:
        logger.info("Stopped")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
