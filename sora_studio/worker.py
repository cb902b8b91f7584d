"""
Background status reconciler loop.

Can run as:
  1. FastAPI background task (same process, via startup event)
  2. Standalone worker (separate service): python -m sora_studio.worker

Ticks run one after another from a single loop, so two ticks never overlap.
The loop exits when ``stop_event`` is set, at the latest after the tick in
flight finishes.
"""
import asyncio
import signal

from sora_studio.services.reconciler import Reconciler
from sora_studio.utils.logger import logger


async def reconciler_loop(reconciler: Reconciler, interval: float, stop_event: asyncio.Event) -> None:
    """Run reconciler ticks every ``interval`` seconds until stopped."""
    reconciler.running = True
    logger.info("reconciler.started", extra={"duration_ms": round(interval * 1000)})

    try:
        while not stop_event.is_set():
            try:
                await reconciler.run_once()
            except Exception as exc:
                logger.error("reconciler.tick_error", extra={"error": str(exc)[:500]})

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        reconciler.running = False
        logger.info("reconciler.stopped")


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run the reconciler as a standalone process."""
    from sora_studio.config import get_settings
    from sora_studio.container import build_services, close_services

    settings = get_settings()
    services = await build_services(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await reconciler_loop(services.reconciler, settings.reconciler_interval_seconds, stop_event)
    finally:
        await close_services(services)


if __name__ == "__main__":
    asyncio.run(main())
