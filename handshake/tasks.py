from __future__ import annotations

import asyncio
import logging

from handshake.closure import backfill_completed_tickets, process_due_closures, rearm_pending_closures
from handshake.config import settings
from handshake.monitor import run_payment_sweep

logger = logging.getLogger(__name__)


def recover_on_startup() -> dict[str, int]:
    """Apply missed closure stats and re-arm closure timers lost in a restart."""
    backfilled = backfill_completed_tickets()
    rearmed = rearm_pending_closures()
    if backfilled or rearmed:
        logger.info("Startup recovery: %d ticket(s) backfilled, %d closure(s) re-armed", backfilled, rearmed)
    return {"backfilled": backfilled, "rearmed": rearmed}


def run_closure_sweep() -> int:
    """Finalize closing tickets whose timer was missed."""
    return process_due_closures()


async def background_payment_loop() -> None:
    """Poll deposits, payouts and pass orders in the background."""
    interval = settings.payment_poll_seconds
    logger.info("Background payment loop started (interval=%ds)", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            counts = await asyncio.to_thread(run_payment_sweep)
            if counts.get("confirmed") or counts.get("orders_completed"):
                logger.info("Payment sweep: %s", counts)
        except Exception:
            logger.exception("Error in background payment sweep")


async def background_closure_loop() -> None:
    """Finalize due closures in the background."""
    interval = settings.closure_sweep_seconds
    logger.info("Background closure loop started (interval=%ds)", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            count = await asyncio.to_thread(run_closure_sweep)
            if count:
                logger.info("Closure sweep finalized %d ticket(s)", count)
        except Exception:
            logger.exception("Error in background closure sweep")
