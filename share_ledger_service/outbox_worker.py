"""Redelivers outbox rows left new or failed after the in-request dispatch."""
import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from share_ledger_service.side_effects import OutboxDispatcher

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
BATCH_SIZE = 50


async def run(dispatcher: OutboxDispatcher, poll_interval: float = POLL_INTERVAL, iterations: int = None):
    done = 0
    while iterations is None or done < iterations:
        done += 1
        try:
            delivered = await dispatcher.dispatch_due(BATCH_SIZE)
            if delivered:
                logger.info(f"Outbox worker delivered {delivered} side effect(s)")
        except SQLAlchemyError as e:
            logger.error(f"Outbox poll failed: {e}")
        await asyncio.sleep(poll_interval)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    from share_ledger_service.runtime import build_runtime

    asyncio.run(run(build_runtime().dispatcher))
