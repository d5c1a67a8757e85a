"""Celery background tasks."""

import asyncio
import logging

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker

from rentflow.database import create_engine
from rentflow.services.resumption_store import SqlResumptionStore

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


async def _purge_expired_pending_records() -> int:
    # Fresh engine per run: each task runs in its own event loop
    engine = create_engine()
    try:
        store = SqlResumptionStore(async_sessionmaker(engine, expire_on_commit=False))
        return await store.purge_expired()
    finally:
        await engine.dispose()


@shared_task(bind=True, max_retries=3)
def purge_expired_pending_records(self):
    """Delete transition intents and identity snapshots past their expiry.

    Runs hourly. Expired records are already ignored on read, so this only
    keeps the table small.
    """
    try:
        purged = run_async(_purge_expired_pending_records())
    except Exception as exc:
        logger.error(f"Purging expired pending records failed: {exc}")
        raise self.retry(exc=exc, countdown=300)
    return {"status": "success", "purged": purged}
