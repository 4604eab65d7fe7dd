"""
Celery Tasks — tender recalculation runs here, off the FastAPI main thread.
"""
import logging
import asyncio
from app.workers.celery_app import celery_app

logger = logging.getLogger("tender-celery")


def _run_async(coro):
    """Run an async coroutine in a sync Celery task context (new event loop)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _recalculate(tender_id: str) -> dict:
    from app.db import AsyncSessionLocal
    from app.services.tender_store import recalculate_tender

    async with AsyncSessionLocal() as session:
        try:
            summary = await recalculate_tender(session, tender_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return {
        "status": "success",
        "tender_id": tender_id,
        "updated": summary.updated,
        "skipped": summary.skipped,
        "positions_updated": summary.positions_updated,
    }


@celery_app.task(bind=True, name="tasks.recalculate_tender")
def recalculate_tender_task(self, tender_id: str):
    """Recompute and store commercial costs for every BOQ item of a tender."""
    self.update_state(state="PROGRESS", meta={"step": "Recalculating", "pct": 10})
    try:
        result = _run_async(_recalculate(tender_id))
    except Exception as e:
        logger.error(f"Recalculation failed for tender {tender_id}: {e}", extra={"tender_id": tender_id})
        raise
    self.update_state(state="PROGRESS", meta={"step": "Complete", "pct": 100})
    return result
