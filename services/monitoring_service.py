from core.logger import logger
from services.submission_service import SubmissionCoordinator

async def monitor_pending_submissions(coordinator: SubmissionCoordinator) -> int:
    """
    Periodic job: push deferred submissions to the directory service.
    Runs on launch and then on the scheduler interval. Returns how many were delivered.
    """
    logger.debug("Starting deferred submission scan...")

    pending = await coordinator.pending_submissions()
    if not pending:
        logger.debug("No deferred submissions.")
        return 0

    logger.info(f"Monitor: Found {len(pending)} deferred submissions")
    try:
        delivered = await coordinator.retry_pending()
    except Exception as e:
        logger.exception("Monitor: Deferred submission retry failed", error=str(e))
        return 0

    logger.info("Monitor: Deferred submission scan completed", delivered=len(delivered),
                remaining=len(pending) - len(delivered))
    return len(delivered)
