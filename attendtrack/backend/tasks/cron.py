import logging
from datetime import timedelta

from ..config.config import settings
from ..db.redis_client import RedisDocumentStore
from ..db.store_errors import StoreError
from ..services.security_service import SecurityService

logger = logging.getLogger(__name__)


async def sweep_idle_sessions_task(store: RedisDocumentStore):
    """
    Runs periodically and ends every persisted user session whose last
    activity is older than SESSION_IDLE_TIMEOUT_MINUTES.
    """
    logger.info("Running sweep_idle_sessions_task...")
    idle_timeout = timedelta(minutes=settings.SESSION_IDLE_TIMEOUT_MINUTES)
    try:
        ended = await SecurityService(store).sweep_idle_sessions(idle_timeout)
    except StoreError as e:
        logger.error(f"Failed to sweep idle sessions: {e}", exc_info=True)
        return 0

    if ended:
        logger.info(f"Ended {ended} idle user sessions.")
    return ended


async def provision_indexes_task(store: RedisDocumentStore):
    """Marks the configured compound indexes as ready. Run once at startup."""
    try:
        await store.provision_indexes(settings.READY_COMPOSITE_INDEXES)
    except StoreError as e:
        logger.error(f"Failed to provision compound indexes: {e}", exc_info=True)
        return []
    ready = await store.ready_indexes()
    logger.info(f"{len(ready)} compound indexes ready.")
    return ready
