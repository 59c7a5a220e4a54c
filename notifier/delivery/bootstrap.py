"""Consumer group bootstrap run before workers start reading."""

import logging

from notifier.stores.contract import GroupAlreadyExistsError, LogStore

logger = logging.getLogger(__name__)


async def ensure_group(log: LogStore, stream: str, group: str, start_id: str = "0") -> bool:
    """Create the consumer group (and the stream if missing). Returns False when it already existed."""
    try:
        await log.create_group(stream, group, start_id=start_id, mkstream=True)
    except GroupAlreadyExistsError:
        logger.info("Consumer group %s already exists on %s", group, stream)
        return False
    logger.info("Consumer group %s created on %s", group, stream)
    return True
