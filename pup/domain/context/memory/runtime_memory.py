from typing import List
import structlog

from domain.errors import StorageError
from domain.models import BufferedMessage
from .substrate import CacheSubstrate

logger = structlog.get_logger(__name__)


class MessageBuffer:
    """Capped, newest-first sequence of recent messages per channel"""

    def __init__(self, substrate: CacheSubstrate, capacity: int = 100, idle_ttl: int = 86400):
        self.substrate = substrate
        self.capacity = capacity
        self.idle_ttl = idle_ttl

    @staticmethod
    def _key(channel_id: str) -> str:
        return f"buffer:channel:{channel_id}"

    @staticmethod
    def _counter_key(channel_id: str) -> str:
        return f"buffer:appended:{channel_id}"

    async def append(self, channel_id: str, message: BufferedMessage) -> int:
        """
        Add a message to the channel buffer; never raises.

        Returns how many messages the channel has received since its buffer
        last went idle. Unlike the buffer length this keeps growing past
        capacity. 0 when the cache is unavailable.
        """

        try:
            size = await self.substrate.push_capped(
                self._key(channel_id),
                message.model_dump_json(),
                capacity=self.capacity,
                ttl=self.idle_ttl
            )
            appended = await self.substrate.incr(self._counter_key(channel_id), ttl=self.idle_ttl)
            logger.debug("Message buffered", channel_id=channel_id, messages_in_buffer=size, appended=appended)
            return appended
        except StorageError as e:
            logger.warning("Cache unavailable, skipping message buffer", channel_id=channel_id, error=str(e))
            return 0

    async def recent(self, channel_id: str, limit: int = 100) -> List[BufferedMessage]:
        """Get up to limit most recent messages, newest first"""

        try:
            raw_messages = await self.substrate.list_head(self._key(channel_id), min(limit, self.capacity))
        except StorageError as e:
            logger.warning("Cache unavailable, returning empty message buffer", channel_id=channel_id, error=str(e))
            return []

        messages = []
        for raw in raw_messages:
            try:
                messages.append(BufferedMessage.model_validate_json(raw))
            except ValueError as e:
                logger.warning("Dropping unreadable buffered message", channel_id=channel_id, error=str(e))
        return messages

    async def size(self, channel_id: str) -> int:
        try:
            return await self.substrate.list_length(self._key(channel_id))
        except StorageError:
            return 0
