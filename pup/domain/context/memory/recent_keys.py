import structlog

from domain.errors import StorageError
from .substrate import CacheSubstrate

logger = structlog.get_logger(__name__)


class RecentKeySet:
    """Membership set whose entries expire instead of being pruned by hand"""

    def __init__(self, substrate: CacheSubstrate, ttl: int = 600):
        self.substrate = substrate
        self.ttl = ttl

    async def add(self, namespace: str, key: str) -> bool:
        """Record key; False when it was already present and unexpired"""

        try:
            return await self.substrate.add_if_absent(f"seen:{namespace}:{key}", "1", ttl=self.ttl)
        except StorageError as e:
            # Without the substrate every key counts as new
            logger.warning("Cache unavailable, treating key as unseen", namespace=namespace, error=str(e))
            return True
