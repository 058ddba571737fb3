from abc import ABC, abstractmethod
from typing import Dict, Any

from domain.models import utc_now


class BasePipelineStage(ABC):
    """Base class for message pipeline stages; process() is used directly as a graph node"""

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        self.created_at = utc_now()
        self.last_active = utc_now()
        self.processed = 0

    @abstractmethod
    async def process(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """Process pipeline state and return the keys this stage writes"""
        pass

    def update_activity(self):
        """Update last activity timestamp"""
        self.last_active = utc_now()
        self.processed += 1

    def get_info(self) -> Dict[str, Any]:
        """Get stage information"""
        return {
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
            "processed": self.processed
        }
