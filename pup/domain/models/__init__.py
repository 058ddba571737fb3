from .memory import EMBEDDING_DIMENSION, Memory, MemoryCandidate, MemoryKind, utc_now
from .messages import BufferedMessage, InboundMessage, IngestionDecision, PipelineResult
from .entities import ChannelVibe, UserProfile
from .interaction import Attribution, Interaction, OperationType, UsageSummary
from .result import Err, Ok, Result

__all__ = [
    "EMBEDDING_DIMENSION",
    "Memory",
    "MemoryCandidate",
    "MemoryKind",
    "utc_now",
    "BufferedMessage",
    "InboundMessage",
    "IngestionDecision",
    "PipelineResult",
    "ChannelVibe",
    "UserProfile",
    "Attribution",
    "Interaction",
    "OperationType",
    "UsageSummary",
    "Err",
    "Ok",
    "Result",
]
