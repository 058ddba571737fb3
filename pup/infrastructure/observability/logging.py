import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from infrastructure.config.settings import Settings

# Context keys bound per inbound message and dropped once it is handled
MESSAGE_CONTEXT_KEYS = ("channel_id", "event_id")


def setup_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging, rendered as JSON or console lines"""

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    structlog.configure(
        processors=_build_processors(settings.log_format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        service=settings.service_name,
        environment=settings.environment,
        version=settings.service_version,
    )


def _build_processors(log_format: str) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        drop_unset_message_context,
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


def drop_unset_message_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Messages without a Slack event ID carry no event attribution"""

    for key in MESSAGE_CONTEXT_KEYS:
        if key in event_dict and event_dict[key] is None:
            del event_dict[key]
    return event_dict


def bind_message_context(channel_id: str, event_id: Optional[str] = None) -> None:
    structlog.contextvars.bind_contextvars(channel_id=channel_id, event_id=event_id)


def clear_message_context() -> None:
    structlog.contextvars.unbind_contextvars(*MESSAGE_CONTEXT_KEYS)


@dataclass
class LatencyStats:
    count: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0

    def observe(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": round(self.total_ms / self.count, 3) if self.count else 0.0,
            "min_ms": self.min_ms or 0.0,
            "max_ms": self.max_ms,
        }


class MetricsCollector:
    """
    In-process counters, gauges and latencies for remote calls, the entity
    cache and the memory store. Every observation is also emitted as a debug
    log line so a log pipeline can aggregate across processes.
    """

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.gauges: Dict[str, float] = {}
        self.latencies: Dict[str, LatencyStats] = {}
        self.logger = structlog.get_logger("pup.metrics")

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        self.latencies.setdefault(operation, LatencyStats()).observe(duration_ms)
        self.logger.debug("metric", kind="latency", name=operation, value=duration_ms, **(tags or {}))

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.counters[name] = self.counters.get(name, 0) + value
        self.logger.debug("metric", kind="counter", name=name, value=value, **(tags or {}))

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[name] = value
        self.logger.debug("metric", kind="gauge", name=name, value=value, **(tags or {}))

    def get_counter(self, name: str) -> int:
        return self.counters.get(name, 0)

    def snapshot(self) -> Dict[str, Any]:
        """Current values, with latencies reduced to count/avg/min/max"""

        return {
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
            "latencies": {name: stats.summary() for name, stats in self.latencies.items()},
        }
