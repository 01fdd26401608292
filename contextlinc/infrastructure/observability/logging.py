import structlog
import logging
import sys
from typing import Dict, Any, Optional, List
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "context-engine"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy turn-scoped identifiers from contextvars into every entry"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    bound = structlog.contextvars.get_contextvars()
    for key in ("turn_id", "session_id", "user_id"):
        if key not in event_dict and bound.get(key):
            event_dict[key] = bound[key]

    return event_dict


def bind_turn_context(turn_id: str, user_id: str, session_id: str) -> None:
    """Bind identifiers of the in-flight turn for all loggers"""

    structlog.contextvars.bind_contextvars(
        turn_id=turn_id,
        user_id=user_id,
        session_id=session_id
    )


def clear_turn_context() -> None:
    structlog.contextvars.unbind_contextvars("turn_id", "user_id", "session_id")


class ContextLogger:
    """Specialized logger for context assembly events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_layer_event(
        self,
        layer_id: int,
        layer_name: str,
        status: str,
        token_count: int = 0,
        error: Optional[str] = None
    ):
        """Log the terminal state of a layer build"""

        if error:
            self.logger.warning(
                "layer_degraded",
                layer_id=layer_id,
                layer_name=layer_name,
                status=status,
                error=error
            )
            return

        self.logger.debug(
            "layer_built",
            layer_id=layer_id,
            layer_name=layer_name,
            status=status,
            token_count=token_count
        )

    def log_provider_failure(
        self,
        provider: str,
        operation: str,
        error: str,
        will_fallback: bool
    ):
        """Log an external provider failure with provider identity"""

        self.logger.warning(
            "provider_failure",
            provider=provider,
            operation=operation,
            error=error,
            will_fallback=will_fallback
        )

    def log_compression(
        self,
        budget: int,
        original_tokens: int,
        compressed_tokens: int,
        affected_layer_ids: List[int]
    ):
        """Log a budget compression pass"""

        self.logger.info(
            "context_compressed",
            budget=budget,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            affected_layer_ids=affected_layer_ids
        )

    def log_context_update(
        self,
        session_id: str,
        context_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log context updates"""

        self.logger.info(
            "context_update",
            session_id=session_id,
            context_type=context_type,
            action=action,
            details=details or {}
        )


context_logger = ContextLogger("contextlinc")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0.0,
                "min": float('inf'),
                "max": 0.0
            }

        entry = self.metrics[key]
        entry["count"] += 1
        entry["sum"] += duration_ms
        entry["min"] = min(entry["min"], duration_ms)
        entry["max"] = max(entry["max"], duration_ms)

        context_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=round(duration_ms, 2),
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        self.metrics[name] = self.metrics.get(name, 0) + value

        context_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Set a gauge metric"""

        self.metrics[name] = value

        context_logger.logger.debug(
            "metric",
            metric_type="gauge",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary


metrics = MetricsCollector()
