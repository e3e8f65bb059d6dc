"""
Error monitoring for the Memories capture, sync and processing pipeline.
"""

import inspect
import json
import logging
import traceback
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from functools import wraps
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import settings

LOGGER_NAME = "memories"


@dataclass
class ErrorEvent:
    timestamp: datetime
    error_type: str
    message: str
    component: str  # sync, save, processing, dispatch
    traceback: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    severity: str = "error"  # debug, info, warning, error, critical


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure console (and optional file) logging for the app loggers."""
    level_name = (level or settings.log_level).upper()
    log_file = log_file or settings.log_file

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    root = logging.getLogger()
    root.setLevel(level_name)
    if not any(getattr(h, "_memories_handler", False) for h in root.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler._memories_handler = True
        root.addHandler(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.WARNING)
            file_handler.setFormatter(formatter)
            file_handler._memories_handler = True
            root.addHandler(file_handler)

    return logging.getLogger(LOGGER_NAME)


class ErrorMonitor:
    """In-memory record of recent pipeline failures"""

    def __init__(self, max_events: int = 1000):
        self.events = deque(maxlen=max_events)
        self.error_counts = defaultdict(int)
        self.logger = logging.getLogger(LOGGER_NAME)

    def capture_error(self,
                      error: BaseException,
                      component: str,
                      context: Optional[Dict[str, Any]] = None,
                      severity: str = "error") -> ErrorEvent:
        """Record an error event and log it"""
        event = ErrorEvent(
            timestamp=datetime.now(),
            error_type=type(error).__name__,
            message=str(error),
            component=component,
            traceback="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            context=context or {},
            severity=severity,
        )

        self.events.append(event)
        self.error_counts[f"{component}:{event.error_type}"] += 1

        log_data = {
            "error_type": event.error_type,
            "message": event.message,
            "component": component,
            "context": event.context,
            "severity": severity,
        }
        level = getattr(logging, severity.upper(), logging.ERROR)
        self.logger.log(level, json.dumps(log_data, default=str))
        return event

    def get_error_summary(self, hours: int = 24) -> Dict[str, Any]:
        """Error counts for the last N hours"""
        cutoff = datetime.now() - timedelta(hours=hours)
        recent_events = [e for e in self.events if e.timestamp > cutoff]

        by_component = defaultdict(int)
        by_error_type = defaultdict(int)
        for event in recent_events:
            by_component[event.component] += 1
            by_error_type[event.error_type] += 1

        return {
            "total_errors": len(recent_events),
            "by_component": dict(by_component),
            "by_error_type": dict(by_error_type),
            "period_hours": hours,
        }

    def get_recent_errors(self, limit: int = 50) -> List[Dict[str, Any]]:
        recent = list(self.events)[-limit:]
        return [asdict(event) for event in reversed(recent)]

    def health_check(self) -> Dict[str, Any]:
        now = datetime.now()
        last_hour = now - timedelta(hours=1)
        recent_errors = len([
            e for e in self.events
            if e.timestamp > last_hour and e.severity in ("error", "critical")
        ])

        status = "healthy"
        if recent_errors > 10:
            status = "unhealthy"
        elif recent_errors > 3:
            status = "degraded"

        return {
            "status": status,
            "errors_last_hour": recent_errors,
            "total_events": len(self.events),
            "timestamp": now.isoformat(),
        }

    def reset(self):
        self.events.clear()
        self.error_counts.clear()


# Global error monitor instance
error_monitor = ErrorMonitor()


def capture_error(error: BaseException, component: str,
                  context: Optional[Dict[str, Any]] = None, severity: str = "error") -> ErrorEvent:
    return error_monitor.capture_error(error, component, context=context, severity=severity)


def monitor_errors(component: str):
    """Decorator that records and re-raises errors from the wrapped function"""
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                error_monitor.capture_error(e, component, context={"function": func.__name__})
                raise

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                error_monitor.capture_error(e, component, context={"function": func.__name__})
                raise

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
