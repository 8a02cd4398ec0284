"""
Structured logging for the geolocation engine.
Every helper funnels into log_operation so log lines share one shape.
"""

import logging
from typing import Any, Dict


class StructuredLogger:
    """Structured logger for embedding, index build and prediction operations."""

    def __init__(self, name: str = "geowraith"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_embedding_tier(self, kind: str, tier: str, status: str = "success", details: Dict[str, Any] = None):
        """Log which embedding tier served (or failed) a request."""
        log_details = {"kind": kind, "tier": tier}
        if details:
            log_details.update(details)

        level = logging.WARNING if status == "degraded" else logging.INFO
        self.log_operation(f"embedding.{kind}", status, log_details, level=level)

    def log_index_build(self, phase: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a reference index build phase."""
        level = logging.ERROR if status == "failed" else logging.INFO
        self.log_operation(f"index_build.{phase}", status, details, level=level)

    def log_cache_event(self, event: str, version: str, details: Dict[str, Any] = None):
        """Log a cache hit, miss, write or invalidation."""
        log_details = {"version": version[:16]}
        if details:
            log_details.update(details)

        self.log_operation(f"cache.{event}", "ok", log_details)

    def log_anchor_skipped(self, source_ref: str, reason: str):
        """Log an anchor image that was excluded from the build."""
        log_details = {
            "source_ref": source_ref[:120],
            "reason": str(reason)[:200]
        }
        self.log_operation("anchors.skipped", "skipped", log_details, level=logging.WARNING)

    def log_record_rejected(self, record_id: str, reason: str):
        """Log a catalog record excluded at load time."""
        log_details = {
            "record_id": record_id,
            "reason": str(reason)[:200]
        }
        self.log_operation("catalog.record_rejected", "rejected", log_details, level=logging.WARNING)

    def log_prediction(self, request_id: str, status: str, details: Dict[str, Any] = None):
        """Log a completed prediction."""
        log_details = {"request_id": request_id}
        if details:
            log_details.update(details)

        self.log_operation("predict", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)

# Global logger instance
logger = StructuredLogger()
