"""
Production logging utility for structured JSON logging.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- attachment_id
- owner_id
- backend
- duration_ms

Usage:
    from jobtracker.utils.logging import configure_logging, log_blob_fallback

    configure_logging('jobtracker-api', 'INFO')
    log_blob_fallback(logger, backend='remoteblob', operation='save', reason='create failed')
"""
import logging
import sys
from typing import Optional, Dict, Any
from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO"):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier (jobtracker-api)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        if cls._configured:
            return

        cls._service_name = service_name

        root_logger = logging.getLogger()
        root_logger.handlers = []

        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(levelname)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True


def _build_log_extra(
    event: str,
    attachment_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    backend: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """Build extra fields for structured logging."""
    extra = {
        "event": event,
        **kwargs
    }

    if attachment_id:
        extra["attachment_id"] = attachment_id
    if owner_id:
        extra["owner_id"] = owner_id
    if backend:
        extra["backend"] = backend
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


# Attachment event functions

def log_attachment_stored(
    logger: logging.Logger,
    attachment_id: str,
    owner_id: Optional[str],
    storage_key: str,
    size: Optional[int] = None,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log a persisted attachment.

    Args:
        logger: Logger instance
        attachment_id: Attachment ID (required)
        owner_id: Owning job ID, if any
        storage_key: Where the bytes live
        size: Payload size in bytes
        duration_ms: Optional duration in milliseconds
    """
    extra = _build_log_extra(
        event="attachment_stored",
        attachment_id=attachment_id,
        owner_id=owner_id,
        duration_ms=duration_ms,
        storage_key=storage_key,
        **kwargs
    )
    if size is not None:
        extra["size"] = size

    logger.info(f"Attachment stored: {attachment_id}", extra=extra)


def log_attachment_deleted(
    logger: logging.Logger,
    attachment_id: str,
    owner_id: Optional[str],
    blob_deleted: bool,
    **kwargs
):
    """Log an attachment row removal and whether its bytes were removed too."""
    extra = _build_log_extra(
        event="attachment_deleted",
        attachment_id=attachment_id,
        owner_id=owner_id,
        blob_deleted=blob_deleted,
        **kwargs
    )
    logger.info(f"Attachment deleted: {attachment_id}", extra=extra)


# Storage backend event functions

def log_blob_fallback(
    logger: logging.Logger,
    backend: str,
    operation: str,
    reason: str,
    fallback_to: Optional[str] = None,
    **kwargs
):
    """
    Log a degraded storage operation.

    The fallback marker only goes to the log; callers receive a normal result.

    Args:
        logger: Logger instance
        backend: Backend that was selected (required)
        operation: Gateway operation (save, create_signed_upload_url)
        reason: Why the backend could not be used
        fallback_to: What was used instead (public_url, local)
    """
    extra = _build_log_extra(
        event="blob_fallback",
        backend=backend,
        operation=operation,
        reason=reason,
        fallback=True,
        **kwargs
    )
    if fallback_to:
        extra["fallback_to"] = fallback_to

    logger.warning(f"Blob fallback: {backend}.{operation} - {reason}", extra=extra)


def log_blob_failure(
    logger: logging.Logger,
    backend: str,
    operation: str,
    error: str,
    include_traceback: bool = False,
    **kwargs
):
    """
    Log a failed backend call.

    Args:
        logger: Logger instance
        backend: Backend name (required)
        operation: Operation name (required)
        error: Error message (required)
        include_traceback: Whether to include stack trace
    """
    extra = _build_log_extra(
        event="blob_failure",
        backend=backend,
        operation=operation,
        error=str(error),
        **kwargs
    )

    message = f"Blob failure: {backend}.{operation} - {error}"

    if include_traceback and sys.exc_info()[0] is not None:
        logger.error(message, extra=extra, exc_info=True)
    else:
        logger.error(message, extra=extra)


def configure_logging(service_name: str, log_level: str = "INFO"):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level)
