"""
Loggers for the sync layer.

Several lab machines usually share one log sink, so every record a
SyncStore emits names the device it came from, and replay records also
name the pending operation they concern.
"""

import logging
from typing import Any

LOGGER_PREFIX = "exam_sync_storage"


def get_storage_logger(name: str) -> logging.Logger:
    """Logger named ``exam_sync_storage.<name>``."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class StorageLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter carrying device and operation context.

    The context is attached to each record as attributes (``device_id``,
    ``op_id``, ``path``) for formatters that read them, and also shown as
    a ``[device op=1a2b3c4d]`` prefix so it survives plain text handlers.
    """

    def __init__(self, logger: logging.Logger, device_id: str, **context: Any) -> None:
        super().__init__(logger, {"device_id": device_id, **context})

    @property
    def device_id(self) -> str:
        return self.extra["device_id"]

    def for_operation(self, op_id: str, path: str) -> "StorageLoggerAdapter":
        """Child adapter for records about one pending operation."""
        return StorageLoggerAdapter(self.logger, self.device_id, op_id=op_id, path=path)

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = {**self.extra, **(kwargs.get("extra") or {})}
        kwargs["extra"] = context

        prefix = str(context["device_id"])
        if context.get("op_id"):
            prefix += f" op={str(context['op_id'])[:8]}"
        return f"[{prefix}] {msg}", kwargs
