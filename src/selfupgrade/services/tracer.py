"""Tracing helpers that tag every log record with the upgrade instance id."""

import logging
import traceback
from typing import Any, Dict, MutableMapping, Optional, Tuple


class UpgradeTracer(logging.LoggerAdapter):
    """Logger adapter used by every component of one upgrade attempt.

    Records carry two extra attributes:

    * ``upgrade_instance_id`` - the correlation token of the attempt, or ``None``
      until an orchestrator has started an activity.
    * ``metadata`` - an optional mapping with structured details (method name,
      exception text, paths).
    """

    def __init__(self, logger: logging.Logger, upgrade_instance_id: Optional[str] = None):
        super().__init__(logger, {"upgrade_instance_id": upgrade_instance_id})

    @property
    def upgrade_instance_id(self) -> Optional[str]:
        return self.extra["upgrade_instance_id"]

    def start_activity(self, upgrade_instance_id: str):
        self.extra["upgrade_instance_id"] = upgrade_instance_id

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("upgrade_instance_id", self.upgrade_instance_id)
        extra.setdefault("metadata", None)
        kwargs["extra"] = extra

        if self.upgrade_instance_id:
            msg = f"[{self.upgrade_instance_id}] {msg}"
        return msg, kwargs

    def related_info(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._related(logging.INFO, message, metadata)

    def related_warning(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._related(logging.WARNING, message, metadata)

    def related_error(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._related(logging.ERROR, message, metadata)

    def trace_exception(self, exception: BaseException, method: str, message: str):
        metadata = {
            "Method": method,
            "Exception": "".join(
                traceback.format_exception(type(exception), exception, exception.__traceback__)
            ).strip(),
        }
        self.related_error(message, metadata)

    def _related(self, level: int, message: str, metadata: Optional[Dict[str, Any]]):
        if metadata:
            self.log(level, "%s %s", message, metadata, extra={"metadata": metadata})
        else:
            self.log(level, "%s", message, extra={"metadata": None})
