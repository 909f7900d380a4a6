from __future__ import annotations

import logging
from typing import Any


class RequestLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with trace/user/patient context."""

    def process(self, msg: Any, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        trace_id = self.extra.get("trace_id") or "-"
        user_id = self.extra.get("user_id") or "-"
        patient_id = self.extra.get("patient_id") or "-"
        prefix = f"trace_id={trace_id} user_id={user_id} patient_id={patient_id}"
        return f'{prefix} msg="{msg}"', kwargs


def get_request_logger(
    logger: logging.Logger | str,
    *,
    trace_id: str | None = None,
    user_id: str | None = None,
    patient_id: str | None = None,
) -> RequestLoggerAdapter:
    base_logger = logging.getLogger(logger) if isinstance(logger, str) else logger
    return RequestLoggerAdapter(
        base_logger,
        {
            "trace_id": trace_id or "-",
            "user_id": user_id or "-",
            "patient_id": patient_id or "-",
        },
    )
