"""Structured KPI events for solver runs."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("tagslam.kpi")


class KPILogger:
    """Emit JSON events to the logger and/or a JSON-lines file."""

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self._extra = extra_fields.copy() if extra_fields else {}
        self._emit_to_logger = emit_to_logger
        self._fh = None
        if log_path:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        if self._emit_to_logger:
            logger.info("KPI %s", json.dumps(payload, sort_keys=True))
        if self._fh:
            self._fh.write(json.dumps(payload, sort_keys=True) + "\n")
            self._fh.flush()

    def frame_processed(self, frame: int, **fields: Any) -> None:
        self._emit("frame_processed", frame=frame, **fields)

    def optimization_start(self, run_id: int, factor_count: int, variable_count: int) -> None:
        self._emit(
            "optimization_start",
            run_id=run_id,
            factor_count=factor_count,
            variable_count=variable_count,
        )

    def optimization_end(
        self,
        run_id: int,
        duration_s: float,
        updated_keys: Optional[int] = None,
        *,
        normalized_error: Optional[float] = None,
        iterations: Optional[int] = None,
    ) -> None:
        self._emit(
            "optimization_end",
            run_id=run_id,
            duration_s=duration_s,
            updated_keys=updated_keys,
            normalized_error=normalized_error,
            iterations=iterations,
        )

    def marginals_computed(self, variable_count: int, duration_s: float) -> None:
        self._emit("marginals_computed", variable_count=variable_count, duration_s=duration_s)

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
