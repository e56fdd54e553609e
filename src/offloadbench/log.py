"""Logging setup and the timing hook used by the listeners.

The log level comes from OFFLOADBENCH_LOG_LEVEL (default INFO). When
OFFLOADBENCH_LOG_DIR is set, records are also written to
``offloadbench.log`` in that directory.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def get_logger(name: str = "offloadbench") -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(FORMAT))
        logger.addHandler(stream_handler)
        log_dir = os.getenv("OFFLOADBENCH_LOG_DIR")
        if log_dir:
            p = Path(log_dir)
            p.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(p / "offloadbench.log", encoding="utf-8")
            fh.setFormatter(logging.Formatter(FORMAT))
            logger.addHandler(fh)
        logger.setLevel(os.getenv("OFFLOADBENCH_LOG_LEVEL", "INFO").upper())
        logger.propagate = False
    return logger


def set_level(level: str) -> None:
    """Apply ``level`` to every offloadbench logger created so far."""
    level = level.upper()
    os.environ["OFFLOADBENCH_LOG_LEVEL"] = level
    for name in list(logging.root.manager.loggerDict):
        if name == "offloadbench" or name.startswith("offloadbench."):
            logging.getLogger(name).setLevel(level)


@dataclass(frozen=True)
class TimingEvent:
    """Latency sample for one request.

    ``source`` is ``"http"``, ``"worker"`` or ``"relay"``. ``compute_ms`` is the
    engine's own measurement and ``total_ms`` runs from the moment the request
    was complete to the moment the response was written.
    """

    source: str
    compute_ms: float
    total_ms: float
    peer: str = ""
    ok: bool = True


Observer = Callable[[TimingEvent], None]

timing_logger = get_logger("offloadbench.timing")


def log_timing(event: TimingEvent) -> None:
    timing_logger.info(
        f"{event.source} peer={event.peer or '-'} compute={event.compute_ms:.2f}ms "
        f"total={event.total_ms:.2f}ms ok={event.ok}"
    )


def emit(observer: Optional[Observer], event: TimingEvent) -> None:
    if observer is None:
        return
    try:
        observer(event)
    except Exception:  # noqa: BLE001
        timing_logger.exception("timing observer failed")


__all__ = ["get_logger", "set_level", "TimingEvent", "Observer", "log_timing", "emit"]
