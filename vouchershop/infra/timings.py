# vouchershop/infra/timings.py
from __future__ import annotations
import json
import logging
import os
import socket
import statistics
import time
from collections import deque
from typing import Deque, Dict, List, Optional

import httpx
from fastapi import FastAPI

from ..config import TIMINGS_WINDOW

logger = logging.getLogger(__name__)

# per kind: the most recent TIMINGS_WINDOW samples plus a lifetime count;
# touched from the event loop only
_TIMINGS: Dict[str, Deque[float]] = {}
_COUNTS: Dict[str, int] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    window = _TIMINGS.get(kind)
    if window is None:
        window = deque(maxlen=max(1, TIMINGS_WINDOW))
        _TIMINGS[kind] = window
    window.append(float(value))
    _COUNTS[kind] = _COUNTS.get(kind, 0) + 1


class timeit:
    """async usage:
        async with timeit("inventory.claim"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


def _mean_std(values: Deque[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def summary() -> List[Dict[str, float]]:
    out = []
    for kind in sorted(_TIMINGS):
        vals = _TIMINGS[kind]
        mean, std = _mean_std(vals)
        out.append({
            "kind": kind,
            "n": _COUNTS.get(kind, len(vals)),
            "window": len(vals),
            "mean_ms": mean * 1000,
            "std_ms": std * 1000,
            "max_ms": max(vals) * 1000 if vals else 0.0,
        })
    return out


def reset() -> None:
    _TIMINGS.clear()
    _COUNTS.clear()


async def flush_to_collector(
    url: str,
    run_id: str,
    worker_id: Optional[str] = None,
    timeout: float = 10.0,
) -> int:
    """POST one NDJSON line per kind to `url`; returns the number of kinds."""
    rows = summary()
    if not rows:
        return 0
    body = "".join(
        json.dumps(r, separators=(",", ":")) + "\n" for r in rows
    ).encode("utf-8")
    headers = {
        "content-type": "application/x-ndjson",
        "x-run-id": run_id,
        "x-worker-id": worker_id or f"{os.getpid()}@{socket.gethostname()}",
    }
    async with httpx.AsyncClient(timeout=timeout) as client:
        r = await client.post(url, content=body, headers=headers)
        r.raise_for_status()
    reset()
    return len(rows)


def install_shutdown_flush(app: FastAPI, url: str, run_id: str) -> None:
    if not url:
        return

    @app.on_event("shutdown")
    async def _flush_on_shutdown():
        try:
            n = await flush_to_collector(url, run_id or "default")
            logger.info("flushed %d timing aggregates to %s", n, url)
        except httpx.HTTPError:
            logger.exception("timing flush to %s failed", url)
