from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
import logging

from .helpers import now_ts
from .infra.timings import timeit
from .model.ledger import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired: int = 0
    released: int = 0
    batches: int = 0
    released_codes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Reaper:
    """
    Expires PENDING transactions older than `grace_seconds` and returns any
    voucher they hold to the pool. Each batch commits on its own, so a crash
    mid-run loses at most the batch in flight and a re-run picks it up.
    """

    def __init__(self, ledger: LedgerStore, *, grace_seconds: int = 300,
                 batch_size: int = 50, max_batches: int = 1) -> None:
        self.ledger = ledger
        self.grace_seconds = grace_seconds
        self.batch_size = max(1, batch_size)
        self.max_batches = max(1, max_batches)

    async def sweep(self, now: Optional[float] = None) -> SweepResult:
        now = now_ts() if now is None else now
        cutoff = now - self.grace_seconds
        result = SweepResult()
        while result.batches < self.max_batches:
            async with timeit("reaper.batch"):
                ids, codes = await self.ledger.expire_stale_batch(
                    cutoff, self.batch_size, now
                )
            if not ids:
                break
            result.batches += 1
            result.expired += len(ids)
            result.released += len(codes)
            result.released_codes.extend(codes)
            if len(ids) < self.batch_size:
                break

        if result.expired:
            logger.info(
                "reaper expired %d pending transaction(s) in %d batch(es), "
                "released %d voucher(s)",
                result.expired, result.batches, result.released,
            )
        return result
