"""
Due-Subscription Scanner

Produces the candidate set for a collection cycle. Read-only.
"""

import asyncio
import time
from typing import Callable, List, Optional

from collector.ledger import LedgerStore
from collector.models import DueSubscription
from utils.logger import logger


class DueSubscriptionScanner:
    """
    Finds active subscriptions whose next charge time has passed.

    The result is capped at batch_size * scan_limit_multiplier so a large
    backlog cannot starve a cycle; anything left over is picked up next cycle,
    oldest-due first.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        batch_size: int,
        scan_limit_multiplier: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.batch_size = batch_size
        self.scan_limit_multiplier = scan_limit_multiplier
        self._clock = clock

    @property
    def limit(self) -> int:
        return self.batch_size * self.scan_limit_multiplier

    async def scan(self, now: Optional[int] = None) -> List[DueSubscription]:
        now = int(self._clock()) if now is None else now
        due = await asyncio.to_thread(self.ledger.fetch_due_subscriptions, now, self.limit)
        if due:
            logger.info(f"Found {len(due)} due subscriptions (limit {self.limit})")
        return due
