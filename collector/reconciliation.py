"""
Reconciliation Writer

Makes the ledger match a confirmed on-chain charge, exactly once per
transaction hash. The payment row and the subscription timestamps are
written in one database transaction.

Once a redemption is confirmed, the payment exists on-chain whether or not
the ledger write succeeds. Write failures are therefore retried, and if they
keep failing the request goes to the pending queue and is replayed every
cycle until it lands. It is never reported as success.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from collector.errors import ReconciliationError
from collector.ledger import LedgerStore
from collector.models import ReconciliationRequest
from collector.resilience import PendingReconciliationQueue
from utils.logger import logger


class ReconciliationWriter:
    """Records confirmed payments in the ledger"""

    def __init__(
        self,
        ledger: LedgerStore,
        queue: Optional[PendingReconciliationQueue] = None,
        max_attempts: int = 3,
        retry_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.queue = queue if queue is not None else PendingReconciliationQueue()
        self.max_attempts = max_attempts
        self.retry_seconds = retry_seconds
        self._sleep = sleep

    async def _apply(self, request: ReconciliationRequest) -> bool:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(SQLAlchemyError),
            wait=wait_fixed(self.retry_seconds),
            stop=stop_after_attempt(self.max_attempts),
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(asyncio.to_thread, self.ledger.apply_payment, request)

    async def reconcile(self, request: ReconciliationRequest) -> bool:
        """
        Record the payment and advance the subscription.

        Returns True when the payment was newly recorded, False when the
        transaction hash was already in the ledger.
        """
        try:
            inserted = await self._apply(request)
        except Exception as e:
            logger.error(
                f"LEDGER DIVERGENCE: confirmed payment {request.tx_hash} for subscription "
                f"{request.subscription_id} could not be recorded: "
                f"{type(e).__name__}: {e}"
            )
            self.queue.add(request)
            raise ReconciliationError(request.tx_hash, str(e)) from e

        if inserted:
            logger.info(
                f"Recorded payment {request.tx_hash} for subscription {request.subscription_id}: "
                f"{request.amount} {request.token_symbol or request.token_address}, "
                f"next payment {request.next_payment_date}"
            )
        return inserted

    async def replay_pending(self) -> int:
        """Retry queued reconciliations; returns how many were cleared"""
        cleared = 0
        for request in self.queue.pending():
            try:
                await self._apply(request)
            except Exception as e:
                logger.error(f"Pending reconciliation {request.tx_hash} still failing: {e}")
                continue
            self.queue.remove(request.tx_hash)
            cleared += 1
            logger.info(f"Replayed pending reconciliation {request.tx_hash}")
        return cleared
