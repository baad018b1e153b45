"""
Collector Runner

Drives collection cycles forever:

    replay pending reconciliations -> scan -> charge (K workers) -> sleep

Due subscriptions go onto a queue drained by a fixed pool of K workers, so
at most K charge workflows are in flight at once. A failing workflow is
recorded and the worker moves on; a failing cycle (e.g. the scan query) is
logged and retried after a short backoff.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from collector.chain import ChainClient
from collector.database import create_ledger_engine
from collector.executor import PaymentExecutor
from collector.ledger import LedgerStore
from collector.models import ChargeResult, ChargeStatus, CycleReport, DueSubscription
from collector.reconciliation import ReconciliationWriter
from collector.resilience import PendingReconciliationQueue
from collector.scanner import DueSubscriptionScanner
from utils.logger import logger


class CollectorRunner:
    """Scheduler loop for the payment collector"""

    def __init__(
        self,
        scanner: DueSubscriptionScanner,
        executor: PaymentExecutor,
        writer: ReconciliationWriter,
        concurrency: int,
        poll_interval: float = 60.0,
        error_backoff: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.scanner = scanner
        self.executor = executor
        self.writer = writer
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self._sleep = sleep

    async def _worker(self, queue: "asyncio.Queue[DueSubscription]", results: List[ChargeResult]) -> None:
        while True:
            try:
                due = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                results.append(await self.executor.process(due))
            except Exception as e:
                logger.error(f"Unhandled error charging {due.subscription_id}: {e}")
                results.append(
                    ChargeResult(due.subscription_id, ChargeStatus.ERROR, reason="unhandled", error=str(e))
                )
            finally:
                queue.task_done()

    async def process_due(self, due: List[DueSubscription]) -> List[ChargeResult]:
        """Charge every due subscription with at most `concurrency` in flight"""
        queue: "asyncio.Queue[DueSubscription]" = asyncio.Queue()
        for item in due:
            queue.put_nowait(item)

        results: List[ChargeResult] = []
        workers = [
            asyncio.create_task(self._worker(queue, results))
            for _ in range(min(self.concurrency, len(due)))
        ]
        await asyncio.gather(*workers)
        return results

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()

        if len(self.writer.queue):
            report.replayed = await self.writer.replay_pending()

        due = await self.scanner.scan()
        report.due = len(due)
        if not due:
            return report

        logger.info(f"Processing {len(due)} due subscriptions...")
        for result in await self.process_due(due):
            report.record(result)

        logger.info(
            f"Cycle done: {report.count(ChargeStatus.PAID)} paid, "
            f"{report.count(ChargeStatus.SKIPPED_NOT_DUE)} not due, "
            f"{report.count(ChargeStatus.SKIPPED_NO_DELEGATION) + report.count(ChargeStatus.SKIPPED_PRECONDITION)} skipped, "
            f"{report.count(ChargeStatus.ERROR)} failed"
        )
        return report

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """Run until the process is stopped (or max_cycles have completed)"""
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            try:
                report = await self.run_cycle()
            except Exception as e:
                logger.error(f"Collector loop error: {e}", exc_info=True)
                await self._sleep(self.error_backoff)
                continue

            # Rows that were skipped or failed are scanned again next cycle;
            # only go straight on when this cycle made progress
            if report.count(ChargeStatus.PAID) == 0:
                await self._sleep(self.poll_interval)


def build_runner(settings) -> CollectorRunner:
    """Wire the long-lived service handles from settings"""
    engine = create_ledger_engine(settings.DATABASE_URL)
    ledger = LedgerStore(engine, default_token_symbol=settings.DEFAULT_TOKEN_SYMBOL)
    queue = PendingReconciliationQueue(
        Path(settings.PENDING_RECONCILIATION_PATH) if settings.PENDING_RECONCILIATION_PATH else None
    )
    writer = ReconciliationWriter(
        ledger,
        queue=queue,
        max_attempts=settings.RECONCILE_MAX_ATTEMPTS,
        retry_seconds=settings.RECONCILE_RETRY_SECONDS,
    )
    chain = ChainClient(settings)
    executor = PaymentExecutor(chain, writer, settings)
    scanner = DueSubscriptionScanner(
        ledger,
        batch_size=settings.PAYMENT_BATCH_SIZE,
        scan_limit_multiplier=settings.SCAN_LIMIT_MULTIPLIER,
    )

    logger.info(f"Payment collector initialized with agent {chain.operator_address}")
    return CollectorRunner(
        scanner,
        executor,
        writer,
        concurrency=settings.PAYMENT_BATCH_SIZE,
        poll_interval=settings.PAYMENT_POLL_INTERVAL_SECONDS,
        error_backoff=settings.CYCLE_ERROR_BACKOFF_SECONDS,
    )
