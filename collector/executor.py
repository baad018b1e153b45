"""
Payment Executor

Attempts exactly one charge for one due subscription:

    candidate -> delegation-loaded -> on-chain-due-confirmed
              -> redeemed -> confirmed -> reconciled

Exits early with skipped_no_delegation, skipped_not_due or
skipped_precondition, or with error (reason = the stage that failed). Any
failure is captured in the returned ChargeResult so sibling subscriptions in
the same cycle are never affected.
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping

from collector.chain import ChainClient
from collector.delegation import (
    CaveatEnforcers,
    DelegationPair,
    Execution,
    encode_approve,
    encode_process_payment,
    encode_redeem_delegations,
    ensure_scope,
    parse_delegation_pair,
)
from collector.errors import (
    DelegationError,
    DelegationScopeError,
    PlanUnavailableError,
    ReceiptTimeoutError,
    RedemptionRevertedError,
)
from collector.models import (
    ChargeResult,
    ChargeStatus,
    DueSubscription,
    OnChainPlan,
    ReconciliationRequest,
)
from collector.reconciliation import ReconciliationWriter
from collector.resilience import is_rate_limited
from utils.logger import logger


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def format_units(amount: int, decimals: int) -> Decimal:
    """Integer token units -> decimal amount (exact)"""
    return Decimal(amount).scaleb(-decimals) if decimals else Decimal(amount)


class PaymentExecutor:
    """Runs the charge workflow for one subscription at a time"""

    def __init__(
        self,
        chain: ChainClient,
        writer: ReconciliationWriter,
        settings,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.chain = chain
        self.writer = writer
        self.settings = settings
        self.enforcers = CaveatEnforcers.from_settings(settings)
        self._clock = clock
        self._sleep = sleep

    async def process(self, due: DueSubscription) -> ChargeResult:
        """Charge one subscription; never raises"""
        stage = "parse"
        tx_hash = None
        try:
            # Step 1: load the delegation pair
            try:
                pair = self._load_delegations(due)
            except DelegationError as e:
                logger.info(f"Skipping {due.smart_account} ({due.subscription_id}): {e}")
                return ChargeResult(due.subscription_id, ChargeStatus.SKIPPED_NO_DELEGATION, reason=str(e))

            # Step 2: the chain decides whether payment is owed
            stage = "due-check"
            is_due, next_due = await self.chain.is_payment_due(due.smart_account)
            if not is_due:
                logger.info(
                    f"Payment not due for {due.smart_account} ({due.subscription_id}); "
                    f"chain next due {next_due}"
                )
                return ChargeResult(due.subscription_id, ChargeStatus.SKIPPED_NOT_DUE, reason=f"next_due={next_due}")

            # Step 3: build both executions from the on-chain plan
            stage = "encode"
            try:
                plan = await self._load_plan(due)
                token_address = plan.token_address
                decimals = await self.chain.token_decimals(token_address)
                calldata = self._build_redemption(due, pair, plan, token_address)
            except (PlanUnavailableError, DelegationScopeError) as e:
                logger.warning(f"Skipping {due.smart_account} ({due.subscription_id}): {e}")
                return ChargeResult(due.subscription_id, ChargeStatus.SKIPPED_PRECONDITION, reason=str(e))

            # Step 4: redeem both delegations in one transaction
            stage = "send"
            tx_hash = await self.chain.send_transaction(self.chain.delegation_manager_address, calldata)
            logger.info(f"Sent redemption {tx_hash} for {due.smart_account} ({due.subscription_id})")

            # Step 5: wait for finality
            stage = "receipt"
            receipt = await self.wait_for_receipt(tx_hash)
            charged_at = int(self._clock())

            # Step 6: reconcile with the authoritative price and period
            stage = "reconcile"
            await self.writer.reconcile(
                ReconciliationRequest(
                    subscription_id=due.subscription_id,
                    user_id=due.user_id,
                    developer_id=due.developer_id,
                    amount=format_units(plan.price, decimals),
                    token_address=token_address,
                    token_symbol=due.token_symbol,
                    tx_hash=tx_hash,
                    period_seconds=plan.period_seconds,
                    charged_at=charged_at,
                )
            )

            logger.info(
                f"Payment confirmed for {due.smart_account} in block "
                f"{receipt.get('blockNumber')} ({tx_hash})"
            )
            return ChargeResult(due.subscription_id, ChargeStatus.PAID, tx_hash=tx_hash)

        except RedemptionRevertedError as e:
            logger.error(f"Redemption reverted for {due.smart_account} ({due.subscription_id}): {e}")
            return ChargeResult(due.subscription_id, ChargeStatus.ERROR, reason="reverted", tx_hash=tx_hash, error=str(e))
        except ReceiptTimeoutError as e:
            logger.warning(f"{e}; the next cycle's due check will pick up the outcome")
            return ChargeResult(due.subscription_id, ChargeStatus.ERROR, reason="timeout", tx_hash=tx_hash, error=str(e))
        except Exception as e:
            logger.error(f"Charge failed for {due.smart_account} ({due.subscription_id}) at {stage}: {e}")
            return ChargeResult(due.subscription_id, ChargeStatus.ERROR, reason=stage, tx_hash=tx_hash, error=str(e))

    def _load_delegations(self, due: DueSubscription) -> DelegationPair:
        pair = parse_delegation_pair(due.delegation_data)
        pair.ensure_parties(delegator=due.smart_account, delegate=self.chain.operator_address)
        return pair

    async def _load_plan(self, due: DueSubscription) -> OnChainPlan:
        plan = await self.chain.get_plan(due.contract_plan_id)
        if not plan.active:
            raise PlanUnavailableError(f"Plan {due.contract_plan_id} is not active on-chain")
        if plan.price <= 0:
            raise PlanUnavailableError(f"Plan {due.contract_plan_id} has no price on-chain")
        if not plan.token_address or plan.token_address == ZERO_ADDRESS:
            raise PlanUnavailableError(f"Plan {due.contract_plan_id} has no token on-chain")
        return plan

    def _build_redemption(
        self,
        due: DueSubscription,
        pair: DelegationPair,
        plan: OnChainPlan,
        token_address: str,
    ) -> str:
        manager = self.chain.subscription_manager_address
        approve = Execution(
            target=token_address,
            value=0,
            call_data=encode_approve(manager, plan.price),
        )
        charge = Execution(
            target=manager,
            value=0,
            call_data=encode_process_payment(due.smart_account),
        )

        ensure_scope(pair.approve, approve, self.enforcers)
        ensure_scope(pair.charge, charge, self.enforcers)

        return encode_redeem_delegations([(pair.approve, approve), (pair.charge, charge)])

    async def wait_for_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        """
        Poll for the receipt with a growing interval until it is mined or
        RECEIPT_TIMEOUT_SECONDS pass. A reverted receipt raises
        RedemptionRevertedError.
        """
        timeout = self.settings.RECEIPT_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(self._poll_receipt(tx_hash), timeout=timeout)
        except asyncio.TimeoutError:
            raise ReceiptTimeoutError(tx_hash, timeout) from None

    async def _poll_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        interval = self.settings.RECEIPT_POLL_INTERVAL_SECONDS
        max_interval = self.settings.RECEIPT_MAX_POLL_INTERVAL_SECONDS
        attempt = 0

        while True:
            attempt += 1
            try:
                receipt = await self.chain.get_transaction_receipt(tx_hash)
            except Exception as e:
                if not is_rate_limited(e):
                    raise
                logger.warning(f"Receipt lookup for {tx_hash} rate limited (attempt {attempt})")
                receipt = None

            if receipt is not None:
                if receipt.get("status") == 0:
                    raise RedemptionRevertedError(tx_hash, receipt.get("blockNumber"))
                return receipt

            await self._sleep(interval)
            interval = min(interval * 2, max_interval)
