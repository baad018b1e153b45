"""
Collector Resilience

- Error classification for chain transport failures
- Bounded retry with a short escalating backoff (tenacity)
- Retry queue for confirmed payments that could not be recorded
"""

import asyncio
import json
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
    wait_none,
)

from collector.models import ReconciliationRequest
from utils.logger import logger

T = TypeVar("T")

DEFAULT_RATE_LIMIT_BACKOFFS = (1.0, 2.0, 3.0)

# JSON-RPC codes providers use for throttling
RATE_LIMIT_RPC_CODES = {-32005, -32007, 429}
RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "request limit", "too many requests")


# ============================================================================
# Error classification
# ============================================================================

def _error_payloads(exc: BaseException) -> Iterable[Dict[str, Any]]:
    """JSON-RPC error objects carried by an exception, in the shapes web3 uses"""
    rpc_response = getattr(exc, "rpc_response", None)
    if isinstance(rpc_response, dict):
        error = rpc_response.get("error")
        if isinstance(error, dict):
            yield error

    for arg in getattr(exc, "args", ()):
        if isinstance(arg, dict):
            yield arg
            nested = arg.get("error")
            if isinstance(nested, dict):
                yield nested


def is_rate_limited(exc: BaseException) -> bool:
    """True when the transport refused the call because of throttling"""
    status = getattr(exc, "status", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    if status == 429:
        return True

    for payload in _error_payloads(exc):
        if payload.get("code") in RATE_LIMIT_RPC_CODES:
            return True
        message = str(payload.get("message", "")).lower()
        if any(marker in message for marker in RATE_LIMIT_MARKERS):
            return True

    message = str(exc).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def is_transient(exc: BaseException) -> bool:
    """Rate limits plus transport timeouts; only safe for read calls"""
    return is_rate_limited(exc) or isinstance(exc, (asyncio.TimeoutError, TimeoutError))


# ============================================================================
# Retry
# ============================================================================

def _log_backoff(label: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"[{label}] transient error, backing off {wait:.1f}s "
            f"(attempt {retry_state.attempt_number}): {error}"
        )
    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    classify: Callable[[BaseException], bool],
    backoffs: Sequence[float] = DEFAULT_RATE_LIMIT_BACKOFFS,
    label: str = "rpc",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run operation, retrying while classify(error) is True.

    One retry per backoff entry; the original exception is re-raised when it
    is not retryable or the backoffs are exhausted.
    """
    wait = wait_chain(*[wait_fixed(delay) for delay in backoffs]) if backoffs else wait_none()
    retrying = AsyncRetrying(
        retry=retry_if_exception(classify),
        wait=wait,
        stop=stop_after_attempt(len(backoffs) + 1),
        before_sleep=_log_backoff(label),
        sleep=sleep,
        reraise=True,
    )

    # tenacity only awaits coroutine functions; operation may be a plain
    # lambda returning an awaitable
    async def attempt() -> T:
        return await operation()

    return await retrying(attempt)


# ============================================================================
# Pending reconciliation queue
# ============================================================================

class PendingReconciliationQueue:
    """
    Confirmed payments whose ledger write failed.

    Entries are replayed at the start of every cycle. When a storage path is
    configured the queue survives restarts.
    """

    def __init__(self, storage_path: Optional[Path] = None):
        self.storage_path = Path(storage_path) if storage_path else None
        self._queue: deque = deque()

        if self.storage_path:
            self._load_queue()

    def _load_queue(self) -> None:
        """Load persisted queue from disk"""
        if not self.storage_path or not self.storage_path.exists():
            return

        try:
            data = json.loads(self.storage_path.read_text())
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load pending reconciliations from {self.storage_path}: {e}")
            return

        for item in data.get("queue", []):
            self._queue.append(ReconciliationRequest.from_dict(item))
        if self._queue:
            logger.warning(f"Loaded {len(self._queue)} pending reconciliations")

    def _save_queue(self) -> None:
        """Persist queue to disk"""
        if not self.storage_path:
            return

        data = {
            "queue": [request.to_dict() for request in self._queue],
            "saved_at": datetime.now().isoformat(),
        }
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self.storage_path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            logger.error(f"Failed to persist pending reconciliations: {e}")

    def add(self, request: ReconciliationRequest) -> None:
        if any(queued.tx_hash == request.tx_hash for queued in self._queue):
            return
        self._queue.append(request)
        self._save_queue()
        logger.warning(f"Queued reconciliation for {request.tx_hash} ({len(self._queue)} pending)")

    def pending(self) -> List[ReconciliationRequest]:
        """Snapshot of queued requests; entries stay queued until removed"""
        return list(self._queue)

    def remove(self, tx_hash: str) -> None:
        remaining = [r for r in self._queue if r.tx_hash != tx_hash]
        if len(remaining) != len(self._queue):
            self._queue = deque(remaining)
            self._save_queue()

    def __len__(self) -> int:
        return len(self._queue)

    def get_queue_status(self) -> Dict[str, Any]:
        return {
            "size": len(self._queue),
            "storage_path": str(self.storage_path) if self.storage_path else None,
            "requests": [
                {
                    "tx_hash": r.tx_hash,
                    "subscription_id": r.subscription_id,
                    "charged_at": r.charged_at,
                }
                for r in list(self._queue)
            ],
        }
