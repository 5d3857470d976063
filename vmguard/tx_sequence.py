"""Retrying execution of transaction requests as stateless VM sequences."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional

from .models import (
    ExecutionContext,
    StatelessSequenceRequest,
    StatelessSequenceResponse,
    StatelessTxRequest,
    StatelessTxResponse,
    StatelessVmError,
)
from .sequence_client import SequenceClient

__all__ = ["TxSequenceExecutor"]

_log = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_SEQUENCE_TIMEOUT = 30
_CONNECTION_MARKERS = ("connection", "timeout", "closed")


def _is_connection_error(exc: Exception) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _CONNECTION_MARKERS)


class TxSequenceExecutor:
    """Encodes transaction requests and runs them as a sequence, retrying on failure."""

    def __init__(
        self,
        client: SequenceClient,
        *,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self._sleep = sleep

    def _build_request(
        self,
        tx_requests: Iterable[StatelessTxRequest],
        chain_id: int,
        atomic: bool,
        timeout_seconds: Optional[int],
    ) -> StatelessSequenceRequest:
        transactions = [
            self.client.format_transaction_for_server(tx) for tx in tx_requests
        ]
        now = time.time()
        context = ExecutionContext(
            chain_id=chain_id,
            timestamp=int(now),
            block_number=None,
            metadata=None,
        )
        return StatelessSequenceRequest(
            sequence_id=f"seq_{int(now * 1000)}",
            transactions=transactions,
            execution_context=context,
            timeout_seconds=(
                DEFAULT_SEQUENCE_TIMEOUT if timeout_seconds is None else timeout_seconds
            ),
            atomic=atomic,
        )

    def execute_tx_sequence(
        self,
        tx_requests: Iterable[StatelessTxRequest],
        chain_id: int,
        atomic: bool,
        timeout_seconds: Optional[int] = None,
    ) -> StatelessSequenceResponse:
        """Execute the requests in order, retrying with backoff on errors."""
        request = self._build_request(tx_requests, chain_id, atomic, timeout_seconds)
        backoff = 1
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                _log.info("Execution attempt %d/%d", attempt, self.max_attempts)
            try:
                response = self.client.execute_sequence(request)
            except StatelessVmError as exc:
                if attempt == self.max_attempts:
                    raise
                _log.warning("Attempt %d failed: %s, retrying...", attempt, exc)
                if _is_connection_error(exc):
                    _log.info("Connection issue detected, backing off for %d seconds", backoff)
                    self._sleep(backoff)
                    backoff *= 2
                else:
                    self._sleep(1)
                continue
            if attempt > 1:
                _log.info("Succeeded on attempt %d", attempt)
            return response
        raise StatelessVmError("Failed after multiple attempts")

    def execute_atomic_sequence(
        self,
        transactions: Iterable[StatelessTxRequest],
        chain_id: int,
        timeout_seconds: Optional[int] = None,
    ) -> StatelessSequenceResponse:
        """Execute the requests so that all succeed or all fail."""
        return self.execute_tx_sequence(transactions, chain_id, True, timeout_seconds)

    def execute_transaction(self, tx_request: StatelessTxRequest) -> StatelessTxResponse:
        """Execute one transaction as an atomic single-element sequence."""
        response = self.execute_tx_sequence([tx_request], 1, True, None)
        if not response.transaction_statuses:
            raise StatelessVmError("No transaction results returned")
        status = response.transaction_statuses[0]
        return StatelessTxResponse(
            tx_hash=status.tx_hash,
            status="success" if status.success else "failed",
            result=None,
            error=status.error,
            security_verification=None,
        )