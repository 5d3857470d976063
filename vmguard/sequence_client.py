"""Sequence-oriented client for the stateless VM execution service."""

from __future__ import annotations

import json
import logging
import os
import uuid
from typing import Any, List, Optional, Type, TypeVar

import httpx

from .client import (
    AVALANCHE_CHAIN_ID,
    DEFAULT_AVALANCHE_RPC_URL,
    DEFAULT_SERVICE_URL,
    DEFAULT_TIMEOUT,
    DIRECT_GAS_USED,
    _dumps,
    _error_kind,
    _status_line,
    _strip_0x,
)
from .models import (
    ApiErrorResponse,
    ApiRequestError,
    ApiResponseError,
    DeserializationError,
    SecurityVerificationResult,
    SerializationError,
    StatelessSequenceRequest,
    StatelessSequenceResponse,
    StatelessTxRequest,
    StatelessVmError,
    TransactionExecutionStatus,
    from_dict,
    to_dict,
)

__all__ = ["SequenceClient"]

_log = logging.getLogger(__name__)

M = TypeVar("M")


class SequenceClient:
    """Client that submits transactions to the stateless VM as sequences."""

    def __init__(
        self,
        base_url: str,
        *,
        direct_mode: bool = False,
        rpc_url: Optional[str] = None,
        chain_id: int = 1,
        debug_mode: bool = False,
        avalanche_rpc_url: str = "",
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.direct_mode = direct_mode
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.debug_mode = debug_mode
        self.avalanche_rpc_url = avalanche_rpc_url
        self._http = httpx.Client(transport=transport, timeout=DEFAULT_TIMEOUT)

    @classmethod
    def from_env(
        cls,
        url: Optional[str] = None,
        avalanche_rpc_url: Optional[str] = None,
        debug_mode: bool = False,
    ) -> "SequenceClient":
        """Build a client for the Avalanche C-Chain, filling gaps from the environment."""
        if url is None:
            url = os.environ.get("STATELESSVM_URL", DEFAULT_SERVICE_URL)
        if avalanche_rpc_url is None:
            avalanche_rpc_url = os.environ.get("AVALANCHE_RPC_URL", DEFAULT_AVALANCHE_RPC_URL)
        return cls(
            url,
            chain_id=AVALANCHE_CHAIN_ID,
            debug_mode=debug_mode,
            avalanche_rpc_url=avalanche_rpc_url,
        )

    @classmethod
    def new_direct(cls, rpc_url: str) -> "SequenceClient":
        """Build a client that bypasses the service and targets an RPC node."""
        return cls(
            "",
            direct_mode=True,
            rpc_url=rpc_url,
            avalanche_rpc_url=rpc_url,
        )

    def with_debug(self) -> "SequenceClient":
        """Turn on verbose diagnostics and return the client."""
        self.debug_mode = True
        return self

    def with_debug_mode(self, debug: bool) -> "SequenceClient":
        """Set verbose diagnostics on or off and return the client."""
        self.debug_mode = debug
        return self

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SequenceClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ------------------------------------------------------------------ helpers

    def _diag(self, message: str, *args: Any) -> None:
        if self.debug_mode:
            _log.debug(message, *args)

    def _parse(self, cls: Type[M], text: str, context: str) -> M:
        try:
            return from_dict(cls, json.loads(text))
        except (ValueError, DeserializationError) as exc:
            raise DeserializationError(f"{context}: {exc}") from exc

    # ------------------------------------------------------------------ transactions

    def format_transaction_for_server(self, tx_request: StatelessTxRequest) -> str:
        """Concatenate the transaction fields and bundle id into one hex payload."""
        bundle_id = tx_request.bundle_id
        if bundle_id is None:
            bundle_id = f"auto-{uuid.uuid4()}"
        payload = "".join(
            (
                _strip_0x(tx_request.from_),
                _strip_0x(tx_request.to),
                _strip_0x(tx_request.value),
                _strip_0x(tx_request.data),
                _strip_0x(tx_request.gas_limit),
                _strip_0x(tx_request.gas_price),
                "00",
                bundle_id.replace("-", ""),
            )
        )
        self._diag("Generated transaction payload: %s", payload)
        return payload

    def verify_bytecode(self, bytecode: bytes) -> SecurityVerificationResult:
        """Ask the service to analyse contract bytecode."""
        try:
            response = self._http.post(f"{self.base_url}/verify", content=bytes(bytecode).hex())
        except httpx.HTTPError as exc:
            raise ApiRequestError(str(exc)) from exc
        if not response.is_success:
            raise ApiResponseError(
                "StatelessVM verification request failed with status: "
                f"{_status_line(response)}"
            )
        return self._parse(SecurityVerificationResult, response.text, "Failed to parse response")

    # ------------------------------------------------------------------ sequences

    def execute_sequence(
        self, sequence_request: StatelessSequenceRequest
    ) -> StatelessSequenceResponse:
        """Execute a sequence of transactions as one unit."""
        if self.direct_mode:
            return self._execute_sequence_direct(sequence_request)

        api_url = f"{self.base_url}/sequence"
        _log.info("Executing sequence via StatelessVM service: %s", api_url)
        _log.info("Sequence ID: %s", sequence_request.sequence_id)
        _log.info("Transaction count: %d", len(sequence_request.transactions))

        try:
            payload = to_dict(sequence_request)
            if payload.get("bundle_id") is None:
                payload.pop("bundle_id", None)
            body_json = _dumps(payload)
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to serialize request: {exc}") from exc

        if self.debug_mode:
            for number, tx in enumerate(sequence_request.transactions, start=1):
                _log.debug("Transaction %d:\n%s", number, tx)
            _log.debug(
                "atomic: %s, timeout_seconds: %d",
                sequence_request.atomic,
                sequence_request.timeout_seconds,
            )
        _log.debug("JSON being sent to server:\n%s", body_json)

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Connection": "close",
            "Accept-Encoding": "identity",
        }
        try:
            response = self._http.post(api_url, content=body_json.encode("utf-8"), headers=headers)
        except httpx.HTTPError as exc:
            kind = _error_kind(exc)
            self._diag("Request error (%s): %s", kind, exc)
            raise ApiRequestError(f"StatelessVM API request error ({kind}): {exc}") from exc

        _log.info("Response status: %s", _status_line(response))
        if not response.is_success:
            raise ApiResponseError(
                f"StatelessVM API request failed with status: {_status_line(response)}"
                f" - Response: {response.text}"
            )

        text = response.text
        _log.info("Response length: %d bytes", len(text.encode("utf-8")))

        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict) and decoded.get("error") is not None:
            raise ApiErrorResponse(
                f"StatelessVM sequence execution failed: {_dumps(decoded['error'])}"
            )

        return self._parse(StatelessSequenceResponse, text, "Failed to deserialize response")

    def _execute_sequence_direct(
        self, sequence_request: StatelessSequenceRequest
    ) -> StatelessSequenceResponse:
        if self.rpc_url is None:
            raise StatelessVmError("RPC URL not set for direct mode")
        _log.info("Executing sequence directly via RPC: %s", self.rpc_url)

        for name in ("WALLET_ADDRESS", "WALLET_KEY"):
            if name not in os.environ:
                raise StatelessVmError(f"environment variable {name} not found")
        _log.info("Using wallet: %s", os.environ["WALLET_ADDRESS"])

        statuses: List[TransactionExecutionStatus] = []
        for index, tx in enumerate(sequence_request.transactions):
            _log.info("Transaction %d: %.60s...", index + 1, tx)
            statuses.append(
                TransactionExecutionStatus(
                    tx_hash="0x" + format(index, "064x"),
                    success=True,
                    gas_used=DIRECT_GAS_USED,
                )
            )
        return StatelessSequenceResponse(
            sequence_id=sequence_request.sequence_id,
            success=True,
            transaction_statuses=statuses,
            fallback_executed=False,
            gas_used=0,
            execution_time_ms=0,
        )