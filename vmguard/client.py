"""HTTP client for the stateless VM execution service."""

from __future__ import annotations

import binascii
import json
import logging
import os
import re
import time
from typing import Any, Callable, List, Optional, Type, TypeVar

import httpx

from .models import (
    ApiErrorResponse,
    ApiRequestError,
    ApiResponseError,
    DeserializationError,
    ExecutionContext,
    SecurityVerificationResult,
    SerializationError,
    StatelessSequenceRequest,
    StatelessSequenceResponse,
    StatelessTxRequest,
    StatelessTxResponse,
    StatelessVmError,
    TransactionExecutionStatus,
    from_dict,
    to_dict,
)

__all__ = ["StatelessVmClient"]

_log = logging.getLogger(__name__)

DEFAULT_SERVICE_URL = "http://localhost:7548"
DEFAULT_AVALANCHE_RPC_URL = "https://api.avax.network/ext/bc/C/rpc"
AVALANCHE_CHAIN_ID = 43114
DEFAULT_TIMEOUT = 60.0
DIRECT_GAS_USED = 100000

_U128_MAX = (1 << 128) - 1
_UNSIGNED = re.compile(r"\+?[0-9]+")

M = TypeVar("M")


def _strip_0x(text: str) -> str:
    while text.startswith("0x"):
        text = text[2:]
    return text


def _parse_u128(text: str) -> int:
    if not _UNSIGNED.fullmatch(text):
        return 0
    value = int(text)
    return value if value <= _U128_MAX else 0


def _status_line(response: httpx.Response) -> str:
    reason = response.reason_phrase
    return f"{response.status_code} {reason}".rstrip()


def _dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _error_kind(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "Request timed out"
    if isinstance(exc, httpx.ConnectError):
        return "Connection error"
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.LocalProtocolError, httpx.InvalidURL)):
        return "Invalid request"
    if isinstance(exc, httpx.DecodingError):
        return "Response decode error"
    return "Unknown error"


def _now_millis() -> int:
    return int(time.time() * 1000)


class StatelessVmClient:
    """Client for submitting transactions and sequences to the stateless VM."""

    def __init__(
        self,
        base_url: str,
        *,
        direct_mode: bool = False,
        rpc_url: Optional[str] = None,
        chain_id: int = 1,
        debug_mode: bool = False,
        avalanche_rpc_url: str = DEFAULT_AVALANCHE_RPC_URL,
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
    ) -> "StatelessVmClient":
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
    def new_direct(cls, rpc_url: str) -> "StatelessVmClient":
        """Build a client that bypasses the service and targets an RPC node."""
        return cls(
            "",
            direct_mode=True,
            rpc_url=rpc_url,
            avalanche_rpc_url=rpc_url,
        )

    def with_debug(self) -> "StatelessVmClient":
        """Turn on verbose diagnostics and return the client."""
        self.debug_mode = True
        return self

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "StatelessVmClient":
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
        """Encode a transaction as the fixed-width hex payload the service expects."""
        from_hex = _strip_0x(tx_request.from_).rjust(40, "0")
        to_hex = _strip_0x(tx_request.to).rjust(40, "0")
        value_hex = format(_parse_u128(tx_request.value), "x").rjust(64, "0")
        data = _strip_0x(tx_request.data)
        data_len = len(data.encode("utf-8")) // 2
        data_hex = format(data_len, "x").rjust(64, "0") + data
        gas_limit_hex = format(_parse_u128(tx_request.gas_limit), "x").rjust(64, "0")
        gas_price_hex = format(_parse_u128(tx_request.gas_price), "x").rjust(64, "0")
        return from_hex + to_hex + value_hex + data_hex + gas_limit_hex + gas_price_hex

    def execute_transaction(self, tx_request: StatelessTxRequest) -> StatelessTxResponse:
        """Run one transaction through the service's sequence endpoint."""
        tx_formatted = self.format_transaction_for_server(tx_request)
        self._diag("Executing transaction via sequence endpoint: %s", tx_formatted)

        millis = _now_millis()
        context = {
            "chain_id": self.chain_id,
            "metadata": {},
            "timestamp": int(time.time()),
        }
        request_json = {
            "atomic": True,
            "execution_context": context,
            "sequence_id": f"seq_{millis}",
            "timeout_seconds": 30,
            "bundle_id": f"bundle_{millis}",
            "transactions": [tx_formatted],
        }
        self._diag("Request JSON:\n%s", json.dumps(request_json, indent=2))

        try:
            response = self._http.post(f"{self.base_url}/sequence", json=request_json)
        except httpx.HTTPError as exc:
            if not self.debug_mode:
                raise ApiRequestError(f"Transaction execution failed: {exc}") from exc
            self._diag("Sequence endpoint failed, trying execute endpoint...")
            execute_json = {
                "transaction": tx_formatted,
                "execution_context": {
                    "chain_id": self.chain_id,
                    "metadata": {},
                    "timestamp": int(time.time()),
                },
            }
            try:
                response = self._http.post(f"{self.base_url}/execute", json=execute_json)
            except httpx.HTTPError as inner:
                raise ApiRequestError(f"Transaction execution failed: {inner}") from inner

        if not response.is_success:
            raise ApiErrorResponse(
                f"Transaction execution failed with status {_status_line(response)}: "
                f"{response.text}"
            )
        body = response.text
        self._diag("Response: %s", body)
        return self._parse(StatelessTxResponse, body, "Failed to parse response JSON")

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
            body_json = _dumps(to_dict(sequence_request))
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to serialize request: {exc}") from exc

        if self.debug_mode:
            for number, tx in enumerate(sequence_request.transactions, start=1):
                _log.debug("Transaction %d:\n%s", number, tx)
        self._diag("Request JSON:\n%s", body_json)

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

    def execute_atomic_sequence(
        self, transactions: List[str], chain_id: int
    ) -> StatelessSequenceResponse:
        """Execute already-encoded transactions atomically."""
        context = ExecutionContext(
            chain_id=chain_id,
            timestamp=int(time.time()),
            block_number=None,
            metadata=None,
        )
        millis = _now_millis()
        request = StatelessSequenceRequest(
            sequence_id=f"seq_{millis}",
            transactions=list(transactions),
            execution_context=context,
            timeout_seconds=30,
            atomic=True,
            bundle_id=f"bundle_{millis}",
        )
        return self.execute_sequence(request)

    def fetch_bytecode(self, contract_address: str) -> bytes:
        """Fetch a contract's deployed bytecode through the service."""
        api_url = f"{self.base_url}/bytecode/{contract_address}"
        self._diag("Fetching bytecode for %s from %s", contract_address, api_url)
        try:
            response = self._http.get(api_url)
        except httpx.HTTPError as exc:
            raise ApiRequestError(f"Failed to fetch bytecode: {exc}") from exc
        if not response.is_success:
            raise ApiResponseError(
                f"Failed to fetch bytecode. Status: {_status_line(response)}, "
                f"Response: {response.text}"
            )
        hex_string = _strip_0x(response.text)
        try:
            bytecode = binascii.unhexlify(hex_string)
        except (binascii.Error, ValueError) as exc:
            raise DeserializationError(f"Failed to decode bytecode hex: {exc}") from exc
        self._diag("Fetched bytecode length: %d bytes", len(bytecode))
        return bytecode

    def execute_direct(self, request: StatelessSequenceRequest) -> StatelessSequenceResponse:
        """Execute a sequence immediately through the service's direct endpoint."""
        api_url = f"{self.base_url}/direct"
        try:
            request_json = _dumps(to_dict(request))
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to serialize request: {exc}") from exc
        self._diag("Direct API URL: %s, request: %s", api_url, request_json)

        try:
            response = self._http.post(
                api_url,
                content=request_json.encode("utf-8"),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ApiRequestError(f"Failed to send request: {exc}") from exc
        if not response.is_success:
            raise ApiResponseError(
                f"Failed to execute direct transaction. Status: {_status_line(response)}, "
                f"Response: {response.text}"
            )
        result = self._parse(StatelessSequenceResponse, response.text, "Failed to parse response")
        self._diag("Direct execution response: %r", result)
        return result