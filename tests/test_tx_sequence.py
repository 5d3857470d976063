import json

import httpx
import pytest

from vmguard.models import (
    ApiRequestError,
    ApiResponseError,
    SecurityVerificationRequest,
    StatelessTxRequest,
    StatelessVmError,
)
from vmguard.sequence_client import SequenceClient
from vmguard.tx_sequence import TxSequenceExecutor


def _verification():
    return SecurityVerificationRequest(
        address="0xdAC17F958D2ee523a2206206994597C13D831ec7",
        enabled=True,
        max_risk_score=5,
        verify_reentrancy=True,
        verify_integer_underflow=True,
        verify_integer_overflow=True,
        verify_unchecked_calls=True,
        verify_upgradability=False,
        verify_mev_vulnerability=True,
        verify_cross_contract_reentrancy=False,
        verify_precision_loss=False,
        verify_gas_griefing=False,
    )


def _tx(bundle_id="b-1"):
    return StatelessTxRequest(
        from_="0x8626f6940E2eb28930eFb4CeF49B2d1F2C9C1199",
        to="0xdAC17F958D2ee523a2206206994597C13D831ec7",
        value="1000000000000000",
        data="0x",
        gas_limit="21000",
        gas_price="20",
        security_verification=_verification(),
        bundle_id=bundle_id,
    )


def _body(statuses):
    return {
        "sequence_id": "seq_test",
        "success": True,
        "transaction_statuses": statuses,
        "fallback_executed": False,
        "gas_used": 21000,
        "execution_time_ms": 5,
    }


OK_STATUS = {"tx_hash": "0xabc", "success": True, "gas_used": 21000}


class Recorder:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _executor(handler, **kwargs):
    client = SequenceClient("http://vm.test", transport=httpx.MockTransport(handler))
    sleeps = []
    executor = TxSequenceExecutor(client, sleep=sleeps.append, **kwargs)
    return executor, client, sleeps


def test_sequence_request_body():
    handler = Recorder([httpx.Response(200, json=_body([OK_STATUS]))])
    executor, client, sleeps = _executor(handler)
    tx = _tx()
    response = executor.execute_tx_sequence([tx], 43114, False)
    assert response.transaction_statuses[0].tx_hash == "0xabc"
    assert sleeps == []
    sent = json.loads(handler.requests[0].content)
    assert handler.requests[0].url.path == "/sequence"
    assert sent["transactions"] == [client.format_transaction_for_server(tx)]
    assert sent["atomic"] is False
    assert sent["timeout_seconds"] == 30
    assert sent["execution_context"]["chain_id"] == 43114
    assert sent["execution_context"]["metadata"] is None
    assert sent["sequence_id"].startswith("seq_")
    assert "bundle_id" not in sent


def test_atomic_sequence_with_timeout():
    handler = Recorder([httpx.Response(200, json=_body([OK_STATUS, OK_STATUS]))])
    executor, _, _ = _executor(handler)
    response = executor.execute_atomic_sequence([_tx("a"), _tx("b")], 1, 10)
    assert len(response.transaction_statuses) == 2
    sent = json.loads(handler.requests[0].content)
    assert sent["atomic"] is True
    assert sent["timeout_seconds"] == 10
    assert len(sent["transactions"]) == 2


def test_connection_errors_back_off_exponentially():
    handler = Recorder(
        [
            httpx.ConnectError("refused"),
            httpx.ConnectError("refused"),
            httpx.Response(200, json=_body([OK_STATUS])),
        ]
    )
    executor, _, sleeps = _executor(handler)
    response = executor.execute_tx_sequence([_tx()], 1, True)
    assert response.success is True
    assert sleeps == [1, 2]
    assert len(handler.requests) == 3


def test_other_errors_wait_one_second_then_raise():
    handler = Recorder([httpx.Response(500, text="bad")] * 3)
    executor, _, sleeps = _executor(handler)
    with pytest.raises(ApiResponseError):
        executor.execute_tx_sequence([_tx()], 1, True)
    assert sleeps == [1, 1]
    assert len(handler.requests) == 3


def test_single_attempt_does_not_sleep():
    handler = Recorder([httpx.ConnectError("refused")])
    executor, _, sleeps = _executor(handler, max_attempts=1)
    with pytest.raises(ApiRequestError):
        executor.execute_tx_sequence([_tx()], 1, True)
    assert sleeps == []


def test_invalid_max_attempts():
    client = SequenceClient("http://vm.test", transport=httpx.MockTransport(Recorder([])))
    with pytest.raises(ValueError):
        TxSequenceExecutor(client, max_attempts=0)


def test_execute_transaction_success():
    handler = Recorder([httpx.Response(200, json=_body([OK_STATUS]))])
    executor, _, _ = _executor(handler)
    result = executor.execute_transaction(_tx())
    assert result.tx_hash == "0xabc"
    assert result.status == "success"
    assert result.error is None
    assert result.security_verification is None
    sent = json.loads(handler.requests[0].content)
    assert sent["atomic"] is True
    assert sent["execution_context"]["chain_id"] == 1


def test_execute_transaction_failed_status():
    status = {"tx_hash": "0xdef", "success": False, "gas_used": 0, "error": "reverted"}
    handler = Recorder([httpx.Response(200, json=_body([status]))])
    executor, _, _ = _executor(handler)
    result = executor.execute_transaction(_tx())
    assert result.status == "failed"
    assert result.error == "reverted"


def test_execute_transaction_without_results():
    handler = Recorder([httpx.Response(200, json=_body([]))])
    executor, _, _ = _executor(handler)
    with pytest.raises(StatelessVmError, match="No transaction results returned"):
        executor.execute_transaction(_tx())


def test_direct_mode_transaction(monkeypatch):
    monkeypatch.setenv("WALLET_ADDRESS", "0x0000000000000000000000000000000000000001")
    monkeypatch.setenv("WALLET_KEY", "placeholder")
    client = SequenceClient.new_direct("http://rpc.test")
    executor = TxSequenceExecutor(client, sleep=lambda _: None)
    result = executor.execute_transaction(_tx())
    assert result.tx_hash == "0x" + "0" * 64
    assert result.status == "success"