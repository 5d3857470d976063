import json

import httpx
import pytest

from vmguard.models import (
    ApiErrorResponse,
    ApiRequestError,
    ApiResponseError,
    DeserializationError,
    ExecutionContext,
    SecurityVerificationRequest,
    StatelessSequenceRequest,
    StatelessTxRequest,
    StatelessVmError,
)
from vmguard.sequence_client import SequenceClient

BASE = "http://vm.test"


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


def _tx(**overrides):
    fields = dict(
        from_="0xabc",
        to="def",
        value="0x10",
        data="0x1234",
        gas_limit="5208",
        gas_price="0x1",
        security_verification=_verification(),
        bundle_id=None,
    )
    fields.update(overrides)
    return StatelessTxRequest(**fields)


def _sequence(transactions=("aa", "bb")):
    return StatelessSequenceRequest(
        sequence_id="seq_1",
        transactions=list(transactions),
        execution_context=ExecutionContext(chain_id=1, timestamp=100),
        timeout_seconds=30,
        atomic=True,
    )


def _response_body(sequence_id="seq_1"):
    return {
        "sequence_id": sequence_id,
        "success": True,
        "transaction_statuses": [
            {"tx_hash": "0x01", "success": True, "gas_used": 21000, "error": None}
        ],
        "fallback_executed": False,
        "gas_used": 21000,
        "execution_time_ms": 12,
        "error": None,
    }


def _client(handler):
    return SequenceClient(BASE, transport=httpx.MockTransport(handler))


def test_constructor_defaults():
    client = SequenceClient(BASE)
    assert client.chain_id == 1
    assert client.avalanche_rpc_url == ""
    assert client.direct_mode is False
    assert client.debug_mode is False


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("STATELESSVM_URL", "http://env.test")
    monkeypatch.setenv("AVALANCHE_RPC_URL", "http://rpc.test")
    client = SequenceClient.from_env(debug_mode=True)
    assert client.base_url == "http://env.test"
    assert client.avalanche_rpc_url == "http://rpc.test"
    assert client.chain_id == 43114
    assert client.debug_mode is True


def test_from_env_defaults(monkeypatch):
    monkeypatch.delenv("STATELESSVM_URL", raising=False)
    monkeypatch.delenv("AVALANCHE_RPC_URL", raising=False)
    client = SequenceClient.from_env()
    assert client.base_url == "http://localhost:7548"
    assert client.avalanche_rpc_url == "https://api.avax.network/ext/bc/C/rpc"


def test_new_direct():
    client = SequenceClient.new_direct("http://rpc.test")
    assert client.direct_mode is True
    assert client.base_url == ""
    assert client.rpc_url == "http://rpc.test"
    assert client.avalanche_rpc_url == "http://rpc.test"


def test_debug_toggles():
    client = SequenceClient(BASE)
    assert client.with_debug() is client
    assert client.debug_mode is True
    assert client.with_debug_mode(False).debug_mode is False


def test_format_with_bundle_id():
    client = SequenceClient(BASE)
    payload = client.format_transaction_for_server(_tx(bundle_id="a-b-c"))
    assert payload == "abc" + "def" + "10" + "1234" + "5208" + "1" + "00" + "abc"


def test_format_strips_repeated_prefix():
    client = SequenceClient(BASE)
    payload = client.format_transaction_for_server(_tx(from_="0x0xabc", bundle_id="z"))
    assert payload.startswith("abcdef")


def test_format_generates_bundle_id():
    client = SequenceClient(BASE)
    prefix = "abc" + "def" + "10" + "1234" + "5208" + "1" + "00"
    first = client.format_transaction_for_server(_tx())
    second = client.format_transaction_for_server(_tx())
    assert first.startswith(prefix)
    suffix = first[len(prefix):]
    assert suffix.startswith("auto")
    assert "-" not in suffix
    assert len(suffix) == len("auto") + 32
    assert first != second


def test_verify_bytecode_sends_hex():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={"passed": True, "risk_score": 2, "warnings": []})

    with _client(handler) as client:
        result = client.verify_bytecode(b"\xde\xad\xbe\xef")
    assert seen == {"path": "/verify", "body": "deadbeef"}
    assert result.passed is True
    assert result.risk_score == 2
    assert result.warnings == []


def test_verify_bytecode_error_status():
    with _client(lambda request: httpx.Response(503)) as client:
        with pytest.raises(ApiResponseError) as info:
            client.verify_bytecode(b"\x00")
    assert "503" in str(info.value)


def test_execute_sequence_success():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["accept"] = request.headers["accept"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_response_body())

    with _client(handler) as client:
        response = client.execute_sequence(_sequence())
    assert seen["path"] == "/sequence"
    assert seen["accept"] == "application/json"
    assert seen["body"]["transactions"] == ["aa", "bb"]
    assert seen["body"]["atomic"] is True
    assert "bundle_id" not in seen["body"]
    assert response.sequence_id == "seq_1"
    assert response.transaction_statuses[0].gas_used == 21000


def test_execute_sequence_error_field():
    body = _response_body()
    body["error"] = "reverted"
    with _client(lambda request: httpx.Response(200, json=body)) as client:
        with pytest.raises(ApiErrorResponse) as info:
            client.execute_sequence(_sequence())
    assert '"reverted"' in str(info.value)


def test_execute_sequence_bad_status():
    with _client(lambda request: httpx.Response(500, text="boom")) as client:
        with pytest.raises(ApiResponseError) as info:
            client.execute_sequence(_sequence())
    assert "500" in str(info.value)
    assert "boom" in str(info.value)


def test_execute_sequence_connection_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with _client(handler) as client:
        with pytest.raises(ApiRequestError) as info:
            client.execute_sequence(_sequence())
    assert "Connection error" in str(info.value)


def test_execute_sequence_malformed_response():
    with _client(lambda request: httpx.Response(200, json={"sequence_id": "x"})) as client:
        with pytest.raises(DeserializationError):
            client.execute_sequence(_sequence())


def test_direct_mode_simulates_statuses(monkeypatch):
    monkeypatch.setenv("WALLET_ADDRESS", "0x0000000000000000000000000000000000000001")
    monkeypatch.setenv("WALLET_KEY", "placeholder")
    client = SequenceClient.new_direct("http://rpc.test")
    response = client.execute_sequence(_sequence(("aa", "bb", "cc")))
    assert response.sequence_id == "seq_1"
    assert response.success is True
    assert [s.tx_hash for s in response.transaction_statuses] == [
        "0x" + format(i, "064x") for i in range(3)
    ]
    assert all(s.gas_used == 100000 for s in response.transaction_statuses)
    client.close()


def test_direct_mode_requires_wallet(monkeypatch):
    monkeypatch.delenv("WALLET_ADDRESS", raising=False)
    monkeypatch.delenv("WALLET_KEY", raising=False)
    client = SequenceClient.new_direct("http://rpc.test")
    with pytest.raises(StatelessVmError):
        client.execute_sequence(_sequence())
    client.close()


def test_direct_mode_requires_rpc_url():
    client = SequenceClient(BASE, direct_mode=True)
    with pytest.raises(StatelessVmError) as info:
        client.execute_sequence(_sequence())
    assert "RPC URL not set" in str(info.value)
    client.close()


def test_closed_client_refuses_requests():
    client = _client(lambda request: httpx.Response(200, json=_response_body()))
    with client:
        pass
    with pytest.raises(RuntimeError):
        client.verify_bytecode(b"\x01")