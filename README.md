# vmguard

vmguard is a library for working with a stateless EVM execution service over
HTTP. It sends single transactions and transaction sequences to the service,
fetches contract bytecode through it, asks it to analyse bytecode, and checks
contracts and transactions against a security configuration before they are
used.

## Installation

```
pip install vmguard
```

With the test dependencies:

```
pip install "vmguard[test]"
```

## Modules

- `vmguard.models`: the request and response records exchanged with the
  service (`StatelessTxRequest`, `StatelessSequenceRequest`,
  `StatelessSequenceResponse`, `SecurityVerificationResult` and the rest),
  `to_dict` and `from_dict` for converting them to and from decoded JSON, and
  the exceptions. `from_dict` checks every field, including unsigned integer
  ranges, and raises `DeserializationError` when the data does not fit.
- `vmguard.client`: `StatelessVmClient`. It encodes a transaction as a
  fixed-width hex payload (`format_transaction_for_server`) and offers
  `execute_transaction`, `execute_sequence`, `execute_atomic_sequence`,
  `execute_direct`, `verify_bytecode` and `fetch_bytecode`.
- `vmguard.sequence_client`: `SequenceClient`, a client whose transaction
  payload is the concatenated fields followed by the bundle id (a random one
  when the request has none). It offers `execute_sequence` and
  `verify_bytecode`.
- `vmguard.tx_sequence`: `TxSequenceExecutor`, which encodes
  `StatelessTxRequest` objects with a `SequenceClient`, sends them as one
  sequence and retries failed attempts (three by default). After an error
  mentioning a connection, timeout or closed connection it waits 1, 2, 4...
  seconds; after other errors it waits one second. It also has
  `execute_atomic_sequence` and `execute_transaction`.
- `vmguard.verifier`: `SecurityVerifier`, driven by a `SecurityConfig`, with
  `verify_contract`, which returns a list of `VulnerabilityReport` entries,
  and `verify_transaction`, which returns whether a transaction is safe.

## Usage

```python
from vmguard.client import StatelessVmClient
from vmguard.verifier import SecurityConfig, SecurityVerifier

contract = "0x1111111111111111111111111111111111111111"

with StatelessVmClient("http://localhost:7548") as client:
    bytecode = client.fetch_bytecode(contract)
    print(len(bytecode), "bytes")

config = SecurityConfig(verify_contracts=True, verification_mode="test", max_risk_score=5)
verifier = SecurityVerifier(config, "http://localhost:7548")
for report in verifier.verify_contract(contract):
    print(report.vulnerability_type, report.severity, report.risk_score)

safe = verifier.verify_transaction(
    "0x2222222222222222222222222222222222222222",
    "0x3333333333333333333333333333333333333333",
    "1000000000000000",
    "0x",
    "21000",
    "20",
)
print("safe:", safe)
```

Retrying sequences:

```python
from vmguard.sequence_client import SequenceClient
from vmguard.tx_sequence import TxSequenceExecutor

with SequenceClient("http://localhost:7548") as client:
    executor = TxSequenceExecutor(client)
    response = executor.execute_atomic_sequence(tx_requests, chain_id=43114)
```

`StatelessVmClient.from_env()` and `SequenceClient.from_env()` build a client
for chain id 43114, taking the service address from `STATELESSVM_URL` and the
RPC address from `AVALANCHE_RPC_URL`; without them the service address is
`http://localhost:7548`. Every client takes an optional `transport`, which is
handed to `httpx.Client`.

Diagnostics go to the standard `logging` module; turn on `debug_mode` (or call
`with_debug()`) for more detail.

## Verification modes

`SecurityConfig.verification_mode` controls the verifier:

- `"test"` (the default): `verify_contract` fetches the bytecode but analyses
  it locally instead of calling the service.
- `"disabled"`: `verify_transaction` returns `True` at once.
- `"contract-only"`: `verify_transaction` would use a remembered verdict for
  the target contract when caching is on.
- any other value: `verify_contract` sends the bytecode to the service's
  `/verify` endpoint.

Outside `"disabled"`, `verify_transaction` executes the transaction through the
service and treats it as safe when the service's security check passed with a
risk score no higher than `max_risk_score`, or, without a security check, when
the status is `"success"`.

## Errors

Service, transport and decoding failures are raised as `StatelessVmError` or
its subclasses `ApiRequestError`, `ApiResponseError`, `ApiErrorResponse`,
`SerializationError` and `DeserializationError`. `from_dict` raises
`TypeError` when given a class that is not a model, and `TxSequenceExecutor`
raises `ValueError` when `max_attempts` is below 1.

## What it does not do

- There is no command-line program and no server; vmguard is a library.
- Verdicts are not stored: `get_cached_verification` always returns `None`
  and `cache_verification_result` only logs.
- The local analysis used in `"test"` mode always finds no vulnerability.
- Clients made with `new_direct(rpc_url)` do not sign or submit anything.
  Their `execute_sequence` requires `WALLET_ADDRESS` and `WALLET_KEY` in the
  environment and then reports every transaction as succeeded with a
  placeholder hash.

## Running the tests

```
pytest
```