"""Wire models and errors for the stateless VM service."""

import dataclasses
import types
import typing
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Mapping, Optional, TypeVar, Union

__all__ = [
    "StatelessVmError",
    "ApiRequestError",
    "ApiResponseError",
    "ApiErrorResponse",
    "SerializationError",
    "DeserializationError",
    "SecurityVerificationRequest",
    "StatelessTxRequest",
    "SecurityWarning",
    "SecurityVerificationResult",
    "StatelessTxResponse",
    "ExecutionStep",
    "StateChange",
    "EventLog",
    "TransactionTrace",
    "ExecutionContext",
    "FallbackPlanRequest",
    "MevProtectionRequest",
    "StateVerificationRequest",
    "StatelessSequenceRequest",
    "TransactionExecutionStatus",
    "MarketStateData",
    "MevProtectionResults",
    "StateVerificationResult",
    "FallbackExecutionResult",
    "StatelessSequenceResponse",
    "StatelessVmErrorResponse",
    "to_dict",
    "from_dict",
]


# --------------------------------------------------------------------------- errors


class StatelessVmError(Exception):
    """Base class of every error raised when talking to the stateless VM."""

    prefix = "StatelessVM error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.prefix}: {self.message}"


class ApiRequestError(StatelessVmError):
    """The request could not be sent or failed in transit."""

    prefix = "StatelessVM API request error"


class ApiResponseError(StatelessVmError):
    """The response could not be read or had an error status."""

    prefix = "StatelessVM API response error"


class ApiErrorResponse(StatelessVmError):
    """The service answered with an explicit error."""

    prefix = "StatelessVM API error"


class SerializationError(StatelessVmError):
    """A value could not be turned into its wire form."""

    prefix = "Serialization error"


class DeserializationError(StatelessVmError):
    """Wire data did not match the expected shape."""

    prefix = "Deserialization error"


# --------------------------------------------------------------------------- integer widths


@dataclass(frozen=True)
class _Unsigned:
    bits: int

    @property
    def maximum(self) -> int:
        return (1 << self.bits) - 1


U8 = Annotated[int, _Unsigned(8)]
U32 = Annotated[int, _Unsigned(32)]
U64 = Annotated[int, _Unsigned(64)]


# --------------------------------------------------------------------------- transaction models


@dataclass(kw_only=True)
class SecurityVerificationRequest:
    address: str
    enabled: bool
    max_risk_score: U8
    verify_reentrancy: bool
    verify_integer_underflow: bool
    verify_integer_overflow: bool
    verify_unchecked_calls: bool
    verify_upgradability: bool
    verify_mev_vulnerability: bool
    verify_cross_contract_reentrancy: bool
    verify_precision_loss: bool
    verify_gas_griefing: bool


@dataclass(kw_only=True)
class StatelessTxRequest:
    from_: str = field(metadata={"wire": "from"})
    to: str
    value: str
    data: str
    gas_limit: str
    gas_price: str
    security_verification: SecurityVerificationRequest
    bundle_id: Optional[str] = None


@dataclass(kw_only=True)
class SecurityWarning:
    warning_type: str
    severity: str
    description: str
    message: str
    line_number: Optional[U32] = None
    code_snippet: Optional[str] = None
    recommendation: Optional[str] = None


@dataclass(kw_only=True)
class SecurityVerificationResult:
    passed: bool
    risk_score: U8
    warnings: Optional[List[SecurityWarning]] = None
    execution_time_ms: Optional[U64] = None
    vulnerability_count: Optional[U32] = None


@dataclass(kw_only=True)
class StatelessTxResponse:
    tx_hash: str
    status: str
    result: Optional[str] = None
    error: Optional[str] = None
    security_verification: Optional[SecurityVerificationResult] = None


# --------------------------------------------------------------------------- trace models


@dataclass(kw_only=True)
class ExecutionStep:
    pc: U32
    op: str
    gas: U64
    gas_cost: U64
    depth: U32
    stack: List[str]
    memory: Optional[str] = None


@dataclass(kw_only=True)
class StateChange:
    address: str
    slot: str
    previous_value: str
    new_value: str


@dataclass(kw_only=True)
class EventLog:
    address: str
    topics: List[str]
    data: str


@dataclass(kw_only=True)
class TransactionTrace:
    tx_hash: str
    from_: str = field(metadata={"wire": "from"})
    to: str
    value: str
    gas_used: U64
    execution_steps: List[ExecutionStep]
    state_changes: List[StateChange]
    events: List[EventLog]


# --------------------------------------------------------------------------- sequence models


@dataclass(kw_only=True)
class ExecutionContext:
    chain_id: U64
    timestamp: U64
    block_number: Optional[U64] = None
    metadata: Any = None


@dataclass(kw_only=True)
class FallbackPlanRequest:
    transactions: List[str]
    trigger_conditions: Any
    priority: U8
    description: str


@dataclass(kw_only=True)
class MevProtectionRequest:
    use_private_mempool: bool
    frontrunning_protection: U8
    max_slippage_percent: float
    monitor_sandwich_attacks: bool
    use_commit_reveal: bool


@dataclass(kw_only=True)
class StateVerificationRequest:
    contracts: List[str]
    storage_slots: Dict[str, List[str]]
    balance_requirements: Dict[str, str]
    custom_requirements: Any = None


@dataclass(kw_only=True)
class StatelessSequenceRequest:
    sequence_id: str
    transactions: List[str]
    execution_context: ExecutionContext
    timeout_seconds: U64
    atomic: bool
    fallback_plans: Optional[List[FallbackPlanRequest]] = None
    market_conditions: Any = None
    mev_protection: Optional[MevProtectionRequest] = None
    state_verification: Optional[List[StateVerificationRequest]] = None
    bundle_id: Optional[str] = None


@dataclass(kw_only=True)
class TransactionExecutionStatus:
    tx_hash: str
    success: bool
    gas_used: U64
    error: Optional[str] = None


@dataclass(kw_only=True)
class MarketStateData:
    prices: Dict[str, float]
    liquidity: Dict[str, U64]
    gas_price: U64
    volatility: Dict[str, float]
    timestamp: U64


@dataclass(kw_only=True)
class MevProtectionResults:
    frontrunning_detected: bool
    sandwich_attack_prevented: bool
    slippage_within_limits: bool
    private_tx_successful: bool
    details: Optional[str] = None


@dataclass(kw_only=True)
class StateVerificationResult:
    step: U32
    success: bool
    verified_contracts: List[str]
    failed_verifications: Optional[Dict[str, str]] = None


@dataclass(kw_only=True)
class FallbackExecutionResult:
    plan_id: U8
    executed: bool
    success: bool
    description: str
    transaction_statuses: Optional[List[TransactionExecutionStatus]] = None
    error: Optional[str] = None


@dataclass(kw_only=True)
class StatelessSequenceResponse:
    sequence_id: str
    success: bool
    transaction_statuses: List[TransactionExecutionStatus]
    fallback_executed: bool
    gas_used: U64
    execution_time_ms: U64
    market_state: Optional[MarketStateData] = None
    mev_protection_results: Optional[MevProtectionResults] = None
    state_verification_results: Optional[List[StateVerificationResult]] = None
    fallback_results: Optional[List[FallbackExecutionResult]] = None
    error: Optional[str] = None


@dataclass(kw_only=True)
class StatelessVmErrorResponse:
    error: str
    details: Optional[str] = None


# --------------------------------------------------------------------------- conversion

T = TypeVar("T")


def _wire_name(f: dataclasses.Field) -> str:
    return f.metadata.get("wire", f.name)


def _is_optional(tp: Any) -> bool:
    if tp is Any:
        return False
    origin = typing.get_origin(tp)
    return origin in (Union, types.UnionType) and type(None) in typing.get_args(tp)


def _serialize(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            _wire_name(f): _serialize(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    return value


def to_dict(obj: Any) -> dict:
    """Return the JSON-ready mapping of a model, absent optionals as None."""
    if not dataclasses.is_dataclass(obj) or isinstance(obj, type):
        raise SerializationError(f"cannot serialize {type(obj).__name__}")
    return _serialize(obj)


def _convert(tp: Any, value: Any, path: str) -> Any:
    if tp is Any:
        return value

    origin = typing.get_origin(tp)

    if origin is Annotated:
        base, *extras = typing.get_args(tp)
        result = _convert(base, value, path)
        for extra in extras:
            if isinstance(extra, _Unsigned) and result > extra.maximum:
                raise DeserializationError(
                    f"{path}: {result} out of range for u{extra.bits}"
                )
        return result

    if origin in (Union, types.UnionType):
        args = typing.get_args(tp)
        if value is None:
            if type(None) in args:
                return None
            raise DeserializationError(f"{path}: unexpected null")
        (inner,) = [arg for arg in args if arg is not type(None)]
        return _convert(inner, value, path)

    if value is None:
        raise DeserializationError(f"{path}: unexpected null")

    if origin is list:
        if not isinstance(value, list):
            raise DeserializationError(f"{path}: expected a list")
        (item_type,) = typing.get_args(tp)
        return [_convert(item_type, item, f"{path}[{i}]") for i, item in enumerate(value)]

    if origin is dict:
        if not isinstance(value, Mapping):
            raise DeserializationError(f"{path}: expected an object")
        _, item_type = typing.get_args(tp)
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise DeserializationError(f"{path}: non-string key {key!r}")
            result[key] = _convert(item_type, item, f"{path}.{key}")
        return result

    if isinstance(tp, type) and dataclasses.is_dataclass(tp):
        return _from_mapping(tp, value, path)

    if tp is bool:
        if not isinstance(value, bool):
            raise DeserializationError(f"{path}: expected a boolean")
        return value

    if tp is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise DeserializationError(f"{path}: expected an integer")
        if value < 0:
            raise DeserializationError(f"{path}: negative value {value}")
        return value

    if tp is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise DeserializationError(f"{path}: expected a number")
        return float(value)

    if tp is str:
        if not isinstance(value, str):
            raise DeserializationError(f"{path}: expected a string")
        return value

    raise DeserializationError(f"{path}: unsupported type {tp!r}")


def _from_mapping(cls: type, data: Any, path: str) -> Any:
    if not isinstance(data, Mapping):
        raise DeserializationError(f"{path}: expected an object for {cls.__name__}")
    kwargs = {}
    for f in dataclasses.fields(cls):
        name = _wire_name(f)
        tp = f.type
        where = f"{path}.{name}" if path else name
        if name not in data:
            if _is_optional(tp):
                kwargs[f.name] = None
                continue
            raise DeserializationError(f"missing field `{where}`")
        kwargs[f.name] = _convert(tp, data[name], where)
    return cls(**kwargs)


def from_dict(cls: "type[T]", data: Any) -> T:
    """Build a model of type ``cls`` from decoded JSON, checking every field."""
    if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
        raise TypeError(f"{cls!r} is not a model class")
    return _from_mapping(cls, data, "")