"""Contract and transaction safety checks backed by the stateless VM service."""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import List, Optional

from .client import StatelessVmClient
from .models import (
    SecurityVerificationRequest,
    SecurityVerificationResult,
    StatelessTxRequest,
    StatelessVmError,
)

__all__ = [
    "VulnerabilityType",
    "Severity",
    "VulnerabilityReport",
    "SecurityVerification",
    "SecurityConfig",
    "SecurityVerifier",
]

_log = logging.getLogger(__name__)


class VulnerabilityType(enum.Enum):
    REENTRANCY = "Reentrancy"
    INTEGER_OVERFLOW = "IntegerOverflow"
    INTEGER_UNDERFLOW = "IntegerUnderflow"
    ACCESS_CONTROL = "AccessControl"
    FLASH_LOAN_VULNERABILITY = "FlashLoanVulnerability"
    MEV_VULNERABILITY = "MEVVulnerability"
    PRECISION_LOSS = "PrecisionLoss"
    GAS_GRIEFING = "GasGriefing"
    UNINITIALIZED_STORAGE = "UninitializedStorage"
    CROSS_CONTRACT_REENTRANCY = "CrossContractReentrancy"
    SIGNATURE_REPLAY = "SignatureReplay"
    ORACLE_MANIPULATION = "OracleManipulation"
    BLOCK_NUMBER_DEPENDENCE = "BlockNumberDependence"
    FRONT_RUNNING = "FrontRunning"
    PRICE_MANIPULATION = "PriceManipulation"
    BIT_MASK_VULNERABILITY = "BitMaskVulnerability"
    GOVERNANCE_VULNERABILITY = "GovernanceVulnerability"
    UNCHECKED_EXTERNAL_CALLS = "UncheckedExternalCalls"
    TX_ORIGIN_USAGE = "TxOriginUsage"
    BLOCK_GAS_LIMIT_ISSUES = "BlockGasLimitIssues"
    UPGRADABILITY_ISSUE = "UpgradabilityIssue"


class Severity(enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def risk_score(self) -> int:
        """Estimated risk score for a finding of this severity."""
        return _RISK_SCORES[self]


_RISK_SCORES = {
    Severity.LOW: 3,
    Severity.MEDIUM: 5,
    Severity.HIGH: 8,
    Severity.CRITICAL: 10,
}

_WARNING_TYPES = {
    "Reentrancy": VulnerabilityType.REENTRANCY,
    "IntegerUnderflow": VulnerabilityType.INTEGER_UNDERFLOW,
    "UncheckedCalls": VulnerabilityType.ACCESS_CONTROL,
    "MEVVulnerability": VulnerabilityType.MEV_VULNERABILITY,
    "CrossContractReentrancy": VulnerabilityType.CROSS_CONTRACT_REENTRANCY,
    "GasGriefing": VulnerabilityType.GAS_GRIEFING,
    "UninitializedStorage": VulnerabilityType.UNINITIALIZED_STORAGE,
}


@dataclass
class VulnerabilityReport:
    """A vulnerability detected in a contract."""

    contract_address: str
    vulnerability_type: VulnerabilityType
    severity: Severity
    description: str
    risk_score: int


@dataclass
class SecurityVerification:
    """Whether verification is on and the highest risk score tolerated."""

    enabled: bool
    max_risk_score: int


@dataclass(kw_only=True)
class SecurityConfig:
    """Settings that drive contract and transaction verification."""

    verify_contracts: bool = True
    verification_mode: str = "test"
    cache_verification_results: bool = True
    max_risk_score: int = 5
    verify_reentrancy: bool = True
    verify_integer_underflow: bool = True
    verify_integer_overflow: bool = True
    verify_unchecked_calls: bool = True
    verify_upgradability: bool = True
    verify_mev_vulnerability: bool = True
    verify_cross_contract_reentrancy: bool = True
    verify_precision_loss: bool = True
    verify_gas_griefing: bool = True


class SecurityVerifier:
    """Checks contracts and transactions before the agent interacts with them."""

    def __init__(
        self,
        config: SecurityConfig,
        stateless_vm_url: str,
        *,
        client: Optional[StatelessVmClient] = None,
    ) -> None:
        self.config = config
        self.client = client if client is not None else StatelessVmClient(stateless_vm_url)
        self._lock = threading.Lock()

    def verify_contract(self, contract_address: str) -> List[VulnerabilityReport]:
        """Return the vulnerabilities found in a contract; empty means safe."""
        _log.info("Verifying contract safety: %s", contract_address)
        if not self.config.verify_contracts:
            _log.info("Contract verification disabled in config")
            return []

        cached = self.get_cached_verification(contract_address)
        if cached is not None:
            if cached:
                return []
            return [
                VulnerabilityReport(
                    contract_address=contract_address,
                    vulnerability_type=VulnerabilityType.REENTRANCY,
                    severity=Severity.HIGH,
                    description="Cached vulnerability report",
                    risk_score=8,
                )
            ]

        bytecode = self.fetch_contract_bytecode(contract_address)

        if self.config.verification_mode == "test":
            _log.info("Using local test mode verification for %s", contract_address)
            has_vulnerabilities = self._local_has_mev_vulnerability(bytecode)
            self.cache_verification_result(contract_address, not has_vulnerabilities)
            if has_vulnerabilities:
                return [
                    VulnerabilityReport(
                        contract_address=contract_address,
                        vulnerability_type=VulnerabilityType.MEV_VULNERABILITY,
                        severity=Severity.MEDIUM,
                        description="Test mode detected potential MEV vulnerability",
                        risk_score=6,
                    )
                ]
            return []

        _log.info("Using stateless VM service for verification of %s", contract_address)
        with self._lock:
            result = self.client.verify_bytecode(bytecode)
        vulnerabilities = self.convert_verification_result(result, contract_address)
        self.cache_verification_result(contract_address, not vulnerabilities)
        return vulnerabilities

    def verify_transaction(
        self,
        from_address: str,
        to: str,
        value: str,
        data: str,
        gas_limit: str,
        gas_price: str,
    ) -> bool:
        """Return whether a transaction is safe to submit."""
        mode = self.config.verification_mode
        if mode == "disabled":
            return True

        if mode == "contract-only" and self.config.cache_verification_results:
            cached = self.get_cached_verification(to)
            if cached is not None:
                return cached

        tx_request = self.create_tx_request(
            from_address, to, value, data, gas_limit, gas_price
        )
        with self._lock:
            response = self.client.execute_transaction(tx_request)

        verification = response.security_verification
        if verification is not None:
            is_safe = (
                verification.passed
                and verification.risk_score <= self.config.max_risk_score
            )
            if not is_safe:
                _log.warning(
                    "Transaction verification failed: risk_score=%d, max_allowed=%d",
                    verification.risk_score,
                    self.config.max_risk_score,
                )
                for warning in verification.warnings or []:
                    _log.warning(
                        "Security warning: %s (severity: %s)",
                        warning.message,
                        warning.severity,
                    )
        else:
            is_safe = response.status == "success"

        if self.config.cache_verification_results:
            self.cache_verification_result(to, is_safe)
        return is_safe

    def get_cached_verification(self, contract_address: str) -> Optional[bool]:
        """Return a remembered verdict for the contract; none is kept yet."""
        return None

    def cache_verification_result(self, contract_address: str, is_safe: bool) -> None:
        """Record a verdict for the contract."""
        _log.info("Caching verification result for %s: %s", contract_address, is_safe)

    def fetch_contract_bytecode(self, contract_address: str) -> bytes:
        """Fetch a contract's bytecode, raising if there is none."""
        with self._lock:
            bytecode = self.client.fetch_bytecode(contract_address)
        if not bytecode:
            raise StatelessVmError(f"No bytecode found for contract: {contract_address}")
        return bytecode

    def create_tx_request(
        self,
        from_address: str,
        to: str,
        value: str,
        data: str,
        gas_limit: str,
        gas_price: str,
    ) -> StatelessTxRequest:
        """Build a VM transaction request carrying the configured checks."""
        cfg = self.config
        security = SecurityVerificationRequest(
            address=to,
            enabled=cfg.verification_mode != "disabled",
            max_risk_score=cfg.max_risk_score,
            verify_reentrancy=cfg.verify_reentrancy,
            verify_integer_underflow=cfg.verify_integer_underflow,
            verify_integer_overflow=cfg.verify_integer_overflow,
            verify_unchecked_calls=cfg.verify_unchecked_calls,
            verify_upgradability=cfg.verify_upgradability,
            verify_mev_vulnerability=cfg.verify_mev_vulnerability,
            verify_cross_contract_reentrancy=cfg.verify_cross_contract_reentrancy,
            verify_precision_loss=cfg.verify_precision_loss,
            verify_gas_griefing=cfg.verify_gas_griefing,
        )
        return StatelessTxRequest(
            from_=from_address,
            to=to,
            value=value,
            data=data,
            gas_limit=gas_limit,
            gas_price=gas_price,
            security_verification=security,
            bundle_id=f"verify-{uuid.uuid4()}",
        )

    def convert_verification_result(
        self, result: SecurityVerificationResult, contract_address: str
    ) -> List[VulnerabilityReport]:
        """Turn the service's warnings into vulnerability reports."""
        reports = []
        for warning in result.warnings or []:
            vulnerability_type = _WARNING_TYPES.get(
                warning.warning_type, VulnerabilityType.ACCESS_CONTROL
            )
            try:
                severity = Severity(warning.severity)
            except ValueError:
                severity = Severity.MEDIUM
            reports.append(
                VulnerabilityReport(
                    contract_address=contract_address,
                    vulnerability_type=vulnerability_type,
                    severity=severity,
                    description=warning.description,
                    risk_score=severity.risk_score,
                )
            )
        return reports

    def _local_has_mev_vulnerability(self, bytecode: bytes) -> bool:
        return False