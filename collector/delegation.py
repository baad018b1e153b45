"""
Delegation Model

A delegation is a signed capability: the delegator (the payer's smart
account) lets the delegate (the collector's operating key) run calls on its
behalf, restricted by caveats. Two delegations are stored per subscription:

- approve: token.approve(subscription manager, price)
- charge:  subscriptionManager.processPayment(payer)

Stored delegations arrive as loosely typed JSON (salts as numbers or strings,
addresses in any case). normalize_delegation() turns that into the strict
in-memory form and rejects anything ambiguous instead of guessing.

Both legs are redeemed in one redeemDelegations() call so that they apply
atomically: if either leg fails on-chain the whole transaction reverts.
"""

import json
import re
import threading
import time
from dataclasses import dataclass
from typing import Optional, List, Tuple, Dict, Any, Union, Callable, Set, Sequence

from eth_abi import encode
from eth_utils import (
    decode_hex,
    encode_hex,
    function_signature_to_4byte_selector,
    is_address,
    to_checksum_address,
)
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from collector.errors import DelegationError, DelegationScopeError


ROOT_AUTHORITY = "0x" + "ff" * 32

# ERC-7579 mode code: CALLTYPE_SINGLE, EXECTYPE_DEFAULT, no selector, no payload
SINGLE_DEFAULT_MODE = b"\x00" * 32

DELEGATION_ABI_TYPE = "(address,address,bytes32,(address,bytes,bytes)[],uint256,bytes)[]"
REDEEM_DELEGATIONS_SIGNATURE = "redeemDelegations(bytes[],bytes32[],bytes[])"
APPROVE_SIGNATURE = "approve(address,uint256)"
PROCESS_PAYMENT_SIGNATURE = "processPayment(address)"

APPROVE_DELEGATION_KEY = "signedApproveDelegation"
CHARGE_DELEGATION_KEY = "signedProcessPaymentDelegation"

MAX_UINT256 = 2 ** 256 - 1

_HEX_BYTES_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})*$")
_DECIMAL_RE = re.compile(r"^[0-9]+$")
_HEX_INT_RE = re.compile(r"^0x[0-9a-fA-F]+$")


# ============================================================================
# Strict in-memory form
# ============================================================================

@dataclass(frozen=True)
class Caveat:
    """One restriction clause of a delegation"""
    enforcer: str
    terms: str
    args: str = "0x"

    def as_abi(self) -> Tuple[str, bytes, bytes]:
        return (self.enforcer, decode_hex(self.terms), decode_hex(self.args))


@dataclass(frozen=True)
class Delegation:
    """A signed, scope-restricted capability"""
    delegate: str
    delegator: str
    authority: str
    caveats: Tuple[Caveat, ...]
    salt: int
    signature: str = "0x"

    @property
    def is_signed(self) -> bool:
        return self.signature != "0x"

    def as_abi(self) -> tuple:
        return (
            self.delegate,
            self.delegator,
            decode_hex(self.authority),
            [caveat.as_abi() for caveat in self.caveats],
            self.salt,
            decode_hex(self.signature),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Upstream JSON shape (salt as a decimal string)"""
        return {
            "delegate": self.delegate,
            "delegator": self.delegator,
            "authority": self.authority,
            "caveats": [
                {"enforcer": c.enforcer, "terms": c.terms, "args": c.args}
                for c in self.caveats
            ],
            "salt": str(self.salt),
            "signature": self.signature,
        }

    def _caveat_terms(self, enforcer: Optional[str]) -> List[bytes]:
        if not enforcer:
            return []
        return [
            decode_hex(c.terms)
            for c in self.caveats
            if c.enforcer.lower() == enforcer.lower()
        ]

    def allowed_targets(self, enforcer: Optional[str]) -> Optional[Set[str]]:
        """
        Targets permitted by AllowedTargets caveats (lower-case addresses).

        None means no caveat of that enforcer is present.
        """
        allowed: Optional[Set[str]] = None
        for terms in self._caveat_terms(enforcer):
            if not terms or len(terms) % 20:
                raise DelegationScopeError(f"Malformed allowed-targets terms: {encode_hex(terms)}")
            targets = {encode_hex(terms[i:i + 20]) for i in range(0, len(terms), 20)}
            allowed = targets if allowed is None else allowed & targets
        return allowed

    def allowed_selectors(self, enforcer: Optional[str]) -> Optional[Set[str]]:
        """Selectors permitted by AllowedMethods caveats (lower-case 0x-hex)"""
        allowed: Optional[Set[str]] = None
        for terms in self._caveat_terms(enforcer):
            if not terms or len(terms) % 4:
                raise DelegationScopeError(f"Malformed allowed-methods terms: {encode_hex(terms)}")
            selectors = {encode_hex(terms[i:i + 4]) for i in range(0, len(terms), 4)}
            allowed = selectors if allowed is None else allowed & selectors
        return allowed


@dataclass(frozen=True)
class Execution:
    """A single call executed by the delegator's account"""
    target: str
    value: int
    call_data: str

    @property
    def selector(self) -> str:
        return self.call_data[:10].lower()


@dataclass(frozen=True)
class CaveatEnforcers:
    """Enforcer addresses the collector knows how to interpret"""
    allowed_targets: Optional[str] = None
    allowed_methods: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> 'CaveatEnforcers':
        return cls(
            allowed_targets=settings.ALLOWED_TARGETS_ENFORCER,
            allowed_methods=settings.ALLOWED_METHODS_ENFORCER,
        )


@dataclass(frozen=True)
class DelegationPair:
    """The two delegations stored for one subscription"""
    approve: Delegation
    charge: Delegation

    def ensure_parties(self, delegator: str, delegate: str) -> None:
        """Both legs must be granted by the payer to the collector"""
        for name, delegation in (("approve", self.approve), ("charge", self.charge)):
            if delegation.delegator.lower() != delegator.lower():
                raise DelegationError(
                    f"{name} delegation was granted by {delegation.delegator}, expected {delegator}"
                )
            if delegation.delegate.lower() != delegate.lower():
                raise DelegationError(
                    f"{name} delegation is redeemable by {delegation.delegate}, not {delegate}"
                )


# ============================================================================
# Loose wire form
# ============================================================================

class RawCaveat(BaseModel):
    """Caveat as persisted by the checkout flow"""
    model_config = ConfigDict(extra="ignore")

    enforcer: StrictStr
    terms: StrictStr
    args: Optional[StrictStr] = None


class RawDelegation(BaseModel):
    """Delegation as persisted by the checkout flow"""
    model_config = ConfigDict(extra="ignore")

    delegate: StrictStr
    delegator: StrictStr
    authority: StrictStr
    caveats: List[RawCaveat] = Field(default_factory=list)
    salt: Union[StrictInt, StrictStr]
    signature: StrictStr = "0x"


# ============================================================================
# Normalization
# ============================================================================

def parse_salt(value: Any) -> int:
    """
    Coerce a stored salt to an exact integer.

    Accepts non-negative ints, decimal digit strings and 0x-hex strings.
    Floats and booleans are rejected: a float may already have lost digits.
    """
    if isinstance(value, bool):
        raise DelegationError(f"Salt must be an integer, got boolean {value!r}")
    if isinstance(value, int):
        salt = value
    elif isinstance(value, str):
        if _DECIMAL_RE.match(value):
            salt = int(value, 10)
        elif _HEX_INT_RE.match(value):
            salt = int(value, 16)
        else:
            raise DelegationError(f"Salt is not an integer string: {value!r}")
    else:
        raise DelegationError(f"Salt must be an integer or integer string, got {type(value).__name__}")

    if salt < 0 or salt > MAX_UINT256:
        raise DelegationError(f"Salt out of uint256 range: {salt}")
    return salt


def _address(value: str, field_name: str) -> str:
    if not is_address(value):
        raise DelegationError(f"Invalid {field_name} address: {value!r}")
    return to_checksum_address(value)


def _hex_bytes(value: str, field_name: str) -> str:
    if not _HEX_BYTES_RE.match(value):
        raise DelegationError(f"Invalid hex in {field_name}: {value!r}")
    return value


def normalize_delegation(raw: Any, require_signature: bool = True) -> Delegation:
    """
    Turn a stored delegation (dict or RawDelegation) into a Delegation.

    Addresses are checksummed; terms, args and signature are kept verbatim
    because they are bytes the signature was computed over.
    """
    if raw is None:
        raise DelegationError("Delegation payload missing")

    try:
        wire = raw if isinstance(raw, RawDelegation) else RawDelegation.model_validate(raw)
    except ValidationError as e:
        raise DelegationError(f"Malformed delegation: {e.error_count()} invalid field(s)") from e

    authority = _hex_bytes(wire.authority, "authority")
    if len(authority) != 66:
        raise DelegationError(f"Authority must be 32 bytes: {authority!r}")

    signature = _hex_bytes(wire.signature, "signature")
    if require_signature and signature == "0x":
        raise DelegationError("Delegation is not signed")

    caveats = tuple(
        Caveat(
            enforcer=_address(c.enforcer, "enforcer"),
            terms=_hex_bytes(c.terms, "terms"),
            args=_hex_bytes(c.args if c.args is not None else "0x", "args"),
        )
        for c in wire.caveats
    )

    return Delegation(
        delegate=_address(wire.delegate, "delegate"),
        delegator=_address(wire.delegator, "delegator"),
        authority=authority,
        caveats=caveats,
        salt=parse_salt(wire.salt),
        signature=signature,
    )


def parse_delegation_pair(raw: Any) -> DelegationPair:
    """Load the (approve, charge) delegation pair stored for a subscription"""
    if raw is None or raw == "" or raw == b"":
        raise DelegationError("Delegation payload missing")

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise DelegationError(f"Delegation payload is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise DelegationError(f"Delegation payload must be an object, got {type(raw).__name__}")

    missing = [key for key in (APPROVE_DELEGATION_KEY, CHARGE_DELEGATION_KEY) if not raw.get(key)]
    if missing:
        raise DelegationError(f"Delegation payload missing {', '.join(missing)}")

    return DelegationPair(
        approve=normalize_delegation(raw[APPROVE_DELEGATION_KEY]),
        charge=normalize_delegation(raw[CHARGE_DELEGATION_KEY]),
    )


# ============================================================================
# Construction
# ============================================================================

class SaltGenerator:
    """
    Millisecond-clock salts, bumped by one when two are minted in the same tick.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            candidate = int(self._clock() * 1000)
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return candidate


_default_salts = SaltGenerator()


def function_selector(signature_or_selector: str) -> str:
    """'approve(address,uint256)' -> '0x095ea7b3'; 0x-selectors pass through"""
    if signature_or_selector.startswith("0x"):
        if len(signature_or_selector) != 10 or not _HEX_BYTES_RE.match(signature_or_selector):
            raise ValueError(f"Invalid selector: {signature_or_selector}")
        return signature_or_selector.lower()
    return encode_hex(function_signature_to_4byte_selector(signature_or_selector))


def build_delegation(
    delegator: str,
    delegate: str,
    target: str,
    selector: str,
    enforcers: CaveatEnforcers,
    salt: Optional[int] = None,
    salts: Optional[SaltGenerator] = None,
) -> Delegation:
    """
    Unsigned root delegation pinned to exactly one (target, selector) pair.
    """
    if not enforcers.allowed_targets or not enforcers.allowed_methods:
        raise DelegationError("Both allowed-targets and allowed-methods enforcers are required")

    target = _address(target, "target")
    caveats = (
        Caveat(enforcer=to_checksum_address(enforcers.allowed_targets), terms=target),
        Caveat(enforcer=to_checksum_address(enforcers.allowed_methods), terms=function_selector(selector)),
    )
    return Delegation(
        delegate=_address(delegate, "delegate"),
        delegator=_address(delegator, "delegator"),
        authority=ROOT_AUTHORITY,
        caveats=caveats,
        salt=salt if salt is not None else (salts or _default_salts).next(),
    )


# ============================================================================
# Scope checks
# ============================================================================

def ensure_scope(delegation: Delegation, execution: Execution, enforcers: CaveatEnforcers) -> None:
    """
    Reject an execution that the delegation's known caveats would not allow.

    Caveats with other enforcers are left to the on-chain checks.
    """
    targets = delegation.allowed_targets(enforcers.allowed_targets)
    if targets is not None and execution.target.lower() not in targets:
        raise DelegationScopeError(
            f"Delegation (salt {delegation.salt}) does not allow target {execution.target}"
        )

    selectors = delegation.allowed_selectors(enforcers.allowed_methods)
    if selectors is not None and execution.selector not in selectors:
        raise DelegationScopeError(
            f"Delegation (salt {delegation.salt}) does not allow selector {execution.selector}"
        )


# ============================================================================
# Encoding
# ============================================================================

def encode_approve(spender: str, amount: int) -> str:
    data = function_signature_to_4byte_selector(APPROVE_SIGNATURE) + encode(
        ["address", "uint256"], [to_checksum_address(spender), amount]
    )
    return encode_hex(data)


def encode_process_payment(payer: str) -> str:
    data = function_signature_to_4byte_selector(PROCESS_PAYMENT_SIGNATURE) + encode(
        ["address"], [to_checksum_address(payer)]
    )
    return encode_hex(data)


def encode_single_execution(execution: Execution) -> bytes:
    """Packed target (20) || value (32) || calldata"""
    return (
        decode_hex(execution.target)
        + execution.value.to_bytes(32, "big")
        + decode_hex(execution.call_data)
    )


def encode_permission_context(chain: Sequence[Delegation]) -> bytes:
    """ABI-encode a delegation chain (leaf first)"""
    return encode([DELEGATION_ABI_TYPE], [[d.as_abi() for d in chain]])


def encode_redeem_delegations(legs: Sequence[Tuple[Delegation, Execution]]) -> str:
    """
    Calldata for DelegationManager.redeemDelegations with one
    (delegation, execution) leg per entry, each in single-default mode.
    """
    if not legs:
        raise ValueError("At least one delegation leg is required")

    contexts = [encode_permission_context([delegation]) for delegation, _ in legs]
    modes = [SINGLE_DEFAULT_MODE for _ in legs]
    executions = [encode_single_execution(execution) for _, execution in legs]

    data = function_signature_to_4byte_selector(REDEEM_DELEGATIONS_SIGNATURE) + encode(
        ["bytes[]", "bytes32[]", "bytes[]"], [contexts, modes, executions]
    )
    return encode_hex(data)
