"""
Payment channel port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
A channel never touches the store: it builds the redirect, verifies callbacks
and normalises them into SettlementEvent.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from domain.billing.entity import Payment, PaymentStatus
from domain.billing.events import SettlementEvent


@runtime_checkable
class PaymentChannel(Protocol):
    """Capability set every settlement channel provides."""

    method: str
    initial_status: PaymentStatus
    # False: settled only by an administrator, the callback route refuses it
    accepts_callbacks: bool

    async def initiate(self, payment: Payment, *, client_ip: Optional[str] = None) -> Optional[str]:
        """Return the redirect target, or None when no redirect applies."""
        ...

    def verify_signature(self, raw: dict[str, Any]) -> bool: ...

    def parse_callback(self, raw: dict[str, Any]) -> SettlementEvent:
        """Verify then normalise; raise InvalidSignatureException before anything else."""
        ...
