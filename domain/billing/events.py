"""
Normalised settlement events and outcomes.

Every channel callback (redirect gateway, cash confirmation, expiry sweep) is
turned into a SettlementEvent before the state machine sees it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SettlementOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING = "pending"


@dataclass(frozen=True)
class SettlementEvent:
    payment_id: str
    outcome: SettlementOutcome
    external_ref: Optional[str] = None
    amount: Optional[int] = None
    reason: Optional[str] = None
    performed_by: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class SettlementResult:
    """What the caller (and the gateway acknowledgement) gets back."""

    payment_id: str
    status: str
    applied: bool = False
    duplicate: bool = False
    paid_request_ids: list[str] = field(default_factory=list)
    paid_order_ids: list[str] = field(default_factory=list)
    already_settled_request_ids: list[str] = field(default_factory=list)
