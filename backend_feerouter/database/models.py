"""
Domain models for the fee routing ledger.

Shell wallets, fee transactions, the routing status aggregate, and the
snapshot that bundles all three for persistence. Plain dataclasses with
explicit to_dict/from_dict so stores stay swappable and restore is exact:
amounts travel as Decimal strings, timestamps as Unix-second floats.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

ZERO = Decimal("0")

# Source reference used for audit records written by the retirement sweep
CYCLE_CLEANUP_SOURCE = "cycle-cleanup"

# Fixed storage keys for the persisted snapshot
KEY_SHELL_WALLETS = "shell_wallets"
KEY_FEE_TRANSACTIONS = "fee_transactions"
KEY_ROUTING_STATUS = "routing_status"
SNAPSHOT_KEYS = (KEY_SHELL_WALLETS, KEY_FEE_TRANSACTIONS, KEY_ROUTING_STATUS)


class FeeStatus(str, Enum):
    PENDING = "pending"
    MIXING = "mixing"
    DISPERSED = "dispersed"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed status changes; anything else is rejected by the ledger.
ALLOWED_TRANSITIONS: dict[FeeStatus, frozenset[FeeStatus]] = {
    FeeStatus.PENDING: frozenset({FeeStatus.MIXING, FeeStatus.FAILED}),
    FeeStatus.MIXING: frozenset({FeeStatus.DISPERSED, FeeStatus.FAILED}),
    FeeStatus.DISPERSED: frozenset({FeeStatus.COMPLETED}),
    FeeStatus.COMPLETED: frozenset(),
    FeeStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({FeeStatus.COMPLETED, FeeStatus.FAILED})


@dataclass
class ShellWallet:
    """Synthetic holding account in the shell wallet pool."""

    id: str
    address: str
    balance: Decimal
    created_at: float
    last_used: float
    is_active: bool
    cycle_number: int
    """Epoch the wallet was created in: floor(created_at / cycle interval)."""

    def copy(self) -> ShellWallet:
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "balance": str(self.balance),
            "created_at": self.created_at,
            "last_used": self.last_used,
            "is_active": self.is_active,
            "cycle_number": self.cycle_number,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShellWallet:
        return cls(
            id=str(data["id"]),
            address=str(data["address"]),
            balance=Decimal(str(data["balance"])),
            created_at=float(data["created_at"]),
            last_used=float(data["last_used"]),
            is_active=bool(data["is_active"]),
            cycle_number=int(data["cycle_number"]),
        )


@dataclass
class FeeTransaction:
    """One routed fee. amount is fixed at creation and cannot be reassigned."""

    id: str
    source_transaction_id: str
    amount: Decimal
    shell_wallet_id: str
    """Current holder; reassigned on every hop."""
    timestamp: float
    status: FeeStatus
    mixing_rounds: int
    delay_minutes: int
    destination_address: str | None = None
    hops_completed: int = 0
    updated_at: float | None = None
    failure_reason: str | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "amount" and "amount" in self.__dict__:
            raise AttributeError("FeeTransaction.amount is immutable")
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def copy(self) -> FeeTransaction:
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_transaction_id": self.source_transaction_id,
            "amount": str(self.amount),
            "shell_wallet_id": self.shell_wallet_id,
            "destination_address": self.destination_address,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "mixing_rounds": self.mixing_rounds,
            "delay_minutes": self.delay_minutes,
            "hops_completed": self.hops_completed,
            "updated_at": self.updated_at,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeeTransaction:
        updated_at = data.get("updated_at")
        return cls(
            id=str(data["id"]),
            source_transaction_id=str(data["source_transaction_id"]),
            amount=Decimal(str(data["amount"])),
            shell_wallet_id=str(data["shell_wallet_id"]),
            destination_address=data.get("destination_address"),
            timestamp=float(data["timestamp"]),
            status=FeeStatus(data["status"]),
            mixing_rounds=int(data["mixing_rounds"]),
            delay_minutes=int(data["delay_minutes"]),
            hops_completed=int(data.get("hops_completed", 0)),
            updated_at=float(updated_at) if updated_at is not None else None,
            failure_reason=data.get("failure_reason"),
        )


@dataclass
class RoutingStatus:
    """
    Process-wide aggregate.

    Conservation: total_fees_collected == fees_in_mixing + fees_dispersed
    after every completed mutation.
    """

    total_fees_collected: Decimal = ZERO
    fees_in_mixing: Decimal = ZERO
    fees_dispersed: Decimal = ZERO
    active_shell_wallets: int = 0
    last_cycle_time: float = 0.0
    next_cycle_time: float = 0.0

    @property
    def is_conserved(self) -> bool:
        return self.total_fees_collected == self.fees_in_mixing + self.fees_dispersed

    def copy(self) -> RoutingStatus:
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_fees_collected": str(self.total_fees_collected),
            "fees_in_mixing": str(self.fees_in_mixing),
            "fees_dispersed": str(self.fees_dispersed),
            "active_shell_wallets": self.active_shell_wallets,
            "last_cycle_time": self.last_cycle_time,
            "next_cycle_time": self.next_cycle_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoutingStatus:
        return cls(
            total_fees_collected=Decimal(str(data.get("total_fees_collected", "0"))),
            fees_in_mixing=Decimal(str(data.get("fees_in_mixing", "0"))),
            fees_dispersed=Decimal(str(data.get("fees_dispersed", "0"))),
            active_shell_wallets=int(data.get("active_shell_wallets", 0)),
            last_cycle_time=float(data.get("last_cycle_time", 0.0)),
            next_cycle_time=float(data.get("next_cycle_time", 0.0)),
        )


@dataclass
class VendorFeeSummary:
    total_fees: Decimal = ZERO
    transactions_count: int = 0
    last_fee_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_fees": str(self.total_fees),
            "transactions_count": self.transactions_count,
            "last_fee_time": self.last_fee_time,
        }


@dataclass
class Snapshot:
    """Full engine state: wallet pool, transaction ledger and aggregate status."""

    wallets: dict[str, ShellWallet] = field(default_factory=dict)
    transactions: dict[str, FeeTransaction] = field(default_factory=dict)
    status: RoutingStatus = field(default_factory=RoutingStatus)

    def to_items(self) -> dict[str, str]:
        """Serialize to {storage key: JSON text}; insertion order of wallets is kept."""
        return {
            KEY_SHELL_WALLETS: json.dumps({k: w.to_dict() for k, w in self.wallets.items()}),
            KEY_FEE_TRANSACTIONS: json.dumps({k: t.to_dict() for k, t in self.transactions.items()}),
            KEY_ROUTING_STATUS: json.dumps(self.status.to_dict()),
        }

    @classmethod
    def from_items(cls, items: dict[str, str]) -> Snapshot:
        wallets_raw = json.loads(items.get(KEY_SHELL_WALLETS) or "{}")
        txs_raw = json.loads(items.get(KEY_FEE_TRANSACTIONS) or "{}")
        status_raw = json.loads(items.get(KEY_ROUTING_STATUS) or "{}")
        return cls(
            wallets={k: ShellWallet.from_dict(v) for k, v in wallets_raw.items()},
            transactions={k: FeeTransaction.from_dict(v) for k, v in txs_raw.items()},
            status=RoutingStatus.from_dict(status_raw),
        )
