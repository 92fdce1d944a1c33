"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flextasker_service.clients.payment_gateway import PaymentGateway
    from flextasker_service.services.bid_ledger import BidLedger
    from flextasker_service.services.escrow_ledger import EscrowLedger
    from flextasker_service.services.marketplace_store import MarketplaceStore
    from flextasker_service.services.task_registry import TaskRegistry


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: MarketplaceStore | None = None
    task_registry: TaskRegistry | None = None
    bid_ledger: BidLedger | None = None
    escrow_ledger: EscrowLedger | None = None
    payment_gateway: PaymentGateway | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the escrow ledger's gateway in sync with the payment_gateway field."""
        super().__setattr__(name, value)

        escrow_ledger = self.__dict__.get("escrow_ledger")
        if name == "payment_gateway" and value is not None and escrow_ledger is not None:
            escrow_ledger.set_gateway(value)
        elif name == "escrow_ledger" and value is not None:
            payment_gateway = self.__dict__.get("payment_gateway")
            if payment_gateway is not None:
                value.set_gateway(payment_gateway)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
