"""Service layer components."""

from flextasker_service.services.bid_ledger import BidLedger
from flextasker_service.services.escrow_ledger import EscrowLedger
from flextasker_service.services.fee_model import FeeModel
from flextasker_service.services.marketplace_store import MarketplaceStore
from flextasker_service.services.task_registry import TaskRegistry

__all__ = ["BidLedger", "EscrowLedger", "FeeModel", "MarketplaceStore", "TaskRegistry"]
