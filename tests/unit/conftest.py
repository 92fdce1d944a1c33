"""Unit test fixtures: auto-clear caches between tests, plus ledgers over a temp database."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from flextasker_service.config import clear_settings_cache
from flextasker_service.core.state import reset_app_state
from flextasker_service.logging import reset_logging
from flextasker_service.services.bid_ledger import BidLedger
from flextasker_service.services.escrow_ledger import EscrowLedger
from flextasker_service.services.fee_model import FeeModel
from flextasker_service.services.marketplace_store import MarketplaceStore
from flextasker_service.services.task_registry import TaskRegistry
from tests.helpers import ScriptedGateway

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache, app state and logging handlers between tests."""
    clear_settings_cache()
    reset_app_state()
    reset_logging()
    yield
    clear_settings_cache()
    reset_app_state()
    reset_logging()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[MarketplaceStore]:
    marketplace = MarketplaceStore(db_path=str(tmp_path / "flextasker.db"))
    yield marketplace
    marketplace.close()


@pytest.fixture
def registry(store: MarketplaceStore) -> TaskRegistry:
    return TaskRegistry(store=store)


@pytest.fixture
def bid_ledger(store: MarketplaceStore) -> BidLedger:
    return BidLedger(
        store=store,
        budget_warning_ratio=Decimal("1.5"),
        default_page_size=10,
        max_page_size=100,
    )


@pytest.fixture
def fee_model() -> FeeModel:
    return FeeModel(
        platform_rate=Decimal("0.05"),
        processing_rate=Decimal("0.029"),
        processing_fixed=Decimal("0.30"),
    )


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def escrow_ledger(
    store: MarketplaceStore, gateway: ScriptedGateway, fee_model: FeeModel
) -> EscrowLedger:
    return EscrowLedger(
        store=store,
        gateway=gateway,
        fee_model=fee_model,
        gateway_timeout_seconds=0.5,
        refund_reversal="stored",
        default_page_size=10,
        max_page_size=100,
    )
