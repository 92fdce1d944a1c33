"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from flextasker_service.clients.payment_gateway import (
    HttpPaymentGateway,
    PaymentGateway,
    SimulatedPaymentGateway,
)
from flextasker_service.config import get_safe_config, get_settings
from flextasker_service.core.state import init_app_state
from flextasker_service.logging import get_logger, setup_logging
from flextasker_service.services.bid_ledger import BidLedger
from flextasker_service.services.escrow_ledger import EscrowLedger
from flextasker_service.services.fee_model import FeeModel
from flextasker_service.services.marketplace_store import MarketplaceStore
from flextasker_service.services.task_registry import TaskRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

    from flextasker_service.config import GatewayConfig


def build_payment_gateway(config: GatewayConfig) -> PaymentGateway:
    """Construct the configured gateway strategy."""
    if config.mode == "simulated":
        return SimulatedPaymentGateway(success_rate=config.success_rate, seed=config.seed)

    if not config.base_url or not config.charge_path or not config.refund_path:
        msg = "gateway.base_url, charge_path and refund_path are required in http mode"
        raise RuntimeError(msg)
    return HttpPaymentGateway(
        base_url=config.base_url,
        charge_path=config.charge_path,
        refund_path=config.refund_path,
        timeout_seconds=config.timeout_seconds,
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    logger.debug("Configuration loaded", extra={"config": get_safe_config()})

    state = init_app_state()

    store = MarketplaceStore(db_path=settings.database.path)
    state.store = store

    payment_gateway = build_payment_gateway(settings.gateway)
    fee_model = FeeModel(
        platform_rate=settings.fees.platform_rate,
        processing_rate=settings.fees.processing_rate,
        processing_fixed=settings.fees.processing_fixed,
    )

    state.task_registry = TaskRegistry(store=store)
    state.bid_ledger = BidLedger(
        store=store,
        budget_warning_ratio=settings.bidding.budget_warning_ratio,
        default_page_size=settings.bidding.default_page_size,
        max_page_size=settings.bidding.max_page_size,
    )
    state.escrow_ledger = EscrowLedger(
        store=store,
        gateway=payment_gateway,
        fee_model=fee_model,
        gateway_timeout_seconds=settings.gateway.timeout_seconds,
        refund_reversal=settings.fees.refund_reversal,
        default_page_size=settings.bidding.default_page_size,
        max_page_size=settings.bidding.max_page_size,
    )
    state.payment_gateway = payment_gateway

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "gateway_mode": settings.gateway.mode,
            "refund_reversal": settings.fees.refund_reversal,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    if state.payment_gateway is not None:
        await state.payment_gateway.close()
    store.close()
