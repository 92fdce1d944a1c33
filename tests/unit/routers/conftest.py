"""Router test fixtures with a scripted payment gateway."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from flextasker_service.app import create_app
from flextasker_service.config import clear_settings_cache
from flextasker_service.core.lifespan import lifespan
from flextasker_service.core.state import get_app_state, reset_app_state
from tests.helpers import BIDDER_ID, OWNER_ID, ScriptedGateway, config_yaml

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with a temp database and a scripted gateway."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_yaml(str(tmp_path / "test.db"), str(tmp_path / "logs")))

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        get_app_state().payment_gateway = ScriptedGateway()
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def gateway(_app: Any) -> ScriptedGateway:
    """The scripted gateway installed on the running app."""
    installed = get_app_state().payment_gateway
    assert isinstance(installed, ScriptedGateway)
    return installed


# ---------------------------------------------------------------------------
# Marketplace helper functions
# ---------------------------------------------------------------------------
async def create_task(
    client: AsyncClient,
    *,
    owner_id: str = OWNER_ID,
    budget: Any = "100.00",
    budget_type: str = "fixed",
) -> Any:
    """Register a task via POST /tasks and return the response."""
    return await client.post(
        "/tasks",
        json={
            "owner_id": owner_id,
            "title": "Assemble bookshelf",
            "budget": budget,
            "budget_type": budget_type,
        },
    )


async def submit_bid(
    client: AsyncClient,
    task_id: str,
    *,
    bidder_id: str = BIDDER_ID,
    amount: Any = "90.00",
) -> Any:
    """Place a bid via POST /tasks/{task_id}/bids and return the response."""
    return await client.post(
        f"/tasks/{task_id}/bids",
        json={
            "bidder_id": bidder_id,
            "amount": amount,
            "description": "I have the tools",
            "timeline": "2 days",
        },
    )


async def setup_task_in_progress(client: AsyncClient) -> tuple[str, str]:
    """Create a task and accept one bid. Returns (task_id, bid_id)."""
    task_id = (await create_task(client)).json()["task_id"]
    bid_id = (await submit_bid(client, task_id)).json()["bid_id"]
    await client.post(f"/bids/{bid_id}/accept", json={"owner_id": OWNER_ID})
    return task_id, bid_id


async def setup_completed_task(client: AsyncClient) -> str:
    """Create a task, accept a bid and complete it. Returns the task_id."""
    task_id, _bid_id = await setup_task_in_progress(client)
    await client.post(f"/tasks/{task_id}/complete", json={"owner_id": OWNER_ID})
    return task_id


async def pay(client: AsyncClient, task_id: str, amount: Any = "100.00") -> Any:
    return await client.post(
        "/payments",
        json={
            "payer_id": OWNER_ID,
            "task_id": task_id,
            "amount": amount,
            "payment_method": "credit_card",
        },
    )
