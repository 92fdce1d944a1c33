"""Root fixtures shared by every test package."""

from __future__ import annotations

from typing import Any

import pytest


@pytest.fixture(name="_app")
def fixture_running_app(app: Any) -> Any:
    """The started app, for fixtures that need it running but never touch it."""
    return app
