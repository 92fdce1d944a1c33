"""Architecture test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from pytestarch import EvaluableArchitecture, LayeredArchitecture, get_evaluable_architecture

# tests/architecture/conftest.py -> tests/ -> project root
_TESTS_DIR = Path(__file__).resolve().parent.parent
_PROJECT_ROOT = _TESTS_DIR.parent
_SERVICE_PKG = _PROJECT_ROOT / "src" / "flextasker_service"


@pytest.fixture(scope="session")
def evaluable() -> EvaluableArchitecture:
    """Build the evaluable architecture graph for flextasker_service.

    Uses the package as both root and module path so module names are
    clean (e.g. 'flextasker_service.routers.bids').
    """
    return get_evaluable_architecture(str(_SERVICE_PKG), str(_SERVICE_PKG))


@pytest.fixture(scope="session")
def layered_arch() -> LayeredArchitecture:
    """Define the service's layered architecture.

    Layers (top to bottom):
        routers   - HTTP endpoint handlers (thin wrappers)
        core      - App state, lifespan, middleware, exceptions
        services  - Ledgers and storage (no FastAPI imports)
        clients   - Outbound payment gateway adapters
    """
    return (
        LayeredArchitecture()
        .layer("routers")
        .containing_modules(["flextasker_service.routers"])
        .layer("core")
        .containing_modules(["flextasker_service.core"])
        .layer("services")
        .containing_modules(["flextasker_service.services"])
        .layer("clients")
        .containing_modules(["flextasker_service.clients"])
    )
