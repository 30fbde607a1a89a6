"""Shared pytest fixtures."""

import gc
import os
import sys
import threading
from collections.abc import AsyncGenerator, Callable
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
import structlog
from hypothesis import HealthCheck, settings

from property_dedup.config import Settings
from property_dedup.db import DedupStorage
from property_dedup.models import DedupConfig, Listing, Operation, OperationType, PropertyType

# Reference point used across tests (Guadalajara, Col. Americana)
BASE_LAT = 20.6597
BASE_LNG = -103.3496


def pytest_configure(config: pytest.Config) -> None:
    """Force line-buffered stdout when piped."""
    if hasattr(sys.stdout, "reconfigure") and not sys.stdout.isatty():
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure") and not sys.stderr.isatty():
        sys.stderr.reconfigure(line_buffering=True)


# Hypothesis settings profiles for different environments
settings.register_profile("fast", max_examples=10)
settings.register_profile(
    "ci",
    max_examples=200,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(autouse=True)
def _isolate_settings_from_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent the local .env file from leaking into test Settings instances."""
    monkeypatch.setattr(
        Settings,
        "model_config",
        {**Settings.model_config, "env_file": None},
    )


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo configure_logging calls made by CLI tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def _cleanup_aiosqlite_threads():
    """Safety net: detect and stop leaked aiosqlite worker threads.

    aiosqlite v0.22+ creates a non-daemon worker thread per connection that
    blocks on SimpleQueue.get() indefinitely.  If a test leaks a connection
    (doesn't call ``await conn.close()``), the thread prevents clean process exit.
    """
    yield

    from aiosqlite.core import Connection

    leaked = False

    gc.collect()
    for obj in gc.get_objects():
        if isinstance(obj, Connection) and obj._connection is not None:
            leaked = True
            obj.stop()

    for thread in threading.enumerate():
        if "_connection_worker_thread" in (thread.name or "") and thread.is_alive():
            leaked = True
            thread.join(timeout=1.0)

    if leaked:
        import warnings

        warnings.warn(
            "Test leaked aiosqlite connection(s), add 'await storage.close()' to fixture teardown",
            ResourceWarning,
            stacklevel=1,
        )


@pytest.fixture
def make_listing() -> Callable[..., Listing]:
    """Factory for Listing instances with sensible defaults and unique external ids.

    Defaults describe a 2-bed/2-bath, 80 m2 apartment for rent at $15,000.
    """
    _counter = 0

    def _make(
        platform: str = "inmuebles24",
        latitude: float | None = BASE_LAT,
        longitude: float | None = BASE_LNG,
        **overrides: Any,
    ) -> Listing:
        nonlocal _counter
        _counter += 1
        defaults: dict[str, Any] = {
            "platform": platform,
            "external_id": overrides.pop("external_id", f"ext-{_counter}"),
            "latitude": latitude,
            "longitude": longitude,
            "address": "Av. Chapultepec 100",
            "colonia": "Col. Americana",
            "city": "Guadalajara",
            "state": "Jalisco",
            "property_type": PropertyType.APARTMENT,
            "bedrooms": 2,
            "bathrooms": 2,
            "built_size_m2": 80.0,
            "operations": (Operation(type=OperationType.RENT, price=Decimal("15000")),),
        }
        defaults.update(overrides)
        return Listing(**defaults)

    return _make


@pytest.fixture
def dedup_config() -> DedupConfig:
    return DedupConfig()


@pytest_asyncio.fixture
async def storage() -> AsyncGenerator[DedupStorage, None]:
    """Create an in-memory storage instance."""
    storage = DedupStorage(":memory:")
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
def save_listing(
    storage: DedupStorage, make_listing: Callable[..., Listing]
) -> Callable[..., Any]:
    """Build a listing with make_listing and persist it; returns a coroutine."""

    async def _save(**kwargs: Any) -> Listing:
        return await storage.save_listing(make_listing(**kwargs))

    return _save
