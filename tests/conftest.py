# SPDX-License-Identifier: MIT
"""Pytest configuration and fixtures for deduplication engine tests."""

import os
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Generator

import pytest

# Set test environment variables before importing the engine
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DISABLE_LOGGING", "1")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from dedup_engine.config import reset_match_config  # noqa: E402
from dedup_engine.database import init_db, make_engine  # noqa: E402
from dedup_engine.deduplication.types import (  # noqa: E402
    Contact,
    EntityRecord,
    EntityType,
    MergeHistory,
    ValidationStatus,
)
from dedup_engine.notifications import Notifier  # noqa: E402
from dedup_engine.store import EntityStore  # noqa: E402

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    """Fixed reference time."""
    return NOW


@pytest.fixture(autouse=True)
def match_config() -> Generator:
    """Restore the default match configuration after every test."""
    config = reset_match_config()
    yield config
    reset_match_config()


@pytest.fixture
def store() -> Generator[EntityStore, None, None]:
    """Fresh in-memory SQLite store per test."""
    engine = make_engine("sqlite:///:memory:")
    init_db(engine)
    yield EntityStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    engine.dispose()


@pytest.fixture
def make_record() -> Callable[..., EntityRecord]:
    """Factory for a fully-populated deal record; keyword arguments override fields."""

    def factory(**overrides) -> EntityRecord:
        data = {
            "id": "deal-1",
            "entity_type": EntityType.DEAL,
            "name": "Acme Cloud Migration",
            "counterpart_name": "Globex Corporation",
            "value": 50000.0,
            "currency": "USD",
            "date": date(2024, 3, 15),
            "vendor_id": "vendor-1",
            "products": ["Cloud Storage", "Backup"],
            "contacts": [Contact("Jane Doe", "jane@globex.com")],
            "extraction_confidence": 0.9,
            "validation_status": ValidationStatus.PASSED,
            "created_at": NOW - timedelta(days=2),
            "updated_at": NOW,
            "source_file_ids": {"file-1"},
        }
        data.update(overrides)
        return EntityRecord(**data)

    return factory


@pytest.fixture
def make_history(now) -> Callable[..., MergeHistory]:
    """Factory for a merge history entry of `b` into `a`; keyword arguments override fields."""

    def factory(**overrides) -> MergeHistory:
        data = {
            "id": "merge-1",
            "source_entity_ids": ["b"],
            "target_entity_id": "a",
            "merged_data_snapshot": {},
            "resolutions": {},
            "strategy": "quality",
            "merged_by": "alice",
            "conflict_strategy": "prefer_complete",
            "created_at": now,
        }
        data.update(overrides)
        return MergeHistory(**data)

    return factory


@pytest.fixture
def events() -> list:
    """Events captured by the `notifier` fixture."""
    return []


@pytest.fixture
def notifier(events: list) -> Generator[Notifier, None, None]:
    """Notifier that records (event, payload) tuples in `events`."""
    notifier = Notifier(sink=lambda event, payload: events.append((event, payload)))
    yield notifier
    notifier.close()
