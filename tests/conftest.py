"""Shared pytest fixtures for guidance tests.

Unit tests build small catalogs in memory; integration tests use the sample
catalog under tests/fixtures/sample-catalog.
"""

from collections.abc import Callable
from pathlib import Path

import pytest

from guidance_engine.catalog import InstructionCatalog, load_catalog
from guidance_engine.config import EngineSettings
from guidance_engine.learning import InMemoryLearningStore, LearningEngine
from guidance_engine.models import InstructionEntry, InstructionType
from guidance_engine.pipeline import GuidancePipeline

GUIDANCE_ENV_VARS = (
    "GUIDANCE_CONFIG_PATH",
    "GUIDANCE_CATALOG_PATH",
    "GUIDANCE_LEARNING_DB",
    "GUIDANCE_BUDGET",
)


@pytest.fixture(autouse=True)
def clean_guidance_env(monkeypatch):
    """Keep a developer's GUIDANCE_* variables out of the tests."""
    for name in GUIDANCE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# =============================================================================
# Path Fixtures
# =============================================================================


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the test fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def sample_catalog_dir(fixtures_dir: Path) -> Path:
    """Return path to the sample instruction directory."""
    return fixtures_dir / "sample-catalog"


@pytest.fixture
def sample_manifest(sample_catalog_dir: Path) -> Path:
    """Return path to the sample catalog manifest."""
    return sample_catalog_dir / "catalog.yaml"


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def settings() -> EngineSettings:
    """Default engine settings."""
    return EngineSettings.from_config()


@pytest.fixture
def sample_catalog(sample_catalog_dir: Path) -> InstructionCatalog:
    return load_catalog(sample_catalog_dir)


@pytest.fixture
def make_entry() -> Callable[..., InstructionEntry]:
    """Factory for catalog entries."""

    def _make(
        entry_id: str,
        entry_type: InstructionType = InstructionType.DOMAIN,
        tags: tuple[str, ...] = (),
        size_cost: int = 100,
    ) -> InstructionEntry:
        return InstructionEntry(
            id=entry_id,
            path="",
            type=entry_type,
            tags=frozenset(tags),
            size_cost=size_cost,
        )

    return _make


@pytest.fixture
def memory_store() -> InMemoryLearningStore:
    return InMemoryLearningStore()


@pytest.fixture
def learning_db_path(tmp_path: Path) -> Path:
    return tmp_path / ".guidance" / "learning.db"


@pytest.fixture
def pipeline(settings, sample_catalog, memory_store) -> GuidancePipeline:
    """Pipeline over the sample catalog with an in-memory learning store."""
    return GuidancePipeline(
        settings=settings,
        catalog=sample_catalog,
        learning=LearningEngine(memory_store, settings),
    )
