"""Shared test fixtures."""

from pathlib import Path

import pytest

from clipretime.web import routes

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def sample_manifest_path() -> Path:
    return FIXTURES_DIR / "sample_manifest.json"


@pytest.fixture(autouse=True)
def _clear_jobs():
    """The job API keeps jobs in a module-level dict; start every test empty."""
    routes._jobs.clear()
    yield
    routes._jobs.clear()
