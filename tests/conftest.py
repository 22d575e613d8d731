"""Pytest configuration and shared fixtures.

Provides:
- Test markers (unit, integration, api)
- Zero-delay retry sleep that records requested delays
- A small in-memory knowledge store with fixed dates
"""

import pytest

from evidentia.storage.knowledge_store import KnowledgeStore
from tests.fakes import TODAY, RecordingSleep, make_entry


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "api: marks tests as HTTP API tests")


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def acme_profile_entry():
    return make_entry(
        "acme-profile",
        title="Acme Corporation company profile",
        content=(
            "Acme Corporation is a manufacturer of industrial automation equipment. "
            "The company was founded in 1998 and employs 250 people. "
            "Acme reported $10M revenue for fiscal year 2025."
        ),
        tags=("company", "revenue", "employees"),
    )


@pytest.fixture
def knowledge_store(acme_profile_entry):
    return KnowledgeStore(
        [acme_profile_entry],
        synonyms={"company": ["corporation", "business"], "revenue": ["income", "sales"]},
    )


@pytest.fixture
def empty_store():
    return KnowledgeStore()
