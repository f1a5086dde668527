"""Shared fixtures for the upload pipeline tests."""

import pytest

from builders import distribution, donor
from qurban_upload.models.data_models import DuplicateAction, DuplicateDetectionConfig, RecordKind
from qurban_upload.storage.memory import InMemoryRecordStore


@pytest.fixture
def prompt_config():
    return DuplicateDetectionConfig(strict_mode=False, action=DuplicateAction.PROMPT, tolerance=0.8)


@pytest.fixture
def skip_config():
    return DuplicateDetectionConfig(strict_mode=False, action=DuplicateAction.SKIP, tolerance=0.8)


@pytest.fixture
def strict_config():
    return DuplicateDetectionConfig(strict_mode=True, action=DuplicateAction.SKIP, tolerance=0.8)


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def seeded_store():
    """A store that already holds one donor and one distribution record."""
    return InMemoryRecordStore(initial={
        RecordKind.MUZAKKI: [donor(name="Budi Santoso", animal="Sapi", value="17500000", phone="0811-2233-44")],
        RecordKind.DISTRIBUSI: [distribution()],
    })
