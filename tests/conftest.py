"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from converge.config import Config  # noqa: E402
from converge.provider import ProviderRegistry  # noqa: E402
from converge.state import MemoryStateStore  # noqa: E402
from provider_mock import FakeProvider  # noqa: E402

KIND = "Test.Fake/widgets"


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(fake_provider: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry(default=fake_provider)


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def write_document(tmp_path: Path):
    """Write a resources mapping as a YAML document and return its path."""

    def write(resources: dict, name: str = "resources.yaml") -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump({"resources": resources}))
        return path

    return write


@pytest.fixture
def make_config(tmp_path: Path):
    """Config with fast retries rooted in tmp_path."""

    def make(document_path: Path, **overrides) -> Config:
        values = {
            "document_path": document_path,
            "state_path": tmp_path / "state.json",
            "provider_backoff_base_seconds": 0,
            **overrides,
        }
        return Config(**values)

    return make
