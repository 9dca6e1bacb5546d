"""Global pytest configuration and fixtures."""

import pytest
import sys
import tempfile
import shutil
from pathlib import Path
from typing import Generator, Dict

# Add the package to Python path for testing
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from tests.fixtures.fakes import FakeBackend, FakeEmbedder
from tests.fixtures.sample_code import SAMPLE_FILES


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        path_str = str(item.fspath)
        if "tests/unit/" in path_str:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in path_str:
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def temp_project_dir() -> Generator[Path, None, None]:
    """Create a temporary project directory."""
    temp_dir = tempfile.mkdtemp()
    project_path = Path(temp_dir) / "test_project"
    project_path.mkdir(parents=True)

    yield project_path

    shutil.rmtree(temp_dir)


@pytest.fixture
def sample_codebase(temp_project_dir: Path) -> Dict[str, Path]:
    """Write the sample workspace and return its files by relative path."""
    files = {}
    for relative, content in SAMPLE_FILES.items():
        path = temp_project_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        files[relative] = path
    return files


@pytest.fixture
def mock_storage_dir(tmp_path: Path) -> Path:
    """Create a temporary storage directory for tests."""
    storage_dir = tmp_path / "test_storage"
    storage_dir.mkdir(parents=True)
    return storage_dir


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
