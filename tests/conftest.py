"""Shared pytest fixtures for landform tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.state import StateStore  # noqa: E402
from helpers import FakeCloud, FakePlugin  # noqa: E402
from providers import default_registry  # noqa: E402
from providers.base import ProviderInstances  # noqa: E402


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def registry(cloud):
    """Bundled providers plus fake 1.0.0 and 1.1.0 backed by the cloud fixture."""
    reg = default_registry()
    for version in ('1.0.0', '1.1.0'):
        reg.register(lambda: FakePlugin(cloud), name='fake', version=version)
    return reg


@pytest.fixture
def providers(registry):
    return ProviderInstances(registry, {'fake': '1.1.0', 'null': '3.2.1', 'random': '3.6.0', 'local': '2.5.1'})


@pytest.fixture
def store():
    """Memory-only state store."""
    return StateStore()


@pytest.fixture
def file_store(tmp_path):
    return StateStore(tmp_path / '.landform' / 'state.json')


@pytest.fixture
def workdir(tmp_path):
    """Working directory with a settings file and an empty configuration."""
    (tmp_path / 'landform.yaml').write_text("refresh: false\n")
    (tmp_path / 'main.yaml').write_text("resources: []\n")
    return tmp_path

