import pytest

from fctl.config import get_settings
from tests.utils.archives import DEPLOYMENT_ID, export_files, write_zip


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point settings at a temporary home and clear the settings cache"""
    monkeypatch.setenv("FCTL_HOME_DIR", str(tmp_path / "home"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def temp_workspace(tmp_path):
    """Create a temporary working directory"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def home_dir(tmp_path):
    """Base directory holding profiles and deployment workspaces"""
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def export_zip(temp_workspace):
    """An exported artifact named after its deployment"""
    return write_zip(temp_workspace / f"{DEPLOYMENT_ID}.zip", export_files())
