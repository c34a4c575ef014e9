"""Tests for the export-all command"""

import pytest

from fctl.commands.export_all import ExportAllError, export_all
from fctl.domain.models import EnvironmentRef
from tests.utils.control_plane import FakeControlPlane


def _no_sleep(_seconds):
    return None


def _api(**kwargs) -> FakeControlPlane:
    environments = [
        EnvironmentRef(id="e1", name="dev"),
        EnvironmentRef(id="e2", name="staging"),
        EnvironmentRef(id="e3", name=""),
    ]
    return FakeControlPlane(projects={"shop": environments}, **kwargs)


def _export_all(api, tmp_path, **kwargs):
    return export_all(api, tmp_path, "shop", show_progress=False, sleep=_no_sleep, **kwargs)


class TestExportAll:
    """Test project resolution and the success rule"""

    def test_all_environments_succeed(self, tmp_path):
        result = _export_all(_api(), tmp_path)

        assert result.success
        assert result.code == "ok"
        assert result.data["succeeded"] == 3
        assert result.data["postProcessed"] is True
        assert (tmp_path / "shop" / "dev" / "main.tf").is_file()
        assert (tmp_path / "shop" / "e3" / "main.tf").is_file()
        assert (tmp_path / "shop" / "modules" / "db" / "main.tf").is_file()

    def test_duplicate_names_do_not_overwrite(self, tmp_path):
        """Should export environments sharing a name into separate directories"""
        api = FakeControlPlane(
            projects={
                "shop": [EnvironmentRef(id="e1", name="dev"), EnvironmentRef(id="e2", name="dev")]
            }
        )

        result = _export_all(api, tmp_path)

        assert result.data["succeeded"] == 2
        assert (tmp_path / "shop" / "dev-e1" / "main.tf").is_file()
        assert (tmp_path / "shop" / "dev-e2" / "main.tf").is_file()
        assert not (tmp_path / "shop" / "dev").exists()

    def test_failure_without_skip_failed(self, tmp_path):
        result = _export_all(_api(failing_triggers={"e2"}), tmp_path)

        assert not result.success
        assert result.code == "partial_failure"
        assert result.data["postProcessed"] is False
        assert "staging" in result.data["failures"]

    def test_failure_with_skip_failed(self, tmp_path):
        """Should succeed when at least one environment exported"""
        result = _export_all(_api(failing_triggers={"e2"}), tmp_path, skip_failed=True)

        assert result.success
        assert result.data["succeeded"] == 2
        assert result.data["postProcessed"] is True

    def test_every_environment_fails_with_skip_failed(self, tmp_path):
        result = _export_all(
            _api(failing_triggers={"e1", "e2", "e3"}), tmp_path, skip_failed=True
        )

        assert not result.success

    def test_unknown_project(self, tmp_path):
        with pytest.raises(ExportAllError, match="not found: shop"):
            _export_all(FakeControlPlane(), tmp_path)

    def test_project_without_environments(self, tmp_path):
        result = _export_all(FakeControlPlane(projects={"shop": []}), tmp_path)

        assert result.success
        assert result.code == "empty"
        assert not (tmp_path / "shop").exists()
