"""
Unit tests for WorkspaceManager

Tests workspace layout, conditional re-extraction, state carry-forward and
retention pruning.
"""

import os
import stat
from pathlib import Path

import pytest

from fctl.core.workspace import (
    CREATION_MARKER,
    LatestSnapshotChooser,
    SnapshotSource,
    WorkspaceManager,
    fix_permissions,
)
from fctl.domain.errors import StateCarryForwardError
from tests.utils.archives import ENVIRONMENT_ID, export_files, write_zip

ENV = ENVIRONMENT_ID


class _FixedChooser:
    """Chooser that always picks the same prior deployment"""

    def __init__(self, deployment_id: str | None) -> None:
        self.deployment_id = deployment_id
        self.calls: list[dict] = []

    def choose(self, *, environment_id, deployments, latest):
        self.calls.append(
            {"environment_id": environment_id, "deployments": deployments, "latest": latest}
        )
        if self.deployment_id is None:
            return None
        return SnapshotSource(path=Path("unused"), deployment_id=self.deployment_id)


def _archive(tmp_path: Path, name: str = "d.zip", **overrides: str) -> Path:
    files = export_files()
    files.update(overrides)
    return write_zip(tmp_path / "artifacts" / name, files)


class TestLayout:
    def test_paths_follow_environment_and_deployment(self, home_dir: Path) -> None:
        manager = WorkspaceManager(home_dir)

        assert manager.workspace_dir(ENV, "d1") == home_dir / ENV / "d1"
        assert manager.export_root(ENV, "d1") == home_dir / ENV / "d1" / "tfexport"
        assert manager.state_path(ENV, "d1") == (
            home_dir / ENV / "d1" / "tfexport" / "terraform.tfstate.d" / ENV / "terraform.tfstate"
        )
        assert manager.latest_state_path(ENV) == home_dir / ENV / "tf.tfstate"

    def test_latest_state_falls_back_to_legacy_name(self, home_dir: Path) -> None:
        manager = WorkspaceManager(home_dir)
        (home_dir / ENV).mkdir()
        assert manager.latest_state(ENV) is None

        legacy = home_dir / ENV / "latest.tfstate"
        legacy.write_text("{}", encoding="utf-8")
        assert manager.latest_state(ENV) == legacy

        current = home_dir / ENV / "tf.tfstate"
        current.write_text("{}", encoding="utf-8")
        assert manager.latest_state(ENV) == current


class TestMaterialize:
    def test_new_workspace_is_extracted_with_marker(self, tmp_path: Path, home_dir: Path) -> None:
        manager = WorkspaceManager(home_dir)
        result = manager.materialize(ENV, "d1", _archive(tmp_path))

        assert result.created is True
        assert result.extracted is True
        assert (result.workspace / "tfexport" / "main.tf").is_file()
        assert int((result.workspace / CREATION_MARKER).read_text(encoding="utf-8")) > 0

    def test_unchanged_archive_is_not_reextracted(self, tmp_path: Path, home_dir: Path) -> None:
        manager = WorkspaceManager(home_dir)
        archive = _archive(tmp_path)
        manager.materialize(ENV, "d1", archive)
        local_edit = home_dir / ENV / "d1" / "tfexport" / "local.tf"
        local_edit.write_text("# local", encoding="utf-8")

        result = manager.materialize(ENV, "d1", archive)

        assert result.created is False
        assert result.extracted is False
        assert local_edit.is_file()

    def test_changed_archive_is_reextracted(self, tmp_path: Path, home_dir: Path) -> None:
        manager = WorkspaceManager(home_dir)
        manager.materialize(ENV, "d1", _archive(tmp_path))
        changed = _archive(tmp_path, "d2.zip", **{"tfexport/main.tf": "# changed\n"})

        result = manager.materialize(ENV, "d1", changed)

        assert result.extracted is True
        assert (home_dir / ENV / "d1" / "tfexport" / "main.tf").read_text() == "# changed\n"

    def test_state_is_carried_forward_from_chosen_deployment(
        self, tmp_path: Path, home_dir: Path
    ) -> None:
        first = WorkspaceManager(home_dir, chooser=_FixedChooser(None))
        first.materialize(ENV, "d1", _archive(tmp_path))
        d1_state = first.state_path(ENV, "d1")
        d1_state.parent.mkdir(parents=True)
        d1_state.write_bytes(b'{"serial": 7}')

        chooser = _FixedChooser("d1")
        manager = WorkspaceManager(home_dir, chooser=chooser)
        result = manager.materialize(ENV, "d2", _archive(tmp_path))

        assert manager.state_path(ENV, "d2").read_bytes() == d1_state.read_bytes()
        assert result.carried_from is not None
        assert result.carried_from.deployment_id == "d1"
        assert chooser.calls[0]["deployments"] == ["d1"]

    def test_chooser_only_sees_deployments_with_state(
        self, tmp_path: Path, home_dir: Path
    ) -> None:
        setup = WorkspaceManager(home_dir, chooser=_FixedChooser(None))
        setup.materialize(ENV, "d1", _archive(tmp_path))
        setup.materialize(ENV, "d2", _archive(tmp_path))
        d2_state = setup.state_path(ENV, "d2")
        d2_state.parent.mkdir(parents=True)
        d2_state.write_text("{}", encoding="utf-8")

        chooser = _FixedChooser(None)
        WorkspaceManager(home_dir, chooser=chooser).materialize(ENV, "d3", _archive(tmp_path))

        assert chooser.calls[0]["deployments"] == ["d2"]

    def test_carry_forward_disabled_skips_chooser(self, tmp_path: Path, home_dir: Path) -> None:
        chooser = _FixedChooser("d1")
        manager = WorkspaceManager(home_dir, chooser=chooser)

        manager.materialize(ENV, "d2", _archive(tmp_path), carry_forward=False)

        assert chooser.calls == []
        assert not manager.state_path(ENV, "d2").exists()

    def test_missing_source_snapshot_raises(self, tmp_path: Path, home_dir: Path) -> None:
        WorkspaceManager(home_dir, chooser=_FixedChooser(None)).materialize(
            ENV, "d1", _archive(tmp_path)
        )
        manager = WorkspaceManager(home_dir, chooser=_FixedChooser("d1"))

        with pytest.raises(StateCarryForwardError, match="d1"):
            manager.materialize(ENV, "d2", _archive(tmp_path))

    def test_latest_chooser_uses_environment_latest(self, tmp_path: Path, home_dir: Path) -> None:
        (home_dir / ENV).mkdir()
        (home_dir / ENV / "tf.tfstate").write_text('{"serial": 3}', encoding="utf-8")
        manager = WorkspaceManager(home_dir, chooser=LatestSnapshotChooser())

        manager.materialize(ENV, "d1", _archive(tmp_path))

        assert manager.state_path(ENV, "d1").read_text(encoding="utf-8") == '{"serial": 3}'

    def test_persist_latest_state_overwrites(self, tmp_path: Path, home_dir: Path) -> None:
        manager = WorkspaceManager(home_dir)
        manager.materialize(ENV, "d1", _archive(tmp_path))
        state = manager.state_path(ENV, "d1")
        state.parent.mkdir(parents=True)
        state.write_text("new", encoding="utf-8")
        manager.latest_state_path(ENV).write_text("old", encoding="utf-8")

        target = manager.persist_latest_state(ENV, "d1")

        assert target.read_text(encoding="utf-8") == "new"


class TestPrune:
    def test_keeps_newest_lexicographic_workspaces(self, home_dir: Path) -> None:
        """Should keep the 10 largest names when no creation markers exist"""
        env_dir = home_dir / ENV
        names = [f"dep-{index:02d}" for index in range(15)]
        for name in names:
            (env_dir / name).mkdir(parents=True)

        result = WorkspaceManager(home_dir, retention=10).prune(ENV)

        remaining = sorted(entry.name for entry in env_dir.iterdir())
        assert remaining == names[5:]
        assert len(result.removed) == 5

    def test_marker_orders_by_creation_time(self, home_dir: Path) -> None:
        env_dir = home_dir / ENV
        for created, name in enumerate(["c", "a", "b"], start=1):
            (env_dir / name).mkdir(parents=True)
            (env_dir / name / CREATION_MARKER).write_text(str(created), encoding="utf-8")
        (env_dir / "z-legacy").mkdir()

        WorkspaceManager(home_dir, retention=2).prune(ENV)

        assert sorted(entry.name for entry in env_dir.iterdir()) == ["a", "b"]

    def test_keep_paths_are_never_removed(self, home_dir: Path) -> None:
        env_dir = home_dir / ENV
        for index in range(4):
            (env_dir / f"dep-{index}").mkdir(parents=True)

        WorkspaceManager(home_dir, retention=2).prune(ENV, keep=[env_dir / "dep-0"])

        assert sorted(entry.name for entry in env_dir.iterdir()) == ["dep-0", "dep-2", "dep-3"]

    def test_prunes_retained_archives_in_base_dir(self, home_dir: Path) -> None:
        names = [f"00000000-0000-0000-0000-{index:012d}.zip" for index in range(4)]
        for name in names:
            (home_dir / name).write_bytes(b"zip")
        (home_dir / "notes.zip").write_bytes(b"zip")

        WorkspaceManager(home_dir, retention=2).prune(ENV, keep=[home_dir / names[0]])

        remaining = sorted(entry.name for entry in home_dir.iterdir() if entry.is_file())
        assert remaining == sorted([names[0], names[2], names[3], "notes.zip"])


def test_fix_permissions_normalizes_modes(tmp_path: Path) -> None:
    root = tmp_path / "tree"
    plugin_dir = root / ".terraform" / "providers"
    plugin_dir.mkdir(parents=True)
    plugin = plugin_dir / "terraform-provider-aws_v5"
    plugin.write_text("bin", encoding="utf-8")
    plain = root / "main.tf"
    plain.write_text("", encoding="utf-8")
    os.chmod(plain, 0o600)

    fix_permissions(root)

    assert stat.S_IMODE(plain.stat().st_mode) == 0o644
    assert stat.S_IMODE(plugin.stat().st_mode) == 0o755
    assert stat.S_IMODE(plugin_dir.stat().st_mode) == 0o755
