"""
Unit tests for the apply, plan and destroy commands

Runs the full workspace flow against a fake provisioning tool that records
its calls and writes state the way terraform would.
"""

import json
from pathlib import Path

import pytest

from fctl.commands.terraform_run import (
    TerraformAction,
    TerraformRunError,
    TerraformRunRequest,
    run_terraform,
)
from fctl.core.workspace import LatestSnapshotChooser, WorkspaceManager
from fctl.domain.errors import ProvisioningError, RemoteJobError
from fctl.executor.backend import BACKEND_FILE
from fctl.executor.release import RELEASE_METADATA_FILE
from tests.utils.archives import DEPLOYMENT_ID, ENVIRONMENT_ID, export_files, write_zip

NEXT_DEPLOYMENT_ID = "1a2b3c4d-5e6f-4a1b-8c2d-3e4f5a6b7c8d"


def _state_file(export_root: Path) -> Path:
    return export_root / "terraform.tfstate.d" / ENVIRONMENT_ID / "terraform.tfstate"


class FakeTerraform:
    def __init__(self, *, metadata: list[dict] | None = None, fail_on: str | None = None):
        self.metadata = metadata or []
        self.fail_on = fail_on
        self.calls: list[tuple] = []
        self.seen_state: dict[str, str | None] = {}

    def init(self, working_dir, backend_options=None):
        self.calls.append(("init", tuple(backend_options or ())))

    def select_workspace(self, working_dir, name):
        self.calls.append(("workspace", name))

    def _run(self, action, working_dir, target):
        self.calls.append((action, target))
        state = _state_file(working_dir)
        self.seen_state[action] = state.read_text() if state.is_file() else None
        if action == self.fail_on:
            raise ProvisioningError(message=f"terraform {action} exited with 1", code="exit")
        if action != "plan":
            state.parent.mkdir(parents=True, exist_ok=True)
            state.write_text(json.dumps({"version": 4, "serial": len(self.calls)}))

    def apply(self, working_dir, *, target=None):
        self._run("apply", working_dir, target)

    def plan(self, working_dir, *, target=None):
        self._run("plan", working_dir, target)

    def destroy(self, working_dir, *, target=None):
        self._run("destroy", working_dir, target)

    def show_state(self, working_dir):
        resources = [
            {
                "type": "scratch_string",
                "name": "release_metadata",
                "values": {
                    "in": json.dumps(
                        {"generate_release_metadata": True, "release_metadata": item}
                    )
                },
            }
            for item in self.metadata
        ]
        return {"values": {"root_module": {"resources": resources}}}

    def state_push(self, working_dir, state_file):
        self.calls.append(("state_push", state_file))


class RecordingUploader:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.uploads: list[tuple[str, str, dict]] = []

    def upload_release_metadata(self, environment_id, deployment_id, metadata_file):
        if self.error is not None:
            raise self.error
        self.uploads.append((environment_id, deployment_id, json.loads(metadata_file.read_text())))


@pytest.fixture
def manager(home_dir):
    return WorkspaceManager(home_dir, retention=10, chooser=LatestSnapshotChooser())


def _zip(directory: Path, deployment_id: str = DEPLOYMENT_ID) -> Path:
    return write_zip(directory / f"{deployment_id}.zip", export_files())


class TestApply:
    """Test apply against local state"""

    def test_apply_persists_latest_state(self, manager, temp_workspace):
        executor = FakeTerraform()
        request = TerraformRunRequest(action=TerraformAction.APPLY, zip_path=_zip(temp_workspace))

        result = run_terraform(request, workspace=manager, executor=executor)

        assert result.success
        assert result.data["environmentId"] == ENVIRONMENT_ID
        assert result.data["deploymentId"] == DEPLOYMENT_ID
        assert [call[0] for call in executor.calls] == ["init", "workspace", "apply"]
        assert executor.calls[1] == ("workspace", ENVIRONMENT_ID)
        latest = manager.latest_state_path(ENVIRONMENT_ID)
        assert latest.is_file()
        assert latest.read_text() == manager.state_path(ENVIRONMENT_ID, DEPLOYMENT_ID).read_text()

    def test_next_deployment_starts_from_latest_state(self, manager, temp_workspace):
        """Should seed a new deployment with the environment latest snapshot"""
        executor = FakeTerraform()
        first = TerraformRunRequest(action=TerraformAction.APPLY, zip_path=_zip(temp_workspace))
        run_terraform(first, workspace=manager, executor=executor)
        latest = manager.latest_state_path(ENVIRONMENT_ID).read_text()

        second = TerraformRunRequest(
            action=TerraformAction.APPLY, zip_path=_zip(temp_workspace, NEXT_DEPLOYMENT_ID)
        )
        run_terraform(second, workspace=manager, executor=executor)

        assert executor.seen_state["apply"] == latest

    def test_target_is_forwarded(self, manager, temp_workspace):
        executor = FakeTerraform()
        request = TerraformRunRequest(
            action=TerraformAction.APPLY,
            zip_path=_zip(temp_workspace),
            target="module.level2.module.db",
        )

        run_terraform(request, workspace=manager, executor=executor)

        assert ("apply", "module.level2.module.db") in executor.calls

    def test_explicit_state_file_is_installed(self, manager, temp_workspace):
        state = temp_workspace / "imported.tfstate"
        state.write_text('{"version": 4, "serial": 99}')
        executor = FakeTerraform()
        request = TerraformRunRequest(
            action=TerraformAction.APPLY, zip_path=_zip(temp_workspace), state_file=state
        )

        run_terraform(request, workspace=manager, executor=executor)

        assert executor.seen_state["apply"] == '{"version": 4, "serial": 99}'

    def test_release_metadata_written_and_uploaded(self, manager, temp_workspace):
        executor = FakeTerraform(metadata=[{"module": "db"}])
        uploader = RecordingUploader()
        request = TerraformRunRequest(
            action=TerraformAction.APPLY,
            zip_path=_zip(temp_workspace),
            upload_release_metadata=True,
        )

        result = run_terraform(request, workspace=manager, executor=executor, uploader=uploader)

        metadata_file = manager.workspace_dir(ENVIRONMENT_ID, DEPLOYMENT_ID) / RELEASE_METADATA_FILE
        assert metadata_file.is_file()
        assert uploader.uploads == [(ENVIRONMENT_ID, DEPLOYMENT_ID, [{"module": "db"}])]
        assert result.data["warnings"] == []

    def test_upload_failure_is_a_warning(self, manager, temp_workspace):
        executor = FakeTerraform(metadata=[{"module": "db"}])
        uploader = RecordingUploader(RemoteJobError(message="upload rejected", code="upload"))
        request = TerraformRunRequest(
            action=TerraformAction.APPLY,
            zip_path=_zip(temp_workspace),
            upload_release_metadata=True,
        )

        result = run_terraform(request, workspace=manager, executor=executor, uploader=uploader)

        assert result.success
        assert "upload rejected" in result.data["warnings"][0]

    def test_failed_apply_keeps_previous_latest(self, manager, temp_workspace):
        run_terraform(
            TerraformRunRequest(action=TerraformAction.APPLY, zip_path=_zip(temp_workspace)),
            workspace=manager,
            executor=FakeTerraform(),
        )
        before = manager.latest_state_path(ENVIRONMENT_ID).read_text()

        with pytest.raises(TerraformRunError, match="exited with 1"):
            run_terraform(
                TerraformRunRequest(
                    action=TerraformAction.APPLY,
                    zip_path=_zip(temp_workspace, NEXT_DEPLOYMENT_ID),
                ),
                workspace=manager,
                executor=FakeTerraform(fail_on="apply"),
            )

        assert manager.latest_state_path(ENVIRONMENT_ID).read_text() == before


class TestPlanAndDestroy:
    def test_plan_uses_latest_state_and_does_not_persist(self, manager, temp_workspace):
        run_terraform(
            TerraformRunRequest(action=TerraformAction.APPLY, zip_path=_zip(temp_workspace)),
            workspace=manager,
            executor=FakeTerraform(),
        )
        latest = manager.latest_state_path(ENVIRONMENT_ID)
        before = latest.read_text()
        executor = FakeTerraform()

        run_terraform(
            TerraformRunRequest(
                action=TerraformAction.PLAN, zip_path=_zip(temp_workspace, NEXT_DEPLOYMENT_ID)
            ),
            workspace=manager,
            executor=executor,
        )

        assert executor.seen_state["plan"] == before
        assert latest.read_text() == before

    def test_plan_without_any_state(self, manager, temp_workspace):
        executor = FakeTerraform()

        result = run_terraform(
            TerraformRunRequest(action=TerraformAction.PLAN, zip_path=_zip(temp_workspace)),
            workspace=manager,
            executor=executor,
        )

        assert result.success
        assert executor.seen_state["plan"] is None
        assert not manager.latest_state_path(ENVIRONMENT_ID).exists()

    def test_destroy_with_allow_destroy_relaxes_lifecycle(self, manager, temp_workspace):
        files = export_files()
        files["tfexport/level2/db.tf"] = (
            'resource "aws_db_instance" "db" {\n'
            "  lifecycle {\n"
            "    prevent_destroy = true\n"
            "  }\n"
            "}\n"
        )
        zip_path = write_zip(temp_workspace / f"{DEPLOYMENT_ID}.zip", files)

        run_terraform(
            TerraformRunRequest(
                action=TerraformAction.DESTROY, zip_path=zip_path, allow_destroy=True
            ),
            workspace=manager,
            executor=FakeTerraform(),
        )

        db = manager.export_root(ENVIRONMENT_ID, DEPLOYMENT_ID) / "level2" / "db.tf"
        assert "prevent_destroy = false" in db.read_text()
        assert "prevent_destroy = true" not in db.read_text()


class TestRemoteBackend:
    @pytest.fixture(autouse=True)
    def s3_environment(self, monkeypatch):
        monkeypatch.setenv("TF_BACKEND_S3_BUCKET", "states")
        monkeypatch.setenv("TF_BACKEND_S3_KEY", "shop/staging.tfstate")
        monkeypatch.setenv("TF_BACKEND_S3_REGION", "eu-west-1")

    def test_apply_writes_backend_and_init_flags(self, manager, temp_workspace):
        executor = FakeTerraform()

        result = run_terraform(
            TerraformRunRequest(
                action=TerraformAction.APPLY, zip_path=_zip(temp_workspace), backend_type="s3"
            ),
            workspace=manager,
            executor=executor,
        )

        backend = json.loads(
            (manager.export_root(ENVIRONMENT_ID, DEPLOYMENT_ID) / BACKEND_FILE).read_text()
        )
        assert backend["terraform"]["backend"]["s3"]["bucket"] == "states"
        assert executor.calls[0] == (
            "init",
            (
                "-backend-config=bucket=states",
                "-backend-config=key=shop/staging.tfstate",
                "-backend-config=region=eu-west-1",
            ),
        )
        assert "statePath" not in result.data
        assert not manager.latest_state_path(ENVIRONMENT_ID).exists()

    def test_plan_writes_backend_without_init_flags(self, manager, temp_workspace):
        executor = FakeTerraform()

        run_terraform(
            TerraformRunRequest(
                action=TerraformAction.PLAN, zip_path=_zip(temp_workspace), backend_type="s3"
            ),
            workspace=manager,
            executor=executor,
        )

        assert executor.calls[0] == ("init", ())
        assert (manager.export_root(ENVIRONMENT_ID, DEPLOYMENT_ID) / BACKEND_FILE).is_file()

    def test_incomplete_backend_fails(self, manager, temp_workspace, monkeypatch):
        monkeypatch.delenv("TF_BACKEND_S3_REGION")

        with pytest.raises(TerraformRunError, match="region"):
            run_terraform(
                TerraformRunRequest(
                    action=TerraformAction.APPLY, zip_path=_zip(temp_workspace), backend_type="s3"
                ),
                workspace=manager,
                executor=FakeTerraform(),
            )


class TestArtifactValidation:
    def test_missing_zip(self, manager, tmp_path):
        with pytest.raises(TerraformRunError, match="Zip file not found"):
            run_terraform(
                TerraformRunRequest(
                    action=TerraformAction.APPLY, zip_path=tmp_path / f"{DEPLOYMENT_ID}.zip"
                ),
                workspace=manager,
                executor=FakeTerraform(),
            )

    def test_unrecognized_zip_name(self, manager, temp_workspace):
        zip_path = write_zip(temp_workspace / "export.zip", export_files())

        with pytest.raises(TerraformRunError, match="deployment ID"):
            run_terraform(
                TerraformRunRequest(action=TerraformAction.APPLY, zip_path=zip_path),
                workspace=manager,
                executor=FakeTerraform(),
            )

    def test_legacy_name_supplies_environment(self, manager, temp_workspace):
        files = export_files()
        del files["tfexport/deploymentcontext.json"]
        zip_path = write_zip(
            temp_workspace / "terraform-export-envlegacy-dep42-20250101-120000.zip", files
        )

        result = run_terraform(
            TerraformRunRequest(action=TerraformAction.PLAN, zip_path=zip_path),
            workspace=manager,
            executor=FakeTerraform(),
        )

        assert result.data["environmentId"] == "envlegacy"
        assert result.data["deploymentId"] == "dep42"
