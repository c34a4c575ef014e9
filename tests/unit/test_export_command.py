"""Tests for the single-environment export command"""

import json
import zipfile
from datetime import UTC, datetime
from pathlib import Path

import pytest

from fctl.commands.export import ExportError, export_environment, resolve_environment
from fctl.domain.models import EnvironmentRef, ExportJob, RemoteJobStatus
from tests.utils.archives import DEPLOYMENT_ID, ENVIRONMENT_ID, export_files, write_zip


class FakeExportAPI:
    def __init__(self, *, statuses=None, running=None, error_detail=None):
        self.statuses = list(statuses or [RemoteJobStatus.IN_PROGRESS, RemoteJobStatus.SUCCEEDED])
        self.running = running
        self.error_detail = error_detail
        self.triggered: list[str] = []
        self.polled: list[str] = []

    def list_projects(self):
        return ["shop"]

    def list_environments(self, project):
        return [
            EnvironmentRef(id="other", name="prod"),
            EnvironmentRef(id=ENVIRONMENT_ID, name="staging"),
        ]

    def estimate_export_duration(self, environment_id):
        return 90.0

    def find_running_export(self, environment_id):
        return self.running

    def trigger_export(self, environment_id):
        self.triggered.append(environment_id)
        return ExportJob(
            environment_id=environment_id, job_id=DEPLOYMENT_ID, status=RemoteJobStatus.QUEUED
        )

    def get_export(self, environment_id, job_id):
        self.polled.append(job_id)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return ExportJob(
            environment_id=environment_id,
            job_id=job_id,
            status=status,
            error_detail=self.error_detail,
        )

    def download_export(self, environment_id, job_id, destination, on_progress=None):
        write_zip(destination, export_files(environment_id))
        if on_progress is not None:
            on_progress(10, 20)
            on_progress(20, None)
        return destination


class RecordingExecutor:
    def __init__(self):
        self.init_dirs: list[Path] = []

    def init(self, working_dir, backend_options=None):
        self.init_dirs.append(working_dir)
        (working_dir / ".terraform").mkdir()
        (working_dir / ".terraform" / "provider.bin").write_text("binary")


def _no_sleep(_seconds):
    return None


class TestResolveEnvironment:
    """Test environment lookup"""

    def test_explicit_id_wins(self):
        assert resolve_environment(FakeExportAPI(), environment_id="abc", project="x") == "abc"

    def test_lookup_by_project_and_name(self):
        api = FakeExportAPI()

        resolved = resolve_environment(api, project="shop", environment_name="staging")

        assert resolved == ENVIRONMENT_ID

    @pytest.mark.parametrize(
        ("project", "name", "message"),
        [
            (None, "staging", "Provide --environment-id"),
            ("shop", None, "Provide --environment-id"),
            ("unknown", "staging", "Project 'unknown' not found"),
            ("shop", "qa", "Environment 'qa' not found"),
        ],
    )
    def test_lookup_failures(self, project, name, message):
        with pytest.raises(ExportError, match=message):
            resolve_environment(FakeExportAPI(), project=project, environment_name=name)


class TestExportEnvironment:
    """Test the trigger, wait, download and post-process flow"""

    def test_exports_to_deployment_named_zip(self, tmp_path):
        api = FakeExportAPI()

        result = export_environment(
            api, tmp_path, environment_id=ENVIRONMENT_ID, sleep=_no_sleep, poll_interval=0
        )

        zip_path = tmp_path / f"{DEPLOYMENT_ID}.zip"
        assert result.success
        assert result.data == {
            "zipPath": str(zip_path),
            "environmentId": ENVIRONMENT_ID,
            "deploymentId": DEPLOYMENT_ID,
        }
        assert api.triggered == [ENVIRONMENT_ID]
        assert api.polled == [DEPLOYMENT_ID, DEPLOYMENT_ID]
        with zipfile.ZipFile(zip_path) as bundle:
            context = json.loads(bundle.read("tfexport/deploymentcontext.json"))
        assert context["cluster"]["id"] == ENVIRONMENT_ID

    def test_resolves_environment_by_name(self, tmp_path):
        api = FakeExportAPI(statuses=[RemoteJobStatus.SUCCEEDED])

        export_environment(
            api, tmp_path, project="shop", environment_name="staging", sleep=_no_sleep
        )

        assert api.triggered == [ENVIRONMENT_ID]

    def test_joins_running_export(self, tmp_path):
        """Should wait for an export already running instead of triggering a new one"""
        running = ExportJob(
            environment_id=ENVIRONMENT_ID,
            job_id=DEPLOYMENT_ID,
            status=RemoteJobStatus.IN_PROGRESS,
            created_on=datetime(2026, 1, 1, 12, 0),
        )
        api = FakeExportAPI(statuses=[RemoteJobStatus.SUCCEEDED], running=running)

        result = export_environment(api, tmp_path, environment_id=ENVIRONMENT_ID, sleep=_no_sleep)

        assert api.triggered == []
        assert result.data["deploymentId"] == DEPLOYMENT_ID

    def test_remote_failure_raises_with_detail(self, tmp_path):
        api = FakeExportAPI(
            statuses=[RemoteJobStatus.FAILED], error_detail="module db failed to render"
        )

        with pytest.raises(ExportError, match="module db failed to render"):
            export_environment(api, tmp_path, environment_id=ENVIRONMENT_ID, sleep=_no_sleep)

        assert not (tmp_path / f"{DEPLOYMENT_ID}.zip").exists()

    def test_include_providers_bundles_init_output(self, tmp_path):
        executor = RecordingExecutor()
        api = FakeExportAPI(statuses=[RemoteJobStatus.SUCCEEDED])

        export_environment(
            api,
            tmp_path,
            environment_id=ENVIRONMENT_ID,
            include_providers=True,
            executor=executor,
            sleep=_no_sleep,
        )

        assert len(executor.init_dirs) == 1
        assert executor.init_dirs[0].name == "tfexport"
        with zipfile.ZipFile(tmp_path / f"{DEPLOYMENT_ID}.zip") as bundle:
            assert bundle.read("tfexport/.terraform/provider.bin") == b"binary"

    def test_include_providers_requires_executor(self, tmp_path):
        with pytest.raises(ExportError, match="requires a terraform executor"):
            export_environment(
                FakeExportAPI(),
                tmp_path,
                environment_id=ENVIRONMENT_ID,
                include_providers=True,
                sleep=_no_sleep,
            )

    def test_copies_extra_files_into_zip(self, tmp_path):
        extra = tmp_path / "extra"
        extra.mkdir()
        (extra / "ca.pem").write_text("cert")
        output = tmp_path / "out"
        api = FakeExportAPI(statuses=[RemoteJobStatus.SUCCEEDED])

        export_environment(
            api,
            output,
            environment_id=ENVIRONMENT_ID,
            copies=[(extra / "ca.pem", "tfexport/certs/ca.pem")],
            sleep=_no_sleep,
        )

        with zipfile.ZipFile(output / f"{DEPLOYMENT_ID}.zip") as bundle:
            assert bundle.read("tfexport/certs/ca.pem") == b"cert"

    def test_missing_copy_source_fails_export(self, tmp_path):
        api = FakeExportAPI(statuses=[RemoteJobStatus.SUCCEEDED])

        with pytest.raises(ExportError, match="does not exist"):
            export_environment(
                api,
                tmp_path,
                environment_id=ENVIRONMENT_ID,
                copies=[(tmp_path / "missing.pem", "tfexport/ca.pem")],
                sleep=_no_sleep,
            )


def test_running_export_with_aware_timestamp(tmp_path):
    running = ExportJob(
        environment_id=ENVIRONMENT_ID,
        job_id=DEPLOYMENT_ID,
        status=RemoteJobStatus.QUEUED,
        created_on=datetime.now(UTC),
    )
    api = FakeExportAPI(
        statuses=[RemoteJobStatus.QUEUED, RemoteJobStatus.SUCCEEDED], running=running
    )

    export_environment(api, tmp_path, environment_id=ENVIRONMENT_ID, sleep=_no_sleep)

    assert api.polled == [DEPLOYMENT_ID, DEPLOYMENT_ID]
