"""
Control plane client

REST client for the control plane's UI API (``<url>/cc-ui/v1``). Covers the
calls the export and apply workflows need: listing projects, environments and
deployments, triggering and polling terraform exports, downloading the export
archive and uploading release metadata.

Every request authenticates with HTTP basic auth (username, API token). A 503
from any endpoint surfaces as ``ControlPlaneUnavailableError``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from fctl.domain.errors import ControlPlaneUnavailableError, RemoteJobError, TransferError
from fctl.domain.models import (
    TERRAFORM_EXPORT_RELEASE,
    EnvironmentRef,
    ExportJob,
    Profile,
    RemoteJobStatus,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/cc-ui/v1"
NOT_RUNNING_MESSAGE = (
    "Cannot trigger terraform export on an environment that is not in a running state"
)
ESTIMATE_SAMPLE_SIZE = 10
_DOWNLOAD_CHUNK = 64 * 1024

ProgressCallback = Callable[[int, int | None], None]


class RemoteJobAPI(Protocol):
    """Remote export operations used by the export state machine."""

    def find_running_export(self, environment_id: str) -> ExportJob | None: ...

    def trigger_export(self, environment_id: str) -> ExportJob: ...

    def get_export(self, environment_id: str, job_id: str) -> ExportJob: ...

    def download_export(
        self,
        environment_id: str,
        job_id: str,
        destination: Path,
        on_progress: ProgressCallback | None = None,
    ) -> Path: ...


def _job_from_payload(environment_id: str, payload: dict[str, Any]) -> ExportJob:
    job = ExportJob.model_validate({**payload, "environment_id": environment_id})
    logs = payload.get("errorLogs") or []
    if logs and isinstance(logs[0], dict) and logs[0].get("errorMessage"):
        job.error_detail = str(logs[0]["errorMessage"])
    return job


def _parse_job(environment_id: str, payload: dict[str, Any], action: str) -> ExportJob:
    try:
        return _job_from_payload(environment_id, payload)
    except ValidationError as err:
        logger.debug("Unparseable response to %s: %s", action, err)
        raise RemoteJobError(
            message=f"Unexpected response to {action}: {err.error_count()} invalid field(s)",
            code="invalid_response",
        ) from err


def _server_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return None


class ControlPlaneClient:
    """Synchronous client for one control plane profile.

    The underlying ``httpx.Client`` is shared by all threads of an export run.

    Example:
        with ControlPlaneClient(profile) as client:
            job = client.trigger_export("env-id")
    """

    def __init__(
        self,
        profile: Profile,
        *,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.profile = profile
        self._http = httpx.Client(
            base_url=profile.control_plane_url.rstrip("/") + API_PREFIX,
            auth=(profile.username, profile.token),
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    def __enter__(self) -> ControlPlaneClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    # Transport

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.RequestError as err:
            raise RemoteJobError(
                message=f"Could not reach control plane: {err}",
                code="request_failed",
            ) from err
        if response.status_code == httpx.codes.SERVICE_UNAVAILABLE:
            raise ControlPlaneUnavailableError(
                message="Control plane is unavailable, retry later",
                code="service_unavailable",
            )
        return response

    def _get_json(self, path: str, action: str) -> Any:
        response = self._send("GET", path)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as err:
            raise RemoteJobError(
                message=f"Could not {action}: status {response.status_code}",
                code="http_error",
            ) from err
        return response.json()

    # Projects and environments

    def list_projects(self) -> list[str]:
        payload = self._get_json("/stacks/", "list projects")
        return [stack["name"] for stack in payload if stack.get("name")]

    def list_environments(self, project: str) -> list[EnvironmentRef]:
        payload = self._get_json(f"/stacks/{project}/clusters", f"list environments of {project}")
        return [EnvironmentRef.model_validate(cluster) for cluster in payload]

    def current_user(self) -> dict[str, Any]:
        """Return the authenticated user; used to verify credentials."""
        return self._get_json("/users/current", "fetch current user")

    # Deployments

    def list_deployments(self, environment_id: str) -> list[ExportJob]:
        payload = self._get_json(
            f"/clusters/{environment_id}/deployments", "get deployments"
        )
        jobs: list[ExportJob] = []
        for deployment in payload.get("deployments") or []:
            try:
                jobs.append(_job_from_payload(environment_id, deployment))
            except ValidationError as err:
                # other release types report statuses exports never use
                logger.debug("Ignoring deployment %s: %s", deployment.get("id"), err)
        return jobs

    def find_running_export(self, environment_id: str) -> ExportJob | None:
        for job in self.list_deployments(environment_id):
            if job.is_running_export:
                return job
        return None

    def estimate_export_duration(self, environment_id: str) -> float | None:
        """Average duration in seconds of the most recent successful exports."""
        finished = [
            job
            for job in self.list_deployments(environment_id)
            if job.release_type == TERRAFORM_EXPORT_RELEASE
            and job.status == RemoteJobStatus.SUCCEEDED
            and job.time_taken_seconds > 0
        ]
        if not finished:
            return None
        finished.sort(key=lambda job: job.created_on.timestamp() if job.created_on else 0.0)
        recent = finished[-ESTIMATE_SAMPLE_SIZE:]
        return sum(job.time_taken_seconds for job in recent) / len(recent)

    def trigger_export(self, environment_id: str) -> ExportJob:
        """Start a terraform export for an environment.

        Raises:
            RemoteJobError: With a user-facing message when the control plane
                rejects the request.
        """
        response = self._send(
            "POST", f"/clusters/{environment_id}/deployments/terraform-export"
        )
        if response.status_code == httpx.codes.BAD_REQUEST:
            if NOT_RUNNING_MESSAGE in response.text:
                raise RemoteJobError(message=NOT_RUNNING_MESSAGE, code="environment_not_running")
            raise RemoteJobError(
                message=_server_message(response)
                or "Cannot trigger terraform export on this environment",
                code="trigger_rejected",
            )
        if response.is_error:
            logger.debug(
                "Trigger for %s failed: %s %s", environment_id, response.status_code, response.text
            )
            raise RemoteJobError(message="Failed to trigger export", code="trigger_failed")
        job = _parse_job(environment_id, response.json(), "trigger export")
        if job.status.terminal:
            raise RemoteJobError(
                message=f"Unexpected response: status {job.status}",
                code="unexpected_status",
            )
        return job

    def get_export(self, environment_id: str, job_id: str) -> ExportJob:
        payload = self._get_json(
            f"/clusters/{environment_id}/deployments/{job_id}", "get deployment status"
        )
        job = _parse_job(environment_id, payload, "get deployment status")
        logger.debug("Export %s for %s is %s", job_id, environment_id, job.status)
        return job

    # Artifacts

    def download_export(
        self,
        environment_id: str,
        job_id: str,
        destination: Path,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Stream the export archive to ``destination``.

        ``on_progress`` receives the bytes written so far and the total size,
        which is None when the server does not send a content length.
        """
        path = f"/clusters/{environment_id}/deployments/{job_id}/download-terraform-export"
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with self._http.stream("GET", path) as response:
                if response.status_code == httpx.codes.SERVICE_UNAVAILABLE:
                    raise ControlPlaneUnavailableError(
                        message="Control plane is unavailable, retry later",
                        code="service_unavailable",
                    )
                if response.status_code != httpx.codes.OK:
                    raise TransferError(
                        message=f"Download failed with status: {response.status_code}",
                        code="download_failed",
                    )
                length = response.headers.get("Content-Length")
                total = int(length) if length else None
                written = 0
                with destination.open("wb") as handle:
                    for chunk in response.iter_bytes(_DOWNLOAD_CHUNK):
                        handle.write(chunk)
                        written += len(chunk)
                        if on_progress is not None:
                            on_progress(written, total)
        except httpx.RequestError as err:
            destination.unlink(missing_ok=True)
            raise TransferError(
                message=f"Could not download export: {err}", code="download_failed"
            ) from err
        except OSError as err:
            destination.unlink(missing_ok=True)
            raise TransferError(
                message=f"Could not save export file: {err}", code="download_failed"
            ) from err
        except TransferError:
            destination.unlink(missing_ok=True)
            raise
        return destination

    def upload_release_metadata(
        self, environment_id: str, deployment_id: str, metadata_file: Path
    ) -> None:
        path = f"/clusters/{environment_id}/deployments/{deployment_id}/upload-release-metadata"
        with metadata_file.open("rb") as handle:
            response = self._send(
                "POST",
                path,
                files={"file": (metadata_file.name, handle, "application/json")},
            )
        if response.status_code != httpx.codes.OK:
            raise RemoteJobError(
                message=f"Upload failed with status: {response.status_code}: {response.text}",
                code="upload_failed",
            )
