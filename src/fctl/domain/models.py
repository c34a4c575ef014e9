"""
Remote export and environment models

Pydantic models for the objects exchanged with the control plane and passed
between the export orchestrator and its collaborators.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

TERRAFORM_EXPORT_RELEASE = "TERRAFORM_EXPORT"


class RemoteJobStatus(StrEnum):
    """Remote export job status as reported by the control plane."""

    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (RemoteJobStatus.SUCCEEDED, RemoteJobStatus.FAILED)


class ExportStatus(StrEnum):
    """Local state of one environment's export state machine."""

    PENDING = "pending"
    TRIGGERING = "triggering"
    WAITING = "waiting"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    CLEANING = "cleaning"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ExportStatus.COMPLETE, ExportStatus.FAILED)


class EnvironmentRef(BaseModel):
    """An environment (cluster) belonging to a project (stack)

    Attributes:
        id: Environment identifier
        name: Human-readable environment name
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Environment identifier")
    name: str = Field(default="", description="Environment name")


class ExportJob(BaseModel):
    """One remote export request

    Attributes:
        environment_id: Environment the export belongs to
        job_id: Remote deployment identifier of the export
        status: Remote job status
        release_type: Release type reported by the control plane
        created_on: Time the job was created remotely
        time_taken_seconds: Wall time reported for finished jobs
        error_detail: First error message reported for failed jobs
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    environment_id: str = Field(default="", description="Environment identifier")
    job_id: str = Field(..., alias="id", description="Remote job identifier")
    status: RemoteJobStatus = Field(..., description="Remote job status")
    release_type: str = Field(default="", alias="releaseType", description="Release type")
    created_on: datetime | None = Field(None, alias="createdOn", description="Creation time")
    time_taken_seconds: int = Field(
        default=0, alias="timeTakenInSeconds", description="Reported duration"
    )
    error_detail: str | None = Field(None, description="Remote error message")

    @field_validator("created_on", mode="before")
    @classmethod
    def parse_created_on(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value)
            except ValueError:
                return None
        return value

    @property
    def is_running_export(self) -> bool:
        return self.release_type == TERRAFORM_EXPORT_RELEASE and self.status in (
            RemoteJobStatus.QUEUED,
            RemoteJobStatus.IN_PROGRESS,
        )


class Profile(BaseModel):
    """Stored control-plane credentials for one profile"""

    name: str = Field(..., description="Profile name")
    control_plane_url: str = Field(..., description="Control plane base URL")
    username: str = Field(..., description="Username")
    token: str = Field(..., description="API token")
    token_expiry: datetime | None = Field(None, description="Token expiry time")
