from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

ArtifactType = Literal["document", "link", "file", "note"]


class ArtifactCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=500)
    type: ArtifactType
    description: Optional[str] = None
    url: Optional[str] = None
    content: Optional[str] = None
    storage_path: Optional[str] = Field(default=None, alias="storagePath")
    metadata: Optional[Dict[str, Any]] = None
    priority: Optional[int] = None

    @model_validator(mode="after")
    def validate_source(self) -> "ArtifactCreateRequest":
        if not self.name.strip():
            raise ValueError("Name is required")
        if self.type == "file" and not self.storage_path:
            raise ValueError("Storage path is required for file uploads")
        if self.type == "note" and not (self.content or "").strip():
            raise ValueError("Content is required for notes")
        if self.type == "link" and not (self.url or "").strip():
            raise ValueError("URL is required for links")
        return self


class JobPayload(BaseModel):
    """Body of an ``ingest_artifact`` job, stored with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    artifact_id: str = Field(alias="artifactId")
    type: ArtifactType
    name: str
    storage_path: Optional[str] = Field(default=None, alias="storagePath")
    url: Optional[str] = None
    content: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WorkerTriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    trigger: Optional[str] = None
    job_id: Optional[str] = Field(default=None, alias="jobId")

    @property
    def immediate_job_id(self) -> Optional[str]:
        if self.trigger == "immediate" and self.job_id:
            return self.job_id
        return None
