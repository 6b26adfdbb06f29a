"""Schemas for the artifact upload endpoint."""

from typing import Mapping

from pydantic import BaseModel, Field, field_validator


class UploadHeaders(BaseModel):
    """Upload metadata, sent as request headers by the CI job.

    The body carries nothing but the concatenated files, so everything
    describing them travels out of band.
    """

    owner: str = Field(..., min_length=1)
    repo: str = Field(..., min_length=1)
    commit_hash: str = Field(..., min_length=7)
    pull_number: int = Field(..., gt=0)
    job_name: str = Field(..., min_length=1)
    run_id: int = Field(..., gt=0)
    file_sizes: list[int] = Field(..., min_length=1)

    @field_validator("file_sizes", mode="before")
    @classmethod
    def split_file_sizes(cls, v):
        if isinstance(v, str):
            return [part.strip() for part in v.split(",")]
        return v

    @field_validator("file_sizes")
    @classmethod
    def check_non_negative(cls, v: list[int]) -> list[int]:
        if any(size < 0 for size in v):
            raise ValueError("file sizes must be non-negative")
        return v

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "UploadHeaders":
        """Read the fields from headers, accepting ``commit_hash`` or ``commit-hash``."""
        values = {}
        for name in cls.model_fields:
            value = headers.get(name) or headers.get(name.replace("_", "-"))
            if value is not None:
                values[name] = value
        return cls.model_validate(values)


class UploadAcceptedResponse(BaseModel):
    """The upload is queued; links are posted once the check suite completes."""

    success: bool = True
    message: str
    check_suite_id: int
    files: int
