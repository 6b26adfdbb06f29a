"""Types shared by the upload and publishing stages."""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ArtifactBlob:
    """One demultiplexed file: its bytes and their sha256 hex digest.

    Built only by the demultiplexer once all of the file's declared bytes
    have arrived. The client never names a blob; its name comes from the
    job's manifest (see ResolvedArtifact).
    """

    content: bytes
    sha256: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class ResolvedArtifact:
    """An ArtifactBlob paired with the filename the job manifest gives it."""

    blob: ArtifactBlob
    filename: str

    @property
    def extension(self) -> str:
        return os.path.splitext(self.filename)[1]

    @property
    def basename(self) -> str:
        name = os.path.basename(self.filename)
        return name[: len(name) - len(self.extension)] if self.extension else name


@dataclass(frozen=True)
class ManifestEntry:
    filename: str
    sha256_checksum: str


@dataclass
class UploadContext:
    """State of one accepted upload request, queued until its suite completes."""

    owner: str
    repo: str
    commit_hash: str
    pull_number: int
    job_name: str
    run_id: int
    file_sizes: list[int]
    blobs: list[ArtifactBlob] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def commit_short_hash(self) -> str:
        return self.commit_hash[:8]


@dataclass
class ArtifactPublishResult:
    """Outcome of writing one artifact to every target of its repository.

    Failures are kept per storage name so one broken backend is visible
    without hiding the URLs the other backends produced.
    """

    filename: str
    urls: list[str] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)


@dataclass
class JobPublishResult:
    """Outcome of resolving and publishing one job's upload."""

    job_name: str
    urls: list[str] = field(default_factory=list)
    artifacts: list[ArtifactPublishResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.error is None


@dataclass
class SuiteReport:
    """Everything publishing one check suite produced."""

    suite_id: int
    jobs: list[JobPublishResult] = field(default_factory=list)
    message: Optional[str] = None
    delivered: bool = False

    @property
    def url_count(self) -> int:
        return sum(len(job.urls) for job in self.jobs)
