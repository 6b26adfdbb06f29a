"""Fan resolved artifacts out to the configured storage targets.

Each storage definition carries a path template (``[:name]``
placeholders) rendered per artifact, e.g.::

    builds/[:owner]/[:repo]/pr-[:pull_number]/[:file_basename]-[:commit_short_hash][:file_extname]

Backends:
  file     : local filesystem; parent directories are created.
  s3       : any S3-compatible object store through the MinIO client.
  supabase : Supabase Storage bucket, uploaded with upsert.

Every backend overwrites an existing object at the same destination, so
republishing an artifact is idempotent by path. A failing target is
logged, reported to Sentry and skipped; the remaining targets still run.
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

import sentry_sdk
from minio import Minio

from buildrelay.core.config import (
    TEMPLATE_PLACEHOLDER_RE,
    RepositoryStorage,
    StorageDefinition,
)
from buildrelay.publishing.types import ArtifactPublishResult, ResolvedArtifact, UploadContext

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class TemplateVariableError(KeyError):
    """A storage template references a placeholder with no value."""

    def __init__(self, name: str, template: str):
        self.name = name
        self.template = template
        super().__init__(f"unknown placeholder [:{name}] in template {template!r}")


class StorageWriteError(Exception):
    """Writing an artifact to one storage target failed."""

    def __init__(self, storage: str, destination: str, message: str):
        self.storage = storage
        self.destination = destination
        super().__init__(f"[{storage}] {destination}: {message}")


def render_template(template: str, variables: dict[str, str]) -> str:
    """Substitute ``[:name]`` placeholders.

    Raises:
        TemplateVariableError: If a placeholder has no value in ``variables``.
    """

    def _substitute(match) -> str:
        name = match.group(1)
        if name not in variables:
            raise TemplateVariableError(name, template)
        return str(variables[name])

    return TEMPLATE_PLACEHOLDER_RE.sub(_substitute, template)


def template_variables(artifact: ResolvedArtifact, context: UploadContext) -> dict[str, str]:
    return {
        "owner": context.owner,
        "repo": context.repo,
        "pull_number": str(context.pull_number),
        "file_name": artifact.filename,
        "file_basename": artifact.basename,
        "file_extname": artifact.extension,
        "file_hash": artifact.blob.sha256,
        "commit_short_hash": context.commit_short_hash,
    }


def _validate_path(path: str) -> None:
    """Reject rendered destinations that could escape their storage root.

    Manifest filenames come from CI logs, so a hostile build could try
    ``../`` components.

    Raises:
        ValueError: If the path is empty or contains `..` or a null byte.
    """
    if not path:
        raise ValueError("Storage path must not be empty")
    if ".." in Path(path).parts:
        raise ValueError(f"Invalid storage path: path traversal detected: {path!r}")
    if "\x00" in path:
        raise ValueError(f"Invalid storage path: null byte detected: {path!r}")


class StorageBackend(Protocol):
    def write(self, destination: str, content: bytes) -> None: ...

    def public_url(self, destination: str) -> str: ...


class LocalFileBackend:
    def write(self, destination: str, content: bytes) -> None:
        target = Path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

    def public_url(self, destination: str) -> str:
        return destination


class S3Backend:
    """S3-compatible object store via MinIO's client.

    ``put_object`` replaces any existing object under the same key.
    A configured canned ``acl`` (e.g. ``public-read``) is sent as
    ``x-amz-acl`` with every object.
    """

    def __init__(self, definition: StorageDefinition):
        self.definition = definition
        self._client: Optional[Minio] = None

    @property
    def client(self) -> Minio:
        """Lazy initialization of the MinIO client."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.definition.endpoint,
                access_key=self.definition.access_key_id,
                secret_key=self.definition.secret_access_key,
                secure=self.definition.secure,
                region=self.definition.region,
            )
        return self._client

    def write(self, destination: str, content: bytes) -> None:
        content_type = mimetypes.guess_type(destination)[0] or DEFAULT_CONTENT_TYPE
        metadata = {"x-amz-acl": self.definition.acl} if self.definition.acl else None
        self.client.put_object(
            bucket_name=self.definition.bucket,
            object_name=destination.lstrip("/"),
            data=io.BytesIO(content),
            length=len(content),
            content_type=content_type,
            metadata=metadata,
        )

    def public_url(self, destination: str) -> str:
        scheme = "https" if self.definition.secure else "http"
        return f"{scheme}://{self.definition.endpoint}/{self.definition.bucket}/{destination.lstrip('/')}"


class SupabaseBackend:
    """Supabase Storage bucket, written with the service key."""

    def __init__(self, definition: StorageDefinition):
        self.definition = definition
        self._client = None

    @property
    def bucket(self):
        if self._client is None:
            from supabase import create_client  # noqa: PLC0415

            self._client = create_client(self.definition.supabase_url, self.definition.supabase_key)
        return self._client.storage.from_(self.definition.bucket)

    def write(self, destination: str, content: bytes) -> None:
        content_type = mimetypes.guess_type(destination)[0] or DEFAULT_CONTENT_TYPE
        self.bucket.upload(
            destination.lstrip("/"),
            content,
            file_options={"content-type": content_type, "upsert": "true"},
        )

    def public_url(self, destination: str) -> str:
        return self.bucket.get_public_url(destination.lstrip("/"))


def build_backend(definition: StorageDefinition) -> StorageBackend:
    if definition.method == "file":
        return LocalFileBackend()
    if definition.method == "s3":
        return S3Backend(definition)
    if definition.method == "supabase":
        return SupabaseBackend(definition)
    raise ValueError(f"unsupported storage method {definition.method!r}")


class StoragePublisher:
    """Writes resolved artifacts to every storage a repository publishes into."""

    def __init__(
        self,
        storages: dict[str, StorageDefinition],
        write_timeout: float = 120.0,
        backend_factory: Callable[[StorageDefinition], StorageBackend] = build_backend,
    ):
        self._storages = storages
        self._write_timeout = write_timeout
        self._backend_factory = backend_factory
        self._backends: dict[str, StorageBackend] = {}

    def backend(self, name: str) -> StorageBackend:
        if name not in self._backends:
            self._backends[name] = self._backend_factory(self._storages[name])
        return self._backends[name]

    async def publish(
        self,
        artifact: ResolvedArtifact,
        context: UploadContext,
        targets: Iterable[RepositoryStorage],
    ) -> ArtifactPublishResult:
        """Write one artifact to each target; collect URLs and failures.

        Raises:
            TemplateVariableError: A template references an unknown
                placeholder. This is a configuration bug, not a write
                failure, so it is not swallowed.
        """
        result = ArtifactPublishResult(filename=artifact.filename)
        variables = template_variables(artifact, context)

        for target in targets:
            definition = self._storages[target.storage]
            destination = render_template(definition.path, variables)

            try:
                await self._write(target.storage, destination, artifact.blob.content)
            except StorageWriteError as exc:
                logger.error("Failed to store %s: %s", artifact.filename, exc)
                sentry_sdk.capture_exception(exc)
                result.failures[target.storage] = str(exc)
                continue

            logger.info(
                "Saved %s (%s) to %s storage '%s' at %s",
                artifact.filename, artifact.blob.sha256, definition.method, target.storage, destination,
            )
            result.written.append(destination)

            if target.publish_url:
                if definition.public_url:
                    url = render_template(definition.public_url, variables)
                else:
                    url = self.backend(target.storage).public_url(destination)
                result.urls.append(url)

        return result

    async def _write(self, storage: str, destination: str, content: bytes) -> None:
        try:
            _validate_path(destination)
        except ValueError as exc:
            raise StorageWriteError(storage, destination, str(exc)) from exc

        backend = self.backend(storage)
        # A timed-out write keeps running in its worker thread, so the retry
        # can overlap it. Both put the same bytes at the same destination.
        for attempt in (1, 2):
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(backend.write, destination, content),
                    timeout=self._write_timeout,
                )
                return
            except asyncio.TimeoutError as exc:
                if attempt == 1:
                    logger.warning("Write to '%s' timed out, retrying once: %s", storage, destination)
                    continue
                raise StorageWriteError(
                    storage, destination, f"timed out after {self._write_timeout}s"
                ) from exc
            except Exception as exc:
                raise StorageWriteError(storage, destination, str(exc)) from exc
