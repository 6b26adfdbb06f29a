"""Resolve uploaded artifacts to the filenames their CI job declared.

The build job prints one line containing a marker followed by a JSON
array, for example::

    BuildFileHashes: [{"filename": "app.zip", "sha256_checksum": "9f86..."}]

That line in the job's log is the only trusted source of artifact names.
An uploaded blob is named by finding its sha256 in the manifest; whatever
filename the uploader may have had in mind is irrelevant.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Iterable, Optional

from buildrelay.core.config import DEFAULT_BUILD_FILE_HASHES_PATTERN
from buildrelay.publishing.types import ArtifactBlob, ManifestEntry, ResolvedArtifact

logger = logging.getLogger(__name__)


class ManifestError(Exception):
    """Base class for manifest resolution failures. Scoped to one job."""


class ManifestMissingError(ManifestError):
    """The job log contains no manifest line."""


class ManifestMalformedError(ManifestError):
    """The manifest line was found but is not a list of filename/hash records."""


class HashNotFoundError(ManifestError):
    """An uploaded blob's hash is not listed in the manifest."""

    def __init__(self, sha256: str):
        self.sha256 = sha256
        super().__init__(f"no manifest entry for sha256 {sha256}")


class ManifestResolver:
    """Extracts the manifest from log text and looks hashes up in it."""

    def __init__(self, pattern: str = DEFAULT_BUILD_FILE_HASHES_PATTERN):
        # MULTILINE without DOTALL: the manifest must sit on a single line.
        self._pattern = re.compile(pattern, re.MULTILINE)

    def extract(self, log_text: str) -> list[ManifestEntry]:
        match = self._pattern.search(log_text)
        if not match:
            raise ManifestMissingError("job log has no build file hashes line")

        try:
            records = json.loads(match.group(1))
        except json.JSONDecodeError as exc:
            raise ManifestMalformedError(f"build file hashes are not valid JSON: {exc}") from exc

        if not isinstance(records, list):
            raise ManifestMalformedError("build file hashes must be a JSON array")

        manifest = []
        for position, record in enumerate(records):
            if not isinstance(record, dict):
                raise ManifestMalformedError(f"entry {position} is not an object")
            filename = record.get("filename")
            checksum = record.get("sha256_checksum")
            if not isinstance(filename, str) or not filename:
                raise ManifestMalformedError(f"entry {position} has no filename")
            if not isinstance(checksum, str) or not checksum:
                raise ManifestMalformedError(f"entry {position} has no sha256_checksum")
            manifest.append(ManifestEntry(filename=filename, sha256_checksum=checksum))

        logger.debug("Extracted manifest with %d entries", len(manifest))
        return manifest

    @staticmethod
    def lookup(manifest: Iterable[ManifestEntry], sha256: str) -> Optional[str]:
        """Return the filename of the first entry with this hash, if any.

        Duplicated hashes are not merged; the first listed entry wins.
        """
        wanted = sha256.lower()
        for entry in manifest:
            if entry.sha256_checksum.lower() == wanted:
                return entry.filename
        return None

    def resolve(self, log_text: str, sha256: str) -> Optional[str]:
        return self.lookup(self.extract(log_text), sha256)

    def resolve_all(self, log_text: str, blobs: Iterable[ArtifactBlob]) -> list[ResolvedArtifact]:
        """Name every blob from one job's log, or none of them.

        Raises:
            ManifestMissingError / ManifestMalformedError: Manifest unusable.
            HashNotFoundError: Any blob is missing from the manifest.
        """
        manifest = self.extract(log_text)
        resolved = []
        for blob in blobs:
            logger.debug("Looking for the filename of artifact with hash %s", blob.sha256)
            filename = self.lookup(manifest, blob.sha256)
            if filename is None:
                raise HashNotFoundError(blob.sha256)
            logger.info("Resolved artifact %s to %s", blob.sha256, filename)
            resolved.append(ResolvedArtifact(blob=blob, filename=filename))
        return resolved
