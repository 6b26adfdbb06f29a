"""Streaming demultiplexer for multi-file upload bodies.

A CI job uploads all of its artifacts in one request: the body is the raw
concatenation of the files and the ``file_sizes`` header lists each file's
byte length in order. The demultiplexer slices the stream back into files
as chunks arrive, hashing each file incrementally, so no chunk needs to
line up with a file boundary and a single chunk may complete several
files at once.
"""

from __future__ import annotations

import hashlib
import logging
from typing import AsyncIterable, Iterable

from buildrelay.publishing.types import ArtifactBlob

logger = logging.getLogger(__name__)


class DemuxError(Exception):
    """Base class for upload bodies that don't match their declared sizes."""


class TruncatedUploadError(DemuxError):
    """The stream ended before every declared file was complete."""

    def __init__(self, received: int, expected: int):
        self.received = received
        self.expected = expected
        super().__init__(f"upload truncated: received {received} of {expected} declared bytes")


class UploadOverflowError(DemuxError, OverflowError):
    """The stream carried more bytes than the declared sizes add up to."""

    def __init__(self, expected: int):
        self.expected = expected
        super().__init__(f"upload exceeds the {expected} declared bytes")


class StreamDemultiplexer:
    """Split one byte stream into files of the declared lengths.

    Usage::

        demux = StreamDemultiplexer([3, 5])
        for chunk in chunks:
            demux.feed(chunk)
        blobs = demux.finish()
    """

    def __init__(self, lengths: Iterable[int]):
        self._lengths = list(lengths)
        if any(length < 0 for length in self._lengths):
            raise ValueError(f"declared file sizes must be non-negative: {self._lengths}")

        self._index = 0
        self._buffer = bytearray()
        self._hash = hashlib.sha256()
        self._received = 0
        self.blobs: list[ArtifactBlob] = []
        # Leading zero-length files are complete before any byte arrives.
        self._finalize_empty()

    @property
    def expected_total(self) -> int:
        return sum(self._lengths)

    @property
    def received(self) -> int:
        return self._received

    @property
    def is_complete(self) -> bool:
        return self._index >= len(self._lengths)

    def feed(self, chunk: bytes) -> list[ArtifactBlob]:
        """Consume a chunk; return the files it completed, in order."""
        completed: list[ArtifactBlob] = []
        view = memoryview(chunk)

        while view:
            if self.is_complete:
                raise UploadOverflowError(self.expected_total)

            wanted = self._lengths[self._index] - len(self._buffer)
            piece = view[:wanted]
            self._buffer += piece
            self._hash.update(piece)
            self._received += len(piece)
            view = view[len(piece):]

            if len(self._buffer) == self._lengths[self._index]:
                completed.append(self._finalize())
                completed.extend(self._finalize_empty())

        return completed

    def finish(self) -> list[ArtifactBlob]:
        """Signal end of stream; return every file or raise if incomplete."""
        if not self.is_complete:
            raise TruncatedUploadError(self._received, self.expected_total)
        return list(self.blobs)

    def _finalize(self) -> ArtifactBlob:
        blob = ArtifactBlob(content=bytes(self._buffer), sha256=self._hash.hexdigest())
        self.blobs.append(blob)
        logger.debug(
            "Demultiplexed file %d/%d (%d bytes, sha256=%s)",
            self._index + 1, len(self._lengths), blob.size, blob.sha256,
        )
        self._index += 1
        self._buffer = bytearray()
        self._hash = hashlib.sha256()
        return blob

    def _finalize_empty(self) -> list[ArtifactBlob]:
        completed = []
        while not self.is_complete and self._lengths[self._index] == 0:
            completed.append(self._finalize())
        return completed


async def demultiplex(stream: AsyncIterable[bytes], lengths: Iterable[int]) -> list[ArtifactBlob]:
    """Drive an async byte stream through a StreamDemultiplexer.

    Raises:
        UploadOverflowError: As soon as the stream passes the declared total.
        TruncatedUploadError: If the stream ends early.
    """
    demux = StreamDemultiplexer(lengths)
    async for chunk in stream:
        if chunk:
            demux.feed(chunk)
    return demux.finish()
