"""HTTP tests for the GitHub webhook endpoint."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from buildrelay.publishing.types import ArtifactBlob, UploadContext
from tests.conftest import COMMIT, FULL_NAME, OWNER, PULL_NUMBER, REPO, RUN_ID, SUITE_ID, sha256_hex, sign


def _check_suite_payload(action: str = "completed", suite_id=SUITE_ID, full_name: str = FULL_NAME) -> bytes:
    return json.dumps(
        {
            "action": action,
            "check_suite": {"id": suite_id, "head_sha": COMMIT, "conclusion": "success"},
            "repository": {"full_name": full_name},
        }
    ).encode()


def _upload(job_name: str = "linux") -> UploadContext:
    return UploadContext(
        owner=OWNER,
        repo=REPO,
        commit_hash=COMMIT,
        pull_number=PULL_NUMBER,
        job_name=job_name,
        run_id=RUN_ID,
        file_sizes=[3],
        blobs=[ArtifactBlob(content=b"abc", sha256=sha256_hex(b"abc"))],
    )


class RecordingLogSource:
    def __init__(self, log: str):
        self.log = log
        self.calls: list[tuple] = []

    async def fetch_job_log(self, owner, repo, run_id, job_name) -> str:
        self.calls.append((owner, repo, run_id, job_name))
        return self.log


@pytest.fixture
def log_source(app):
    manifest = json.dumps([{"filename": "a.txt", "sha256_checksum": sha256_hex(b"abc")}])
    source = RecordingLogSource(f"##[group]Run build\nBuildFileHashes: {manifest}\n")
    app.state.log_source = source
    return source


@pytest.fixture
def post_comment():
    with patch("buildrelay.github.client.create_issue_comment", new_callable=AsyncMock) as mock:
        mock.return_value = {"id": 1}
        yield mock


async def _deliver(client, body: bytes, event: str = "check_suite", **headers):
    request_headers = {
        "X-GitHub-Event": event,
        "X-Hub-Signature-256": sign(body),
        "Content-Type": "application/json",
    }
    request_headers.update(headers)
    return await client.post("/webhook", content=body, headers=request_headers)


class TestWebhookAuthentication:
    async def test_bad_signature_rejected_and_batch_kept(self, client, aggregator) -> None:
        await aggregator.enqueue(SUITE_ID, _upload())
        body = _check_suite_payload()

        response = await _deliver(client, body, **{"X-Hub-Signature-256": sign(body, secret="wrong")})

        assert response.status_code == 401
        assert await aggregator.pending(SUITE_ID) == 1

    async def test_missing_signature_rejected(self, client) -> None:
        body = _check_suite_payload()
        response = await client.post(
            "/webhook", content=body, headers={"X-GitHub-Event": "check_suite"}
        )
        assert response.status_code == 401

    async def test_unknown_repository_rejected(self, client) -> None:
        body = _check_suite_payload(full_name="someone/else")
        response = await _deliver(client, body)
        assert response.status_code == 401

    async def test_legacy_sha1_signature_accepted(self, client) -> None:
        body = _check_suite_payload(action="requested")
        response = await client.post(
            "/webhook",
            content=body,
            headers={"X-GitHub-Event": "check_suite", "X-Hub-Signature": sign(body, algorithm="sha1")},
        )
        assert response.status_code == 200

    async def test_malformed_json(self, client) -> None:
        body = b"{not json"
        response = await _deliver(client, body)
        assert response.status_code == 400


class TestWebhookEvents:
    async def test_other_events_ignored(self, client, aggregator) -> None:
        await aggregator.enqueue(SUITE_ID, _upload())
        body = json.dumps({"zen": "Keep it simple.", "repository": {"full_name": FULL_NAME}}).encode()

        response = await _deliver(client, body, event="ping")

        assert response.status_code == 200
        assert response.json()["action"] == "ignored"
        assert await aggregator.pending(SUITE_ID) == 1

    async def test_incomplete_check_suite_ignored(self, client, aggregator) -> None:
        await aggregator.enqueue(SUITE_ID, _upload())

        response = await _deliver(client, _check_suite_payload(action="rerequested"))

        assert response.json()["action"] == "ignored"
        assert await aggregator.pending(SUITE_ID) == 1

    async def test_completed_without_uploads(self, client) -> None:
        response = await _deliver(client, _check_suite_payload())

        data = response.json()
        assert data["action"] == "no_pending_uploads"
        assert data["check_suite_id"] == SUITE_ID

    async def test_completed_suite_is_drained_and_published(
        self, client, aggregator, log_source, post_comment, storage_root
    ) -> None:
        await aggregator.enqueue(SUITE_ID, _upload("linux"))
        await aggregator.enqueue(SUITE_ID, _upload("mac"))

        response = await _deliver(client, _check_suite_payload())

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "publishing"
        assert data["queued_uploads"] == 2
        assert await aggregator.pending(SUITE_ID) == 0

        assert sorted(call[3] for call in log_source.calls) == ["linux", "mac"]
        published = storage_root / "public" / f"pr-{PULL_NUMBER}" / f"a-{COMMIT[:8]}.txt"
        assert published.read_bytes() == b"abc"

        post_comment.assert_awaited_once()
        owner, repo, number, body = post_comment.await_args.args
        assert (owner, repo, number) == (OWNER, REPO, PULL_NUMBER)
        assert body.startswith("The following links are available:")
        assert "**linux**" in body and "**mac**" in body

    async def test_other_suites_untouched(self, client, aggregator, log_source, post_comment) -> None:
        await aggregator.enqueue(SUITE_ID, _upload())
        await aggregator.enqueue(SUITE_ID + 1, _upload())

        await _deliver(client, _check_suite_payload())

        assert await aggregator.suite_ids() == [SUITE_ID + 1]

    async def test_missing_suite_id(self, client) -> None:
        response = await _deliver(client, _check_suite_payload(suite_id=None))
        assert response.status_code == 400
