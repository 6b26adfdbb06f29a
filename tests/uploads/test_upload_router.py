"""HTTP tests for the artifact upload endpoint."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from buildrelay.github.service import UploadNotPermittedError
from tests.conftest import COMMIT, OWNER, PULL_NUMBER, REPO, RUN_ID, SUITE_ID, sha256_hex


def _headers(**overrides) -> dict[str, str]:
    headers = {
        "owner": OWNER,
        "repo": REPO,
        "commit_hash": COMMIT,
        "pull_number": str(PULL_NUMBER),
        "job_name": "linux",
        "run_id": str(RUN_ID),
        "file_sizes": "3,5",
    }
    headers.update(overrides)
    return {k: v for k, v in headers.items() if v is not None}


@pytest.fixture
def gate():
    with patch("buildrelay.uploads.router.authorize_upload", new_callable=AsyncMock) as authorize, patch(
        "buildrelay.uploads.router.find_check_suite_id", new_callable=AsyncMock, return_value=SUITE_ID
    ) as find_suite:
        yield authorize, find_suite


class TestUploadAccepted:
    async def test_upload_is_demultiplexed_and_queued(self, client, aggregator, gate) -> None:
        response = await client.put("/", content=b"abcdefgh", headers=_headers())

        assert response.status_code == 202
        data = response.json()
        assert data == {
            "success": True,
            "message": data["message"],
            "check_suite_id": SUITE_ID,
            "files": 2,
        }

        batch = await aggregator.drain(SUITE_ID)
        assert len(batch) == 1
        context = batch[0]
        assert context.job_name == "linux"
        assert context.run_id == RUN_ID
        assert [b.content for b in context.blobs] == [b"abc", b"defgh"]
        assert [b.sha256 for b in context.blobs] == [sha256_hex(b"abc"), sha256_hex(b"defgh")]

    async def test_hyphenated_headers_accepted(self, client, aggregator, gate) -> None:
        headers = {k.replace("_", "-"): v for k, v in _headers().items()}
        response = await client.put("/", content=b"abcdefgh", headers=headers)

        assert response.status_code == 202
        assert await aggregator.pending(SUITE_ID) == 1

    async def test_streamed_body_in_uneven_chunks(self, client, aggregator, gate) -> None:
        async def body():
            for chunk in (b"a", b"bcd", b"efg", b"h"):
                yield chunk

        response = await client.put("/", content=body(), headers=_headers())

        assert response.status_code == 202
        batch = await aggregator.drain(SUITE_ID)
        assert [b.content for b in batch[0].blobs] == [b"abc", b"defgh"]

    async def test_gate_receives_upload_label(self, client, gate, relay_config) -> None:
        authorize, find_suite = gate
        await client.put("/", content=b"abcdefgh", headers=_headers())

        authorize.assert_awaited_once_with(
            OWNER, REPO, PULL_NUMBER, COMMIT, relay_config.build_allowed_upload_label
        )
        find_suite.assert_awaited_once_with(OWNER, REPO, COMMIT, "linux")


class TestUploadRejected:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"owner": None},
            {"run_id": None},
            {"file_sizes": None},
            {"file_sizes": "3,x"},
            {"file_sizes": "3,-1"},
            {"pull_number": "abc"},
        ],
    )
    async def test_bad_headers(self, client, aggregator, gate, overrides) -> None:
        response = await client.put("/", content=b"abcdefgh", headers=_headers(**overrides))

        assert response.status_code == 400
        assert await aggregator.suite_ids() == []

    async def test_repository_not_allow_listed(self, client, gate) -> None:
        response = await client.put("/", content=b"abcdefgh", headers=_headers(repo="other"))

        assert response.status_code == 403
        gate[0].assert_not_awaited()

    async def test_pull_request_gate_rejects(self, client, aggregator, gate) -> None:
        gate[0].side_effect = UploadNotPermittedError("Please label PR build next time with the x label.")

        response = await client.put("/", content=b"abcdefgh", headers=_headers())

        assert response.status_code == 403
        assert "label" in response.json()["detail"]
        assert await aggregator.suite_ids() == []

    async def test_github_failure_is_bad_gateway(self, client, gate) -> None:
        gate[0].side_effect = httpx.ConnectError("unreachable")

        response = await client.put("/", content=b"abcdefgh", headers=_headers())

        assert response.status_code == 502

    async def test_truncated_body_not_queued(self, client, aggregator, gate) -> None:
        response = await client.put("/", content=b"abcde", headers=_headers())

        assert response.status_code == 400
        assert "truncated" in response.json()["detail"]
        assert await aggregator.suite_ids() == []
        gate[1].assert_not_awaited()

    async def test_oversized_body_not_queued(self, client, aggregator, gate) -> None:
        response = await client.put("/", content=b"abcdefghXYZ", headers=_headers())

        assert response.status_code == 413
        assert await aggregator.suite_ids() == []

    async def test_missing_check_run(self, client, aggregator, gate) -> None:
        from buildrelay.github.service import CheckRunNotFoundError

        gate[1].side_effect = CheckRunNotFoundError("No check run named 'linux'")

        response = await client.put("/", content=b"abcdefgh", headers=_headers())

        assert response.status_code == 404
        assert await aggregator.suite_ids() == []


class TestClientDisconnect:
    async def test_disconnect_mid_body_is_not_queued(self, app, aggregator, gate) -> None:
        messages = [
            {"type": "http.request", "body": b"abc", "more_body": True},
            {"type": "http.disconnect"},
        ]
        sent: list[dict] = []

        async def receive():
            return messages.pop(0) if messages else {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "PUT",
            "scheme": "http",
            "path": "/",
            "raw_path": b"/",
            "root_path": "",
            "query_string": b"",
            "headers": [(k.encode(), v.encode()) for k, v in _headers().items()],
            "client": ("127.0.0.1", 50000),
            "server": ("test", 80),
        }

        await app(scope, receive, send)

        assert await aggregator.pending(SUITE_ID) == 0
        assert await aggregator.suite_ids() == []
        gate[1].assert_not_awaited()
        starts = [m for m in sent if m["type"] == "http.response.start"]
        assert [m["status"] for m in starts] == [400]
