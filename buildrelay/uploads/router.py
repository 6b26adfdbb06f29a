"""Artifact upload endpoint.

CI jobs ``PUT /`` their build outputs as one body plus metadata headers.
The request is gated (allow-listed repository, trusted PR author or label,
commit belongs to the PR), demultiplexed into files, and queued under the
job's check suite. Nothing is named or stored yet: that happens when the
check suite completes and the job log's manifest can be read.
"""

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from buildrelay.core.config import RelayConfig, get_relay_config, get_settings
from buildrelay.core.limiter import limiter
from buildrelay.github.service import (
    CheckRunNotFoundError,
    UploadNotPermittedError,
    authorize_upload,
    find_check_suite_id,
)
from buildrelay.publishing.aggregator import SuiteAggregator
from buildrelay.publishing.dependencies import get_aggregator
from buildrelay.publishing.types import UploadContext
from buildrelay.uploads.demux import TruncatedUploadError, UploadOverflowError, demultiplex
from buildrelay.uploads.schemas import UploadAcceptedResponse, UploadHeaders

logger = logging.getLogger(__name__)

router = APIRouter(tags=["uploads"])


def _upload_rate_limit() -> str:
    return get_settings().upload_rate_limit


@router.put("/", response_model=UploadAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(_upload_rate_limit)
async def upload_artifacts(
    request: Request,
    config: RelayConfig = Depends(get_relay_config),
    aggregator: SuiteAggregator = Depends(get_aggregator),
) -> UploadAcceptedResponse:
    """Accept a job's artifacts for publishing once its check suite completes."""
    try:
        upload = UploadHeaders.from_headers(request.headers)
    except ValidationError as exc:
        logger.info("Rejected upload with bad headers: %s", exc.errors(include_url=False))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="One of the required headers is not set correctly.",
        )

    if not config.is_allowed(upload.owner, upload.repo):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Selected repo is not permitted to use this service.",
        )

    try:
        await authorize_upload(
            upload.owner,
            upload.repo,
            upload.pull_number,
            upload.commit_hash,
            config.build_allowed_upload_label,
        )
    except UploadNotPermittedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    except httpx.HTTPError as exc:
        logger.error("GitHub lookup for %s/%s#%d failed: %s", upload.owner, upload.repo, upload.pull_number, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="GitHub lookup failed.")

    try:
        blobs = await demultiplex(request.stream(), upload.file_sizes)
    except TruncatedUploadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except UploadOverflowError as exc:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc))
    except ClientDisconnect:
        logger.warning("Client disconnected during upload from job '%s'; discarding", upload.job_name)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Upload aborted.")

    logger.info("Reading of %d file(s) from job '%s' completed", len(blobs), upload.job_name)

    try:
        suite_id = await find_check_suite_id(upload.owner, upload.repo, upload.commit_hash, upload.job_name)
    except CheckRunNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except httpx.HTTPError as exc:
        logger.error("Check run lookup for job '%s' failed: %s", upload.job_name, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="GitHub lookup failed.")

    context = UploadContext(
        owner=upload.owner,
        repo=upload.repo,
        commit_hash=upload.commit_hash,
        pull_number=upload.pull_number,
        job_name=upload.job_name,
        run_id=upload.run_id,
        file_sizes=upload.file_sizes,
        blobs=blobs,
    )
    await aggregator.enqueue(suite_id, context)

    return UploadAcceptedResponse(
        message="Publishing procedure started; links are posted once the workflow finishes.",
        check_suite_id=suite_id,
        files=len(blobs),
    )
