"""Public download endpoints. The token in the path is the only credential."""

import asyncio
import logging
from typing import Iterator, Optional
from urllib.parse import quote

import anyio
from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from digivault.core.errors import DeliveryError, InvalidAccessError
from digivault.core.settings import settings
from digivault.db.session import SessionLocal
from digivault.dependencies import get_grant_manager
from digivault.models.grant import ATTEMPT_COMPLETED, ATTEMPT_FAILED
from digivault.schemas.context import RequestContext
from digivault.schemas.grant import DownloadFileInfo, DownloadInfoOut, ProgressOut, ProgressRequest
from digivault.security.deps import get_request_context
from digivault.services.content_store import ContentStore, FilesystemBackend, format_bytes
from digivault.services.grants import AccessGrantManager
from digivault.services.ranges import RangeNotSatisfiable, parse_range

logger = logging.getLogger(__name__)

router = APIRouter()


def _finish_attempt(
    grant_id: int,
    attempt_id: int,
    backend: FilesystemBackend,
    outcome: str,
    reason: Optional[str],
    sent: int,
) -> None:
    # the request session is gone by the time the body has been streamed
    db = SessionLocal()
    try:
        grants = AccessGrantManager(db, store=ContentStore(db, backend=backend))
        grant = grants.get(grant_id)
        attempt = grants.get_attempt(grant, attempt_id)
        if outcome == ATTEMPT_COMPLETED:
            try:
                grants.complete_attempt(grant, attempt, bytes_transferred=sent)
            except DeliveryError as e:
                logger.warning("Streamed download not counted: attempt=%s: %s", attempt_id, e.message)
        else:
            grants.record_progress(attempt, sent)
            grants.fail_attempt(attempt, reason or "unknown")
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Could not record outcome of download attempt=%s", attempt_id)
    finally:
        db.close()


async def _stream(
    chunks: Iterator[bytes],
    grant_id: int,
    attempt_id: int,
    backend: FilesystemBackend,
    expected: int,
):
    sent = 0
    outcome, reason = ATTEMPT_FAILED, "client_disconnected"
    timed_out = False
    try:
        while True:
            try:
                chunk = await asyncio.wait_for(
                    run_in_threadpool(next, chunks, None),
                    timeout=settings.download_read_timeout_seconds,
                )
            except asyncio.TimeoutError:
                timed_out = True
                reason = "read_timeout"
                break
            if chunk is None:
                break
            yield chunk
            sent += len(chunk)

        if not timed_out:
            if sent >= expected:
                outcome, reason = ATTEMPT_COMPLETED, None
            else:
                reason = "incomplete_read"
    except OSError as e:
        reason = f"read_error: {e}"
    finally:
        # a timed out read may still be running in its worker thread
        if not timed_out:
            chunks.close()
        # a disconnect cancels the response task; the outcome is still recorded
        with anyio.CancelScope(shield=True):
            await run_in_threadpool(_finish_attempt, grant_id, attempt_id, backend, outcome, reason, sent)


@router.get("/{token}")
def download(
    token: str,
    file_id: Optional[int] = None,
    range_header: Optional[str] = Header(default=None, alias="Range"),
    context: RequestContext = Depends(get_request_context),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> StreamingResponse:
    db = grants.db
    grant = grants.validate(token, context)
    file = grants.resolve_file(grant, file_id)

    try:
        byte_range = parse_range(range_header, file.file_size)
    except RangeNotSatisfiable as e:
        raise HTTPException(
            status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
            detail="Requested range not satisfiable",
            headers={"Content-Range": f"bytes */{e.size}"},
        )
    start, end = byte_range or (0, file.file_size - 1)

    chunks = grants.store.retrieve_stream(file, start, end)
    attempt = grants.begin_attempt(grant, file, context)
    db.commit()

    headers = {
        "Content-Disposition": f"attachment; filename*=UTF-8''{quote(file.original_filename)}",
        "Content-Length": str(end - start + 1),
        "Accept-Ranges": "bytes",
        "Cache-Control": "private, no-store",
        "X-Content-Type-Options": "nosniff",
        "X-Download-Attempt": str(attempt.id),
    }
    status_code = status.HTTP_200_OK
    if byte_range is not None:
        status_code = status.HTTP_206_PARTIAL_CONTENT
        headers["Content-Range"] = f"bytes {start}-{end}/{file.file_size}"

    body = _stream(
        chunks,
        grant.id,
        attempt.id,
        grants.store.backend,
        expected=end - start + 1,
    )
    return StreamingResponse(body, status_code=status_code, media_type=file.mime_type, headers=headers)


@router.get("/{token}/info", response_model=DownloadInfoOut)
def download_info(
    token: str,
    file_id: Optional[int] = None,
    context: RequestContext = Depends(get_request_context),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> DownloadInfoOut:
    grant = grants.validate(token, context)
    file = grants.resolve_file(grant, file_id)
    return DownloadInfoOut(
        file=DownloadFileInfo(
            id=file.id,
            name=file.name,
            size=format_bytes(file.file_size),
            mime_type=file.mime_type,
            version=file.version,
            description=file.description,
        ),
        downloads_remaining=grant.remaining_downloads,
        expires_at=grant.expires_at,
        status=grant.status,
    )


@router.post("/{token}/attempts/{attempt_id}/progress", response_model=ProgressOut)
def report_progress(
    token: str,
    attempt_id: int,
    payload: ProgressRequest,
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> ProgressOut:
    db = grants.db
    grant = grants.get_by_token(token)
    attempt = grants.get_attempt(grant, attempt_id)

    if payload.status == "completed":
        try:
            grants.complete_attempt(grant, attempt, bytes_transferred=payload.bytes_transferred)
        except InvalidAccessError:
            # keep the attempt marked failed
            db.commit()
            raise
    elif payload.status == "failed":
        grants.record_progress(attempt, payload.bytes_transferred)
        grants.fail_attempt(attempt, payload.error_message or "client_reported_failure")
    else:
        grants.record_progress(attempt, payload.bytes_transferred)
    db.commit()

    total = attempt.total_size or 0
    return ProgressOut(
        attempt_id=attempt.id,
        status=attempt.status,
        bytes_transferred=attempt.bytes_transferred,
        total_size=total,
        progress_percentage=round(attempt.bytes_transferred / total * 100, 2) if total else 0.0,
    )
