"""Bearer-token download grants and the attempts recorded under them.

Validity of a grant is derived at check time from ``status``, ``expires_at``,
the download counter and the caller's IP; the stored ``status`` only changes
on revoke or when the cleanup sweep reconciles lazily expired rows.

Counter changes go through conditional ``UPDATE`` statements so concurrent
completions against the same token can never push ``downloads_used`` past
``download_limit``.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from digivault.core.clock import utcnow, to_aware_utc
from digivault.core.errors import AuthorizationError, InvalidAccessError, NotFoundError, ValidationError
from digivault.models.content import ContentObject
from digivault.models.grant import (
    AccessGrant,
    DownloadAttempt,
    GRANT_ACTIVE,
    GRANT_EXPIRED,
    GRANT_REVOKED,
    ATTEMPT_STARTED,
    ATTEMPT_COMPLETED,
    ATTEMPT_FAILED,
)
from digivault.models.product import Product
from digivault.schemas.context import RequestContext
from digivault.services.content_store import ContentStore
from digivault.services.ip_rules import ip_permitted
from digivault.services.tokens import generate_access_token

logger = logging.getLogger(__name__)

CAPTURED_HEADERS = ("Accept", "Accept-Encoding", "Range", "User-Agent")

REASON_NOT_ACTIVE = "status_not_active"
REASON_EXPIRED = "expired"
REASON_LIMIT = "limit_exceeded"
REASON_IP = "ip_not_permitted"

_TOKEN_ATTEMPTS = 5


class AccessGrantManager:
    def __init__(self, db: Session, store: Optional[ContentStore] = None) -> None:
        self.db = db
        self.store = store or ContentStore(db)

    # -- issuing ----------------------------------------------------------

    def issue(
        self,
        buyer_id: int,
        product: Product,
        order_id: int,
        content_object: Optional[ContentObject] = None,
        context: Optional[RequestContext] = None,
    ) -> AccessGrant:
        if not product.is_digital:
            raise ValidationError("Cannot create download access for non-digital products")
        if content_object is not None and content_object.product_id != product.id:
            raise ValidationError("File does not belong to the granted product")

        context = context or RequestContext()
        now = utcnow()
        grant = AccessGrant(
            buyer_id=buyer_id,
            product_id=product.id,
            order_id=order_id,
            content_object_id=content_object.id if content_object is not None else None,
            token=self._unique_token(),
            download_limit=product.download_limit,
            downloads_used=0,
            expires_at=now + timedelta(days=product.download_window_days),
            status=GRANT_ACTIVE,
            allowed_ips=[],
            meta={
                "created_by_purchase": True,
                "original_ip": context.ip_address,
                "user_agent": context.user_agent,
                "audit": [],
            },
        )
        self.db.add(grant)
        self.db.flush()

        logger.info(
            "Download access created: grant=%s buyer=%s product=%s order=%s expires_at=%s",
            grant.id,
            buyer_id,
            product.id,
            order_id,
            grant.expires_at.isoformat(),
        )
        return grant

    def _unique_token(self) -> str:
        for _ in range(_TOKEN_ATTEMPTS):
            token = generate_access_token()
            if self.db.scalar(select(AccessGrant.id).where(AccessGrant.token == token)) is None:
                return token
        raise RuntimeError("Could not generate a unique download token")

    # -- validation -------------------------------------------------------

    def get_by_token(self, token: str) -> AccessGrant:
        grant = self.db.scalar(select(AccessGrant).where(AccessGrant.token == token))
        if grant is None:
            raise NotFoundError("Invalid download token", public_message="Download link not found.")
        return grant

    def get(self, grant_id: int) -> AccessGrant:
        grant = self.db.get(AccessGrant, grant_id)
        if grant is None:
            raise NotFoundError(f"Grant {grant_id} not found", public_message="Download access not found")
        return grant

    @staticmethod
    def invalid_reason(grant: AccessGrant, ip_address: Optional[str] = None, now: Optional[datetime] = None) -> Optional[str]:
        now = now or utcnow()
        if grant.status != GRANT_ACTIVE:
            return REASON_NOT_ACTIVE
        if now >= to_aware_utc(grant.expires_at):
            return REASON_EXPIRED
        if grant.downloads_used >= grant.download_limit:
            return REASON_LIMIT
        if not ip_permitted(ip_address, grant.allowed_ips):
            return REASON_IP
        return None

    def is_valid(self, grant: AccessGrant, ip_address: Optional[str] = None) -> bool:
        return self.invalid_reason(grant, ip_address) is None

    def validate(self, token: str, context: Optional[RequestContext] = None) -> AccessGrant:
        context = context or RequestContext()
        grant = self.get_by_token(token)
        reason = self.invalid_reason(grant, context.ip_address)
        if reason is not None:
            logger.warning(
                "Download access rejected: grant=%s reason=%s ip=%s",
                grant.id,
                reason,
                context.ip_address,
            )
            raise InvalidAccessError(reason)
        return grant

    def resolve_file(self, grant: AccessGrant, file_id: Optional[int] = None) -> ContentObject:
        """Pick the file a download should serve, honouring single-file scope."""
        if grant.content_object_id is not None:
            if file_id is not None and file_id != grant.content_object_id:
                raise AuthorizationError(
                    f"Grant {grant.id} is scoped to file {grant.content_object_id}, not {file_id}",
                    public_message="You do not have access to this file.",
                )
            file_id = grant.content_object_id

        if file_id is not None:
            obj = self.db.get(ContentObject, file_id)
            if obj is None or obj.product_id != grant.product_id or not self.store.is_available(obj):
                raise NotFoundError(f"File {file_id} not available for grant {grant.id}", public_message="File not found")
        else:
            files = self.store.deliverable_files(grant.product_id)
            if not files:
                raise NotFoundError("No downloadable files available for this product.")
            obj = files[0]

        if obj.download_limit is not None and obj.download_count >= obj.download_limit:
            raise InvalidAccessError(REASON_LIMIT, f"Per-file download limit reached for file {obj.id}")
        return obj

    # -- attempts ---------------------------------------------------------

    def begin_attempt(
        self,
        grant: AccessGrant,
        file: ContentObject,
        context: Optional[RequestContext] = None,
    ) -> DownloadAttempt:
        context = context or RequestContext()
        attempt = DownloadAttempt(
            grant_id=grant.id,
            content_object_id=file.id,
            buyer_id=grant.buyer_id,
            ip_address=context.ip_address,
            user_agent=(context.user_agent or "")[:500] or None,
            status=ATTEMPT_STARTED,
            bytes_transferred=0,
            total_size=file.file_size,
            headers={name: context.headers.get(name) for name in CAPTURED_HEADERS},
            started_at=utcnow(),
        )
        self.db.add(attempt)
        self.db.flush()

        logger.info(
            "Download attempt started: attempt=%s grant=%s file=%s ip=%s range=%s",
            attempt.id,
            grant.id,
            file.id,
            context.ip_address,
            attempt.headers.get("Range"),
        )
        return attempt

    def get_attempt(self, grant: AccessGrant, attempt_id: int) -> DownloadAttempt:
        attempt = self.db.get(DownloadAttempt, attempt_id)
        if attempt is None or attempt.grant_id != grant.id:
            raise NotFoundError(f"Attempt {attempt_id} not found for grant {grant.id}")
        return attempt

    def record_progress(self, attempt: DownloadAttempt, bytes_transferred: int) -> DownloadAttempt:
        if attempt.status != ATTEMPT_STARTED:
            raise ValidationError(f"Download attempt {attempt.id} is already {attempt.status}")
        attempt.bytes_transferred = max(0, bytes_transferred)
        self.db.flush()
        return attempt

    def complete_attempt(
        self,
        grant: AccessGrant,
        attempt: DownloadAttempt,
        bytes_transferred: Optional[int] = None,
    ) -> AccessGrant:
        """Finish an attempt and count it against the grant, at most once and never past the limit.

        Every completed attempt is charged, including a byte range. A per-file cap is
        enforced with the same conditional update as the grant limit.
        """
        now = utcnow()
        duration = max((now - to_aware_utc(attempt.started_at)).total_seconds(), 0.0)
        if bytes_transferred is None:
            bytes_transferred = attempt.bytes_transferred or attempt.total_size
        speed = round(bytes_transferred / 1024 / duration, 2) if duration > 0 else None

        finished = self.db.execute(
            update(DownloadAttempt)
            .where(DownloadAttempt.id == attempt.id, DownloadAttempt.status == ATTEMPT_STARTED)
            .values(
                status=ATTEMPT_COMPLETED,
                finished_at=now,
                bytes_transferred=bytes_transferred,
                duration_seconds=round(duration, 3),
                speed_kbps=speed,
            )
            .execution_options(synchronize_session=False)
        )
        if finished.rowcount != 1:
            self.db.refresh(attempt)
            raise ValidationError(f"Download attempt {attempt.id} is already {attempt.status}")

        if attempt.content_object_id is not None:
            file_counted = self.db.execute(
                update(ContentObject)
                .where(
                    ContentObject.id == attempt.content_object_id,
                    ContentObject.download_limit.is_(None)
                    | (ContentObject.download_count < ContentObject.download_limit),
                )
                .values(download_count=ContentObject.download_count + 1)
                .execution_options(synchronize_session=False)
            )
            if file_counted.rowcount != 1:
                self._reject_attempt(grant, attempt, REASON_LIMIT)

        counted = self.db.execute(
            update(AccessGrant)
            .where(
                AccessGrant.id == grant.id,
                AccessGrant.status == GRANT_ACTIVE,
                AccessGrant.downloads_used < AccessGrant.download_limit,
            )
            .values(
                downloads_used=AccessGrant.downloads_used + 1,
                last_downloaded_at=now,
                first_downloaded_at=func.coalesce(AccessGrant.first_downloaded_at, now),
            )
            .execution_options(synchronize_session=False)
        )
        if counted.rowcount != 1:
            if attempt.content_object_id is not None:
                # give back the file slot claimed above
                self.db.execute(
                    update(ContentObject)
                    .where(ContentObject.id == attempt.content_object_id)
                    .values(download_count=ContentObject.download_count - 1)
                    .execution_options(synchronize_session=False)
                )
            self.db.refresh(grant)
            reason = REASON_NOT_ACTIVE if grant.status != GRANT_ACTIVE else REASON_LIMIT
            self._reject_attempt(grant, attempt, reason)

        self.db.refresh(grant)
        self.db.refresh(attempt)
        logger.info(
            "Download completed: attempt=%s grant=%s remaining=%s",
            attempt.id,
            grant.id,
            grant.remaining_downloads,
        )
        return grant

    def _reject_attempt(self, grant: AccessGrant, attempt: DownloadAttempt, reason: str) -> None:
        self.db.execute(
            update(DownloadAttempt)
            .where(DownloadAttempt.id == attempt.id)
            .values(status=ATTEMPT_FAILED, failure_reason=reason)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(attempt)
        logger.warning("Download completion rejected: attempt=%s grant=%s reason=%s", attempt.id, grant.id, reason)
        raise InvalidAccessError(reason, f"Grant {grant.id} could not record download: {reason}")

    def fail_attempt(self, attempt: DownloadAttempt, reason: str) -> bool:
        """Mark a started attempt failed. Returns False if it had already finished."""
        now = utcnow()
        duration = max((now - to_aware_utc(attempt.started_at)).total_seconds(), 0.0)
        result = self.db.execute(
            update(DownloadAttempt)
            .where(DownloadAttempt.id == attempt.id, DownloadAttempt.status == ATTEMPT_STARTED)
            .values(status=ATTEMPT_FAILED, failure_reason=reason, finished_at=now, duration_seconds=round(duration, 3))
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(attempt)
        if result.rowcount != 1:
            return False

        logger.warning(
            "Download failed: attempt=%s reason=%s bytes=%s",
            attempt.id,
            reason,
            attempt.bytes_transferred,
        )
        return True

    # -- administration ---------------------------------------------------

    def revoke(self, grant: AccessGrant, reason: Optional[str] = None, actor_id: Optional[int] = None) -> AccessGrant:
        if grant.status == GRANT_REVOKED:
            return grant
        reason = reason or "Access revoked by administrator"
        grant.status = GRANT_REVOKED
        self._audit(grant, "revoked", actor_id, revoked_reason=reason)
        self.db.flush()
        logger.info("Download access revoked: grant=%s reason=%s", grant.id, reason)
        return grant

    def extend_expiry(self, grant: AccessGrant, days: int, actor_id: Optional[int] = None) -> AccessGrant:
        if days <= 0:
            raise ValidationError("Extension must be a positive number of days")
        grant.expires_at = to_aware_utc(grant.expires_at) + timedelta(days=days)
        # a swept grant comes back once its new expiry is in the future
        if grant.status == GRANT_EXPIRED and grant.expires_at > utcnow():
            grant.status = GRANT_ACTIVE
        self._audit(grant, "extended", actor_id, extended_days=days, new_expires_at=grant.expires_at.isoformat())
        self.db.flush()
        logger.info("Download access extended: grant=%s days=%s new_expiry=%s", grant.id, days, grant.expires_at)
        return grant

    def increase_limit(self, grant: AccessGrant, extra_downloads: int, actor_id: Optional[int] = None) -> AccessGrant:
        if extra_downloads <= 0:
            raise ValidationError("Limit increase must be positive")
        self.db.execute(
            update(AccessGrant)
            .where(AccessGrant.id == grant.id)
            .values(download_limit=AccessGrant.download_limit + extra_downloads)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(grant)
        self._audit(grant, "limit_increased", actor_id, additional_downloads=extra_downloads, new_limit=grant.download_limit)
        self.db.flush()
        logger.info("Download limit increased: grant=%s extra=%s new_limit=%s", grant.id, extra_downloads, grant.download_limit)
        return grant

    def add_allowed_ip(self, grant: AccessGrant, pattern: str, actor_id: Optional[int] = None) -> AccessGrant:
        allowed = list(grant.allowed_ips or [])
        if pattern not in allowed:
            allowed.append(pattern)
            grant.allowed_ips = allowed
            self._audit(grant, "ip_allowed", actor_id, ip=pattern)
            self.db.flush()
        return grant

    def remove_allowed_ip(self, grant: AccessGrant, pattern: str, actor_id: Optional[int] = None) -> AccessGrant:
        allowed = [ip for ip in (grant.allowed_ips or []) if ip != pattern]
        if len(allowed) != len(grant.allowed_ips or []):
            grant.allowed_ips = allowed
            self._audit(grant, "ip_removed", actor_id, ip=pattern)
            self.db.flush()
        return grant

    def _audit(self, grant: AccessGrant, action: str, actor_id: Optional[int], **details: Any) -> None:
        meta = dict(grant.meta or {})
        entry = {"action": action, "at": utcnow().isoformat(), "actor_id": actor_id, **details}
        meta["audit"] = list(meta.get("audit", [])) + [entry]
        if action == "revoked":
            meta["revoked_at"] = entry["at"]
            meta["revoked_reason"] = details.get("revoked_reason")
        # reassign so the JSON column is flagged dirty
        grant.meta = meta

    # -- reporting --------------------------------------------------------

    def analytics(self, grant: AccessGrant) -> Dict[str, Any]:
        attempts = list(grant.attempts)
        completed = [a for a in attempts if a.status == ATTEMPT_COMPLETED]
        failed = [a for a in attempts if a.status == ATTEMPT_FAILED]
        total_bytes = sum(a.bytes_transferred or 0 for a in completed)
        speeds = [a.speed_kbps for a in completed if a.speed_kbps is not None]
        durations = [a.duration_seconds for a in completed if a.duration_seconds is not None]
        expires_at = to_aware_utc(grant.expires_at)

        return {
            "total_attempts": len(attempts),
            "completed_attempts": len(completed),
            "failed_attempts": len(failed),
            "success_rate": round(len(completed) / len(attempts) * 100, 2) if attempts else 0.0,
            "total_bytes_downloaded": total_bytes,
            "total_mb_downloaded": round(total_bytes / 1024 / 1024, 2),
            "average_speed_kbps": round(sum(speeds) / len(speeds), 2) if speeds else None,
            "average_duration_seconds": round(sum(durations) / len(durations), 2) if durations else None,
            "unique_ips": len({a.ip_address for a in attempts if a.ip_address}),
            "first_download": to_aware_utc(grant.first_downloaded_at),
            "last_download": to_aware_utc(grant.last_downloaded_at),
            "downloads_remaining": grant.remaining_downloads,
            "expires_at": expires_at,
            "is_expired": utcnow() >= expires_at,
        }

    def list_for_buyer(self, buyer_id: int, status: Optional[str] = None) -> List[AccessGrant]:
        query = select(AccessGrant).where(AccessGrant.buyer_id == buyer_id)
        if status:
            query = query.where(AccessGrant.status == status)
        return list(self.db.scalars(query.order_by(AccessGrant.id.desc())))

    def history(
        self,
        buyer_id: int,
        status: Optional[str] = None,
        product_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[DownloadAttempt]:
        query = select(DownloadAttempt).where(DownloadAttempt.buyer_id == buyer_id)
        if status:
            query = query.where(DownloadAttempt.status == status)
        if product_id is not None:
            query = query.join(AccessGrant, AccessGrant.id == DownloadAttempt.grant_id).where(
                AccessGrant.product_id == product_id
            )
        query = query.order_by(DownloadAttempt.started_at.desc(), DownloadAttempt.id.desc())
        return list(self.db.scalars(query.offset(offset).limit(limit)))

    def product_stats(self, product_id: Optional[int] = None) -> Dict[str, Any]:
        query = select(AccessGrant.status, AccessGrant.downloads_used, AccessGrant.download_limit)
        if product_id is not None:
            query = query.where(AccessGrant.product_id == product_id)
        rows = self.db.execute(query).all()

        total = len(rows)
        total_downloads = sum(r.downloads_used for r in rows)
        fully_used = sum(1 for r in rows if r.downloads_used >= r.download_limit)
        return {
            "total": total,
            "active": sum(1 for r in rows if r.status == GRANT_ACTIVE),
            "expired": sum(1 for r in rows if r.status == GRANT_EXPIRED),
            "revoked": sum(1 for r in rows if r.status == GRANT_REVOKED),
            "total_downloads": total_downloads,
            "average_per_grant": round(total_downloads / total, 2) if total else 0.0,
            "fully_used": fully_used,
            "utilization_rate": round(fully_used / total * 100, 2) if total else 0.0,
        }

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        result = self.db.execute(
            update(AccessGrant)
            .where(AccessGrant.status == GRANT_ACTIVE, AccessGrant.expires_at <= now)
            .values(status=GRANT_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
