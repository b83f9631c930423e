"""License keys and per-device activations.

Each activated device holds one row in ``license_activations``; the counter
on the license is only moved by conditional updates, so concurrent
activations of distinct devices can never exceed ``activation_limit``.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from digivault.core.clock import utcnow, to_aware_utc
from digivault.core.errors import ActivationLimitError, InvalidLicenseError, NotFoundError, ValidationError
from digivault.models.license import (
    LicenseActivation,
    LicenseKey,
    LICENSE_ACTIVE,
    LICENSE_EXPIRED,
    LICENSE_REVOKED,
)
from digivault.models.product import Product
from digivault.schemas.context import RequestContext
from digivault.schemas.license import ActivationResult, DeviceInfo
from digivault.services.policies import LICENSE_POLICIES, LicensePolicy
from digivault.services.tokens import generate_activation_id, generate_license_key

logger = logging.getLogger(__name__)

_KEY_ATTEMPTS = 10


class LicenseManager:
    def __init__(self, db: Session, policies: Optional[Mapping[str, LicensePolicy]] = None) -> None:
        self.db = db
        self.policies = policies or LICENSE_POLICIES

    def policy_for(self, license_type: str) -> LicensePolicy:
        policy = self.policies.get(license_type)
        if policy is None:
            raise ValidationError(f"Unknown license type: {license_type}")
        return policy

    def issue(
        self,
        product: Product,
        buyer_id: int,
        order_id: int,
        license_type: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> LicenseKey:
        if not product.requires_license:
            raise ValidationError("This product does not require a license key")

        license_type = license_type or product.license_type or "single_use"
        policy = self.policy_for(license_type)
        context = context or RequestContext()
        now = utcnow()

        lic = LicenseKey(
            product_id=product.id,
            buyer_id=buyer_id,
            order_id=order_id,
            license_key=self._unique_key(product),
            type=license_type,
            status=LICENSE_ACTIVE,
            activation_limit=policy.activation_limit,
            activations_used=0,
            expires_at=policy.expires_at(now),
            meta={
                "generated_at": now.isoformat(),
                "generator_ip": context.ip_address,
                "product_version": product.latest_version,
                "audit": [],
            },
        )
        self.db.add(lic)
        self.db.flush()

        logger.info(
            "License key generated: license=%s product=%s buyer=%s type=%s",
            lic.id,
            product.id,
            buyer_id,
            license_type,
        )
        return lic

    def _unique_key(self, product: Product) -> str:
        for _ in range(_KEY_ATTEMPTS):
            key = generate_license_key(product.name)
            if self.db.scalar(select(LicenseKey.id).where(LicenseKey.license_key == key)) is None:
                return key
        raise RuntimeError("Could not generate a unique license key")

    # -- lookups and validation ------------------------------------------

    def get_by_key(self, key: str) -> LicenseKey:
        lic = self.db.scalar(select(LicenseKey).where(LicenseKey.license_key == (key or "").strip().upper()))
        if lic is None:
            raise NotFoundError("License key not found", public_message="License key not found.")
        return lic

    def get(self, license_id: int) -> LicenseKey:
        lic = self.db.get(LicenseKey, license_id)
        if lic is None:
            raise NotFoundError(f"License {license_id} not found", public_message="License key not found.")
        return lic

    @staticmethod
    def invalid_reason(lic: LicenseKey, product_id: Optional[int] = None, now: Optional[datetime] = None) -> Optional[str]:
        now = now or utcnow()
        if product_id is not None and lic.product_id != product_id:
            return "wrong_product"
        if lic.status != LICENSE_ACTIVE:
            return "status_not_active"
        expires_at = to_aware_utc(lic.expires_at)
        if expires_at is not None and now >= expires_at:
            return "expired"
        return None

    def validate(self, key: str, product_id: Optional[int] = None) -> LicenseKey:
        lic = self.get_by_key(key)
        reason = self.invalid_reason(lic, product_id)
        if reason is not None:
            logger.info("License validation failed: license=%s reason=%s", lic.id, reason)
            raise InvalidLicenseError(reason)
        return lic

    # -- activation -------------------------------------------------------

    def activate(self, key: str, device: DeviceInfo, context: Optional[RequestContext] = None) -> ActivationResult:
        """Bind ``device`` to the license; re-activating a known device is free."""
        context = context or RequestContext()
        lic = self.validate(key)
        now = utcnow()

        existing = self.db.scalar(
            select(LicenseActivation).where(
                LicenseActivation.license_id == lic.id,
                LicenseActivation.device_id == device.device_id,
            )
        )
        if existing is not None:
            existing.last_seen_at = now
            existing.activation_count = existing.activation_count + 1
            existing.ip_address = context.ip_address or existing.ip_address
            if device.product_version:
                existing.product_version = device.product_version
            if device.info:
                existing.device_info = {**(existing.device_info or {}), **device.info}
            lic.last_activated_at = now
            self.db.flush()
            logger.info("License re-activated: license=%s device=%s", lic.id, device.device_id)
            return ActivationResult(license=lic, activation_id=existing.activation_id, is_new_activation=False)

        claimed = self.db.execute(
            update(LicenseKey)
            .where(
                LicenseKey.id == lic.id,
                LicenseKey.status == LICENSE_ACTIVE,
                LicenseKey.activations_used < LicenseKey.activation_limit,
            )
            .values(
                activations_used=LicenseKey.activations_used + 1,
                last_activated_at=now,
                first_activated_at=func.coalesce(LicenseKey.first_activated_at, now),
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.db.refresh(lic)
            reason = self.invalid_reason(lic)
            if reason is not None:
                raise InvalidLicenseError(reason)
            logger.warning("License activation limit reached: license=%s device=%s", lic.id, device.device_id)
            raise ActivationLimitError()

        activation = LicenseActivation(
            license_id=lic.id,
            activation_id=generate_activation_id(),
            device_id=device.device_id,
            device_name=device.device_name,
            device_info=dict(device.info or {}),
            ip_address=context.ip_address,
            product_version=device.product_version,
            activation_count=1,
            activated_at=now,
            last_seen_at=now,
        )
        self.db.add(activation)
        self.db.flush()
        self.db.refresh(lic)

        logger.info(
            "License activated: license=%s device=%s used=%s/%s",
            lic.id,
            device.device_id,
            lic.activations_used,
            lic.activation_limit,
        )
        return ActivationResult(license=lic, activation_id=activation.activation_id, is_new_activation=True)

    def deactivate(
        self,
        key: str,
        device_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Free one activation slot.

        With ``device_id`` that device is released; without it the device seen
        least recently is. Returns False when there was nothing to free.
        """
        lic = self.get_by_key(key)

        if device_id is not None:
            target = self.db.scalar(
                select(LicenseActivation).where(
                    LicenseActivation.license_id == lic.id,
                    LicenseActivation.device_id == device_id,
                )
            )
            if target is None:
                raise NotFoundError(
                    f"Device {device_id} holds no activation on license {lic.id}",
                    public_message="License activation not found for this device.",
                )
        else:
            target = self.db.scalar(
                select(LicenseActivation)
                .where(LicenseActivation.license_id == lic.id)
                .order_by(
                    LicenseActivation.last_seen_at,
                    LicenseActivation.activated_at,
                    LicenseActivation.id,
                )
                .limit(1)
            )
            if target is None:
                return False

        removed = self.db.execute(
            delete(LicenseActivation)
            .where(LicenseActivation.id == target.id)
            .execution_options(synchronize_session=False)
        )
        if removed.rowcount != 1:
            return False

        self.db.execute(
            update(LicenseKey)
            .where(LicenseKey.id == lic.id, LicenseKey.activations_used > 0)
            .values(activations_used=LicenseKey.activations_used - 1)
            .execution_options(synchronize_session=False)
        )
        self.db.expunge(target)
        self.db.refresh(lic)
        self._audit(
            lic,
            "deactivated",
            None,
            device_id=target.device_id,
            reason=reason or "Manual deactivation",
        )
        self.db.flush()

        logger.info("License deactivated: license=%s device=%s", lic.id, target.device_id)
        return True

    # -- administration ---------------------------------------------------

    def revoke(self, lic: LicenseKey, reason: Optional[str] = None, actor_id: Optional[int] = None) -> LicenseKey:
        if lic.status == LICENSE_REVOKED:
            return lic
        lic.status = LICENSE_REVOKED
        self._audit(lic, "revoked", actor_id, reason=reason or "License revoked by administrator")
        self.db.flush()
        logger.info("License revoked: license=%s reason=%s", lic.id, reason)
        return lic

    def extend(self, lic: LicenseKey, days: int, actor_id: Optional[int] = None) -> LicenseKey:
        if days <= 0:
            raise ValidationError("Extension must be a positive number of days")
        now = utcnow()
        base = to_aware_utc(lic.expires_at) or now
        lic.expires_at = base + timedelta(days=days)
        if lic.status == LICENSE_EXPIRED and lic.expires_at > now:
            lic.status = LICENSE_ACTIVE
        self._audit(lic, "extended", actor_id, extended_days=days, new_expires_at=lic.expires_at.isoformat())
        self.db.flush()
        logger.info("License extended: license=%s days=%s new_expiry=%s", lic.id, days, lic.expires_at)
        return lic

    def info(self, key: str, context: Optional[RequestContext] = None) -> LicenseKey:
        context = context or RequestContext()
        lic = self.get_by_key(key)
        meta = dict(lic.meta or {})
        meta["last_checked_at"] = utcnow().isoformat()
        meta["last_check_ip"] = context.ip_address
        lic.meta = meta
        self.db.flush()
        return lic

    def _audit(self, lic: LicenseKey, action: str, actor_id: Optional[int], **details: Any) -> None:
        meta = dict(lic.meta or {})
        entry = {"action": action, "at": utcnow().isoformat(), "actor_id": actor_id, **details}
        meta["audit"] = list(meta.get("audit", [])) + [entry]
        lic.meta = meta

    # -- reporting --------------------------------------------------------

    def analytics(self, product_id: Optional[int] = None) -> Dict[str, Any]:
        query = select(
            LicenseKey.status,
            LicenseKey.type,
            LicenseKey.activations_used,
            LicenseKey.activation_limit,
        )
        if product_id is not None:
            query = query.where(LicenseKey.product_id == product_id)
        rows = self.db.execute(query).all()

        total = len(rows)
        total_activations = sum(r.activations_used for r in rows)
        type_distribution: Dict[str, int] = {}
        for r in rows:
            type_distribution[r.type] = type_distribution.get(r.type, 0) + 1

        return {
            "total_licenses": total,
            "active_licenses": sum(1 for r in rows if r.status == LICENSE_ACTIVE),
            "expired_licenses": sum(1 for r in rows if r.status == LICENSE_EXPIRED),
            "revoked_licenses": sum(1 for r in rows if r.status == LICENSE_REVOKED),
            "total_activations": total_activations,
            "average_activations": round(total_activations / total, 2) if total else 0.0,
            "fully_activated": sum(1 for r in rows if r.activations_used >= r.activation_limit),
            "type_distribution": type_distribution,
        }

    def list_for_buyer(self, buyer_id: int, status: Optional[str] = None) -> List[LicenseKey]:
        query = select(LicenseKey).where(LicenseKey.buyer_id == buyer_id)
        if status:
            query = query.where(LicenseKey.status == status)
        return list(self.db.scalars(query.order_by(LicenseKey.id.desc())))

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        result = self.db.execute(
            update(LicenseKey)
            .where(
                LicenseKey.status == LICENSE_ACTIVE,
                LicenseKey.expires_at.is_not(None),
                LicenseKey.expires_at <= now,
            )
            .values(status=LICENSE_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
