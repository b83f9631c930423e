"""Order fulfilment: turn a confirmed order into grants, licenses and notifications.

Each line item runs inside its own savepoint of one outer transaction, so a
failing item rolls back only its own grants and keys while the rest of the
order is still committed. Notifications go out after the commit.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from digivault.core.clock import utcnow, to_aware_utc
from digivault.core.settings import settings
from digivault.models.product import Product
from digivault.schemas.order import FulfillmentReport, ItemFailure, ItemSuccess, LineItemIn, OrderIn
from digivault.services.content_store import ContentStore, format_bytes
from digivault.services.grants import AccessGrantManager
from digivault.services.licenses import LicenseManager
from digivault.services.notifications import Notifier, get_notifier

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = to_aware_utc(value)
    return value.isoformat() if value is not None else None


class DeliveryOrchestrator:
    def __init__(
        self,
        db: Session,
        grants: Optional[AccessGrantManager] = None,
        licenses: Optional[LicenseManager] = None,
        store: Optional[ContentStore] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.db = db
        self.store = store or ContentStore(db)
        self.grants = grants or AccessGrantManager(db, store=self.store)
        self.licenses = licenses or LicenseManager(db)
        self.notifier = notifier or get_notifier()

    def fulfill(self, order: OrderIn) -> FulfillmentReport:
        report = FulfillmentReport(order_id=order.id)
        logger.info("Fulfilling order=%s items=%s buyer=%s", order.id, len(order.items), order.buyer.id)

        try:
            for item in order.items:
                product = self.db.get(Product, item.product_id)
                if product is not None and not product.is_digital:
                    continue
                outcome = self._fulfill_item(order, item, product)
                if isinstance(outcome, ItemFailure):
                    report.failures.append(outcome)
                else:
                    report.successes.append(outcome)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Fulfilment of order=%s aborted", order.id)
            raise

        self._notify(order, report)

        logger.info(
            "Order fulfilled: order=%s successes=%s failures=%s notification_failures=%s",
            order.id,
            report.success_count,
            report.error_count,
            len(report.notification_failures),
        )
        return report

    def _fulfill_item(
        self,
        order: OrderIn,
        item: LineItemIn,
        product: Optional[Product],
    ) -> Union[ItemSuccess, ItemFailure]:
        if product is None:
            logger.error("Order=%s references unknown product=%s", order.id, item.product_id)
            return ItemFailure(product_id=item.product_id, product_name=None, error="Product not found")

        savepoint = self.db.begin_nested()
        try:
            grants = []
            licenses = []
            for _ in range(item.quantity):
                grants.append(self.grants.issue(order.buyer.id, product, order.id))
                if product.requires_license:
                    licenses.append(self.licenses.issue(product, order.buyer.id, order.id))
            savepoint.commit()
        except Exception as e:
            # isolate the item: its grants and keys go, the rest of the order stays
            savepoint.rollback()
            logger.error("Fulfilment failed: order=%s product=%s error=%s", order.id, product.id, e)
            return ItemFailure(product_id=product.id, product_name=product.name, error=str(e))

        return ItemSuccess(
            product_id=product.id,
            product_name=product.name,
            quantity=item.quantity,
            grants=grants,
            licenses=licenses,
            requires_license=product.requires_license,
            auto_delivery=product.auto_delivery,
        )

    def _notify(self, order: OrderIn, report: FulfillmentReport) -> None:
        for success in report.successes:
            if not success.auto_delivery:
                continue
            product = self.db.get(Product, success.product_id)
            try:
                self.notifier.send(order.buyer.email, self.build_payload(order, product, success))
            except Exception as e:
                logger.error(
                    "Delivery notification failed: order=%s product=%s error=%s",
                    order.id,
                    success.product_id,
                    e,
                )
                report.notification_failures.append(
                    ItemFailure(product_id=success.product_id, product_name=success.product_name, error=str(e))
                )
            else:
                success.delivered = True
        # release the read transaction opened by the lookups above
        self.db.commit()

    def build_payload(self, order: OrderIn, product: Product, success: ItemSuccess) -> Dict[str, Any]:
        base_url = settings.public_base_url.rstrip("/")
        files = self.store.deliverable_files(product.id)
        return {
            "buyer": {"id": order.buyer.id, "name": order.buyer.name, "email": order.buyer.email},
            "order": {
                "id": order.id,
                "total_formatted": order.total_formatted,
                "placed_at": order.placed_at,
            },
            "product": {
                "id": product.id,
                "name": product.name,
                "description": product.description,
                "type": "Software License" if product.requires_license else "Digital Download",
                "requires_license": product.requires_license,
            },
            "grants": [
                {
                    "token": g.token,
                    "download_url": f"{base_url}/downloads/{g.token}",
                    "download_limit": g.download_limit,
                    "expires_at": _iso(g.expires_at),
                }
                for g in success.grants
            ],
            "licenses": [
                {
                    "license_key": lic.license_key,
                    "type": self.licenses.policy_for(lic.type).label,
                    "activation_limit": lic.activation_limit,
                    "expires_at": _iso(lic.expires_at),
                }
                for lic in success.licenses
            ],
            "files": [
                {
                    "name": f.name,
                    "size": format_bytes(f.file_size),
                    "version": f.version,
                    "description": f.description,
                    "is_primary": f.is_primary,
                }
                for f in files
            ],
        }

    def cleanup_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Reconcile stored status with lazily computed expiry."""
        now = now or utcnow()
        try:
            expired_grants = self.grants.expire_stale(now)
            expired_licenses = self.licenses.expire_stale(now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Cleanup complete: expired_grants=%s expired_licenses=%s", expired_grants, expired_licenses)
        return {"expired_grants": expired_grants, "expired_licenses": expired_licenses}
