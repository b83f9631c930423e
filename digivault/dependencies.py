"""FastAPI providers for the delivery services; tests override these."""

from fastapi import Depends
from sqlalchemy.orm import Session

from digivault.db.session import get_db
from digivault.services.content_store import ContentStore
from digivault.services.delivery import DeliveryOrchestrator
from digivault.services.grants import AccessGrantManager
from digivault.services.licenses import LicenseManager
from digivault.services.notifications import Notifier, get_notifier


def get_content_store(db: Session = Depends(get_db)) -> ContentStore:
    return ContentStore(db)


def get_grant_manager(store: ContentStore = Depends(get_content_store)) -> AccessGrantManager:
    return AccessGrantManager(store.db, store=store)


def get_license_manager(db: Session = Depends(get_db)) -> LicenseManager:
    return LicenseManager(db)


def get_delivery_notifier() -> Notifier:
    return get_notifier()


def get_orchestrator(
    store: ContentStore = Depends(get_content_store),
    grants: AccessGrantManager = Depends(get_grant_manager),
    licenses: LicenseManager = Depends(get_license_manager),
    notifier: Notifier = Depends(get_delivery_notifier),
) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(store.db, grants=grants, licenses=licenses, store=store, notifier=notifier)
