from fastapi import APIRouter, Depends

from digivault.dependencies import get_orchestrator
from digivault.models.user import User
from digivault.schemas.order import (
    CleanupOut,
    FulfillmentReportOut,
    ItemFailureOut,
    ItemSuccessOut,
    OrderIn,
)
from digivault.security.deps import require_admin
from digivault.services.delivery import DeliveryOrchestrator


router = APIRouter()


@router.post("/orders/fulfill", response_model=FulfillmentReportOut)
def fulfill_order(
    order: OrderIn,
    _: User = Depends(require_admin),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> FulfillmentReportOut:
    report = orchestrator.fulfill(order)
    return FulfillmentReportOut(
        order_id=report.order_id,
        success_count=report.success_count,
        error_count=report.error_count,
        successes=[
            ItemSuccessOut(
                product_id=s.product_id,
                product_name=s.product_name,
                quantity=s.quantity,
                grant_tokens=[g.token for g in s.grants],
                license_keys=[lic.license_key for lic in s.licenses],
                delivered=s.delivered,
            )
            for s in report.successes
        ],
        failures=[ItemFailureOut(**vars(f)) for f in report.failures],
        notification_failures=[ItemFailureOut(**vars(f)) for f in report.notification_failures],
    )


@router.post("/maintenance/cleanup", response_model=CleanupOut)
def run_cleanup(
    _: User = Depends(require_admin),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> CleanupOut:
    return CleanupOut(**orchestrator.cleanup_expired())
