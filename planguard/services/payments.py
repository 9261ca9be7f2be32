"""Payment gateway contract and purchase completion.

Gateways (eSewa, Khalti, Fonepay, ...) are thin HTTP clients living
outside this package; they only need to satisfy PaymentGateway. The
entitlement side consumes nothing but a verified purchase, which
attaches the bought plan to the organization.
"""

import time
import uuid
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode

import structlog
from pydantic import BaseModel

from planguard.core.exceptions import CatalogError
from planguard.db.models.organization_plan import OrganizationPlan
from planguard.services.plans import PlanService

logger = structlog.get_logger(__name__)

COMPLETED = "completed"


class PaymentInitiation(BaseModel):
    success: bool
    payment_url: str | None = None
    transaction_id: str | None = None
    error: str | None = None


class PaymentVerification(BaseModel):
    success: bool
    status: str | None = None
    transaction_id: str | None = None
    amount: float | None = None
    error: str | None = None


@runtime_checkable
class PaymentGateway(Protocol):
    async def initiate_payment(self, data: dict[str, Any]) -> PaymentInitiation: ...

    async def verify_payment(
        self, transaction_id: str, extra: dict[str, Any] | None = None
    ) -> PaymentVerification: ...

    async def get_payment_status(self, transaction_id: str) -> str: ...

    async def refund_payment(self, transaction_id: str, amount: float) -> bool: ...


class MockGateway:
    """Gateway for development and tests: every payment succeeds."""

    def __init__(self, frontend_url: str = "http://localhost:3000"):
        self.frontend_url = frontend_url.rstrip("/")

    async def initiate_payment(self, data: dict[str, Any]) -> PaymentInitiation:
        transaction_id = f"MOCK_{uuid.uuid4().hex[:13]}_{int(time.time())}"
        query = urlencode({
            "payment_uuid": data.get("order_id", ""),
            "transaction_id": transaction_id,
            "amount": data.get("amount", 0),
            "status": "success",
        })
        return PaymentInitiation(
            success=True,
            payment_url=f"{self.frontend_url}/payment/success?{query}",
            transaction_id=transaction_id,
        )

    async def verify_payment(
        self, transaction_id: str, extra: dict[str, Any] | None = None
    ) -> PaymentVerification:
        extra = extra or {}
        amount = extra.get("amount", extra.get("amt", 0))
        return PaymentVerification(
            success=True,
            status=COMPLETED,
            transaction_id=transaction_id,
            amount=float(amount),
        )

    async def get_payment_status(self, transaction_id: str) -> str:
        return COMPLETED

    async def refund_payment(self, transaction_id: str, amount: float) -> bool:
        return True


async def complete_purchase(
    gateway: PaymentGateway,
    plans: PlanService,
    organization_id: int,
    plan_slug: str,
    transaction_id: str,
    extra: dict[str, Any] | None = None,
) -> OrganizationPlan | None:
    """Verify a payment and attach the purchased plan.

    Returns the new organization plan, or None when verification failed
    or the plan could not be attached.
    """
    log = logger.bind(organization_id=organization_id, plan_slug=plan_slug, transaction_id=transaction_id)

    verification = await gateway.verify_payment(transaction_id, extra)
    if not verification.success or verification.status != COMPLETED:
        log.warning("payment_verification_failed", status=verification.status, error=verification.error)
        return None

    try:
        organization_plan = await plans.attach_plan(
            organization_id,
            plan_slug,
            notes=f"Purchased via transaction {transaction_id}",
        )
    except CatalogError as e:
        log.error("purchase_plan_unknown", error=str(e))
        return None

    log.info("purchase_completed", amount=verification.amount)
    return organization_plan
