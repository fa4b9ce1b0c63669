"""Payment records: confirmation, decline and the confirmation poll."""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from extensions import db
from models import (
    ADDON_PURPOSE_PREFIX,
    PAYMENT_APPROVED,
    PAYMENT_DECLINED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PURPOSE_SUBSCRIPTION,
    STATUS_ACTIVE,
    Payment,
    TenantAddOn,
)
from services.audit import log_action
from services.errors import ConfigurationError, NotFoundError
from services.gateway_types import GatewayTransaction
from services.gateways import PaymentGatewayClient
from services.subscription_state import SubscriptionStateManager
from utils import period_end_for, safe_int, utc_now

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(self, gateway: PaymentGatewayClient, state: SubscriptionStateManager):
        self.gateway = gateway
        self.state = state

    @staticmethod
    def find_by_id(payment_id: int) -> Optional[Payment]:
        return db.session.get(Payment, payment_id)

    @staticmethod
    def find_by_external_id(*external_ids: Optional[str]) -> Optional[Payment]:
        for external_id in external_ids:
            if not external_id:
                continue
            payment = Payment.query.filter_by(external_id=external_id).first()
            if payment is not None:
                return payment
        return None

    def confirm_payment(self, payment: Payment, now: Optional[datetime.datetime] = None) -> bool:
        """Apply an approved payment according to its purpose.  Does not commit."""
        now = now or utc_now()
        if payment.purpose == PURPOSE_SUBSCRIPTION or not payment.purpose:
            meta = payment.meta
            plan_id = safe_int(meta.get("plan_id"), default=None)
            if plan_id is None:
                raise ConfigurationError(f"Payment {payment.id} carries no plan id")
            return self.state.confirm_payment_approved(
                payment.tenant_id,
                plan_id,
                meta.get("billing_interval", "monthly"),
                payment.external_id,
                now,
            )
        if payment.purpose.startswith(ADDON_PURPOSE_PREFIX):
            return self._activate_addon(payment, now)
        raise ConfigurationError(f"Payment {payment.id} has unknown purpose '{payment.purpose}'")

    def _activate_addon(self, payment: Payment, now: datetime.datetime) -> bool:
        if payment.status == PAYMENT_APPROVED:
            return False
        module_code = payment.purpose[len(ADDON_PURPOSE_PREFIX):]
        interval = payment.meta.get("billing_interval", "monthly")
        addon = TenantAddOn.query.filter_by(
            tenant_id=payment.tenant_id, module_code=module_code
        ).first()
        if addon is None:
            addon = TenantAddOn(tenant_id=payment.tenant_id, module_code=module_code)
            db.session.add(addon)
        addon.payment_id = payment.id
        addon.valid_until = period_end_for(now, interval)
        payment.status = PAYMENT_APPROVED
        db.session.flush()
        log_action(payment.tenant_id, "addon_activated", addon.id,
                   {"module": module_code, "payment_id": payment.id},
                   source="payment", entity_type="addon")
        logger.info("Add-on %s active for tenant %s until %s",
                    module_code, payment.tenant_id, addon.valid_until)
        return True

    def mark_payment(self, payment: Payment, status: str, message: Optional[str] = None) -> bool:
        """Move a payment to DECLINED or REFUNDED.  Does not commit."""
        if payment.status == status:
            return False
        if status == PAYMENT_DECLINED and payment.status != PAYMENT_PENDING:
            logger.info("Payment %s is %s; ignoring decline", payment.id, payment.status)
            return False
        previous = payment.status
        payment.status = status
        if message:
            meta = payment.meta
            meta["message"] = message
            payment.meta = meta
        log_action(payment.tenant_id, "payment_" + status.lower(), payment.id,
                   {"previous_status": previous, "external_id": payment.external_id},
                   source="payment", entity_type="payment")
        db.session.flush()
        logger.info("Payment %s (%s) %s -> %s", payment.id, payment.external_id, previous, status)
        return True

    def apply_transaction(
        self,
        payment: Payment,
        transaction: GatewayTransaction,
        now: Optional[datetime.datetime] = None,
    ) -> bool:
        """Bring a payment in line with the gateway's view of its transaction."""
        if transaction.status == PAYMENT_APPROVED:
            return self.confirm_payment(payment, now)
        if transaction.status in (PAYMENT_DECLINED, PAYMENT_REFUNDED):
            return self.mark_payment(payment, transaction.status, transaction.message)
        return False

    def get_transaction_status(
        self,
        tenant_id: int,
        transaction_id: str,
        now: Optional[datetime.datetime] = None,
    ) -> dict:
        """Payment-confirmation poll: ask the gateway about a PENDING payment.

        Commits; raises NotFoundError for unknown or foreign transactions and
        ExternalGatewayError when the gateway cannot be reached.
        """
        payment = Payment.query.filter_by(tenant_id=tenant_id, external_id=transaction_id).first()
        if payment is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        if payment.status == PAYMENT_PENDING:
            transaction = self.gateway.retrieve_transaction(transaction_id)
            self.apply_transaction(payment, transaction, now)
            db.session.commit()

        activated = False
        if payment.status == PAYMENT_APPROVED:
            if payment.purpose == PURPOSE_SUBSCRIPTION:
                sub = self.state.get_subscription(tenant_id)
                activated = sub is not None and sub.status == STATUS_ACTIVE
            else:
                activated = True
        return {"transaction_id": transaction_id, "status": payment.status, "activated": activated}
