"""Drift detection and repair between the billing tables and the gateway.

Every job takes an injected ``now``, is safe to re-run, and processes each
item in its own transaction so one failure never stops the batch.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, or_

from config_models import BillingConfig
from extensions import db
from models import (
    PAYMENT_APPROVED,
    PAYMENT_PENDING,
    STATUS_ACTIVE,
    STATUS_PENDING_PAYMENT,
    Payment,
    ProcessedEvent,
    TenantSubscription,
)
from services.alerts import SEVERITY_CRITICAL, SEVERITY_WARNING, Alert, AlertService
from services.audit import log_action
from services.errors import ConfigurationError, ConflictError, ExternalGatewayError
from services.gateway_types import EventType, GatewayInvoice
from services.gateways import STRIPE_EVENT_TYPES, PaymentGatewayClient
from services.payments import PaymentService
from services.subscription_state import ScheduledChangesResult, SubscriptionStateManager
from services.webhooks import commit_with_ledger, record_processed_event
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)

RECONCILE_EVENT_PREFIX = "reconcile:"

# Ledger event types that mean an invoice was paid; failures do not count.
PAID_EVENT_TYPES = frozenset(
    [EventType.PAYMENT_SUCCEEDED.value]
    + [raw for raw, kind in STRIPE_EVENT_TYPES.items() if kind == EventType.PAYMENT_SUCCEEDED]
)


@dataclass
class SyncResult:
    checked: int = 0
    synced: int = 0
    errors: int = 0


@dataclass
class PaidInvoicesResult:
    checked: int = 0
    paid_not_recognized: int = 0
    activated: int = 0
    errors: int = 0


@dataclass
class OpenInvoicesResult:
    checked: int = 0
    open_invoices: int = 0
    updated: int = 0
    alerts_sent: int = 0
    errors: int = 0


@dataclass
class PendingPaymentsResult:
    checked: int = 0
    confirmed: int = 0
    closed: int = 0
    still_pending: int = 0
    alerts_sent: int = 0
    errors: int = 0


class ReconciliationEngine:
    def __init__(
        self,
        gateway: PaymentGatewayClient,
        state: SubscriptionStateManager,
        payments: PaymentService,
        alerts: AlertService,
        config: BillingConfig,
    ):
        self.gateway = gateway
        self.state = state
        self.payments = payments
        self.alerts = alerts
        self.config = config

    # ------------------------------------------------------------------
    # Flagged subscriptions
    # ------------------------------------------------------------------

    def sync_flagged_subscriptions(self, now: Optional[datetime.datetime] = None) -> SyncResult:
        """Overwrite flagged subscriptions with the gateway's state."""
        now = now or utc_now()
        result = SyncResult()
        flagged = [
            row.id
            for row in db.session.query(TenantSubscription.id)
            .filter(TenantSubscription.needs_external_sync.is_(True))
            .order_by(TenantSubscription.id)
            .all()
        ]
        db.session.rollback()
        for sub_id in flagged:
            result.checked += 1
            try:
                if self._sync_one(sub_id):
                    result.synced += 1
                else:
                    result.errors += 1
            except Exception:
                db.session.rollback()
                result.errors += 1
                logger.exception("Sync of subscription %s failed", sub_id)
        if result.checked:
            logger.info("Flagged sync: %s checked, %s synced, %s errors",
                        result.checked, result.synced, result.errors)
        return result

    def _sync_one(self, sub_id: int) -> bool:
        sub = TenantSubscription.query.filter_by(id=sub_id).with_for_update().first()
        if sub is None or not sub.needs_external_sync:
            db.session.rollback()
            return True
        if not sub.external_subscription_id:
            sub.needs_external_sync = False
            sub.last_sync_error = None
            db.session.commit()
            logger.info("Subscription of tenant %s has no gateway id; flag cleared", sub.tenant_id)
            return True

        try:
            remote = self.gateway.retrieve_subscription(sub.external_subscription_id)
            if remote is None:
                raise ConfigurationError(
                    f"Gateway subscription {sub.external_subscription_id} not found"
                )
            self.state.apply_gateway_state(sub, remote)
        except (ExternalGatewayError, ConfigurationError) as e:
            db.session.rollback()
            sub = db.session.get(TenantSubscription, sub_id)
            sub.last_sync_error = str(e)[:1000]
            db.session.commit()
            logger.warning("Could not sync subscription of tenant %s: %s", sub.tenant_id, e)
            return False
        db.session.commit()
        logger.info("Subscription of tenant %s synced from gateway", sub.tenant_id)
        return True

    # ------------------------------------------------------------------
    # Paid invoices
    # ------------------------------------------------------------------

    @staticmethod
    def _is_recognized(invoice_id: str) -> bool:
        return (
            db.session.query(ProcessedEvent.id)
            .filter(
                or_(
                    and_(
                        ProcessedEvent.object_id == invoice_id,
                        ProcessedEvent.event_type.in_(PAID_EVENT_TYPES),
                    ),
                    ProcessedEvent.event_id == RECONCILE_EVENT_PREFIX + invoice_id,
                )
            )
            .first()
            is not None
        )

    def reconcile_paid_invoices(self, now: Optional[datetime.datetime] = None) -> PaidInvoicesResult:
        """Activate subscriptions whose paid invoice never reached us as a webhook."""
        now = now or utc_now()
        result = PaidInvoicesResult()
        since = now - datetime.timedelta(hours=self.config.paid_invoice_window_hours)
        try:
            invoices = self.gateway.list_paid_invoices(since)
        except ExternalGatewayError as e:
            logger.error("Could not list paid invoices: %s", e)
            result.errors += 1
            return result

        for invoice in invoices:
            result.checked += 1
            if self._is_recognized(invoice.id):
                continue
            result.paid_not_recognized += 1
            try:
                if self._recover_paid_invoice(invoice):
                    result.activated += 1
            except ConflictError:
                logger.info("Paid invoice %s was reconciled concurrently", invoice.id)
            except Exception:
                db.session.rollback()
                result.errors += 1
                logger.exception("Could not reconcile paid invoice %s", invoice.id)
        if result.paid_not_recognized:
            logger.warning("Paid invoices: %s checked, %s not recognized, %s activated",
                           result.checked, result.paid_not_recognized, result.activated)
        return result

    def _recover_paid_invoice(self, invoice: GatewayInvoice) -> bool:
        sub = self.state.find_by_external_id(invoice.subscription_id)
        activated = False
        if sub is not None:
            activated = self.state.activate_from_invoice(sub, invoice)
        record_processed_event(
            RECONCILE_EVENT_PREFIX + invoice.id,
            "reconcile.invoice_paid",
            self.gateway.name,
            invoice.id,
            {"invoice_id": invoice.id, "subscription_id": invoice.subscription_id,
             "activated": activated},
        )
        commit_with_ledger(RECONCILE_EVENT_PREFIX + invoice.id)

        tenant_id = sub.tenant_id if sub is not None else None
        self.alerts.send_alert(Alert(
            title="Paid invoice was not processed",
            message=(
                f"Invoice {invoice.id} was paid at the gateway but no webhook was recorded. "
                + ("The subscription has been activated." if activated
                   else "No subscription was activated; manual review needed.")
            ),
            severity=SEVERITY_CRITICAL,
            tenant_id=tenant_id,
            metadata={"invoice_id": invoice.id,
                      "subscription_id": invoice.subscription_id or "",
                      "amount_paid": invoice.amount_paid},
        ))
        return activated

    # ------------------------------------------------------------------
    # Open invoices
    # ------------------------------------------------------------------

    def reconcile_open_invoices(self, now: Optional[datetime.datetime] = None) -> OpenInvoicesResult:
        """Flag subscriptions with long-unpaid invoices."""
        now = now or utc_now()
        result = OpenInvoicesResult()
        candidates = [
            row.id
            for row in db.session.query(TenantSubscription.id)
            .filter(
                TenantSubscription.status.in_([STATUS_ACTIVE, STATUS_PENDING_PAYMENT]),
                TenantSubscription.external_subscription_id.isnot(None),
            )
            .order_by(TenantSubscription.id)
            .all()
        ]
        db.session.rollback()
        warning_age = datetime.timedelta(days=self.config.open_invoice_warning_days)
        critical_age = datetime.timedelta(days=self.config.open_invoice_critical_days)

        for sub_id in candidates:
            result.checked += 1
            try:
                self._check_open_invoices(sub_id, now, warning_age, critical_age, result)
            except Exception:
                db.session.rollback()
                result.errors += 1
                logger.exception("Open invoice check failed for subscription %s", sub_id)
        if result.open_invoices:
            logger.info("Open invoices: %s subscriptions, %s open invoices, %s updated, %s alerts",
                        result.checked, result.open_invoices, result.updated, result.alerts_sent)
        return result

    def _check_open_invoices(
        self,
        sub_id: int,
        now: datetime.datetime,
        warning_age: datetime.timedelta,
        critical_age: datetime.timedelta,
        result: OpenInvoicesResult,
    ) -> None:
        sub = db.session.get(TenantSubscription, sub_id)
        external_id = sub.external_subscription_id
        invoices = self.gateway.list_open_invoices(external_id)
        db.session.rollback()
        result.open_invoices += len(invoices)
        dated = [inv for inv in invoices if inv.created_at is not None]
        if not dated:
            return
        oldest = min(dated, key=lambda inv: inv.created_at)
        age = now - as_utc(oldest.created_at)
        if age < warning_age:
            return

        sub = TenantSubscription.query.filter_by(id=sub_id).with_for_update().first()
        if sub is None or sub.status not in (STATUS_ACTIVE, STATUS_PENDING_PAYMENT):
            db.session.rollback()
            return
        if sub.status == STATUS_ACTIVE:
            sub.status = STATUS_PENDING_PAYMENT
            log_action(sub.tenant_id, "open_invoice_overdue", sub.id,
                       {"invoice_id": oldest.id, "age_days": age.days}, source="reconciliation")
            result.updated += 1
            logger.warning("Tenant %s moved to PENDING_PAYMENT; invoice %s open for %s days",
                           sub.tenant_id, oldest.id, age.days)
        db.session.commit()

        severity = SEVERITY_CRITICAL if age >= critical_age else SEVERITY_WARNING
        self.alerts.send_alert(Alert(
            title="Invoice overdue",
            message=f"Invoice {oldest.id} has been open for {age.days} days.",
            severity=severity,
            tenant_id=sub.tenant_id,
            metadata={"invoice_id": oldest.id, "subscription_id": external_id,
                      "open_invoices": len(invoices), "amount_due": oldest.amount_due},
        ))
        result.alerts_sent += 1

    # ------------------------------------------------------------------
    # Stale pending payments
    # ------------------------------------------------------------------

    def reconcile_pending_payments(self, now: Optional[datetime.datetime] = None) -> PendingPaymentsResult:
        """Poll the gateway for payments stuck in PENDING."""
        now = now or utc_now()
        result = PendingPaymentsResult()
        stale_before = now - datetime.timedelta(minutes=self.config.pending_payment_stale_minutes)
        alert_before = now - datetime.timedelta(hours=self.config.pending_payment_alert_hours)
        pending = [
            row.id
            for row in db.session.query(Payment.id)
            .filter(
                Payment.status == PAYMENT_PENDING,
                Payment.provider == self.gateway.name,
                Payment.external_id.isnot(None),
                Payment.created_at <= stale_before,
            )
            .order_by(Payment.created_at)
            .all()
        ]
        db.session.rollback()

        for payment_id in pending:
            result.checked += 1
            try:
                self._poll_payment(payment_id, now, alert_before, result)
            except Exception:
                db.session.rollback()
                result.errors += 1
                logger.exception("Could not poll payment %s", payment_id)
        if result.checked:
            logger.info("Pending payments: %s checked, %s confirmed, %s closed, %s still pending",
                        result.checked, result.confirmed, result.closed, result.still_pending)
        return result

    def _poll_payment(
        self,
        payment_id: int,
        now: datetime.datetime,
        alert_before: datetime.datetime,
        result: PendingPaymentsResult,
    ) -> None:
        payment = db.session.get(Payment, payment_id)
        transaction = self.gateway.retrieve_transaction(payment.external_id)

        payment = Payment.query.filter_by(id=payment_id).with_for_update().first()
        if payment is None or payment.status != PAYMENT_PENDING:
            db.session.rollback()
            return
        self.payments.apply_transaction(payment, transaction, now)
        db.session.commit()

        if payment.status == PAYMENT_APPROVED:
            result.confirmed += 1
        elif payment.status != PAYMENT_PENDING:
            result.closed += 1
        else:
            result.still_pending += 1
            if as_utc(payment.created_at) <= alert_before:
                self.alerts.send_alert(Alert(
                    title="Payment pending for too long",
                    message=(
                        f"Payment {payment.id} ({payment.external_id}) has been pending since "
                        f"{as_utc(payment.created_at).isoformat()}."
                    ),
                    severity=SEVERITY_WARNING,
                    tenant_id=payment.tenant_id,
                    metadata={"payment_id": payment.id, "provider": payment.provider},
                ))
                result.alerts_sent += 1

    # ------------------------------------------------------------------
    # Scheduled changes
    # ------------------------------------------------------------------

    def apply_scheduled_changes(self, now: Optional[datetime.datetime] = None) -> ScheduledChangesResult:
        return self.state.apply_scheduled_changes(now)
