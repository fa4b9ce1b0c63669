"""Webhook ingestion with exactly-once business effect per event id."""

from __future__ import annotations

import json
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import ProcessedEvent
from services.alerts import (
    SEVERITY_WARNING,
    Alert,
    AlertService,
    discard_queued_alerts,
    queue_alert,
    send_queued_alerts,
)
from services.errors import ConfigurationError, ConflictError
from services.gateway_types import (
    CheckoutSession,
    EventType,
    GatewayInvoice,
    GatewayTransaction,
    WebhookEvent,
)
from services.gateways import PaymentGatewayClient
from services.payments import PaymentService
from services.subscription_state import SubscriptionStateManager
from utils import safe_int, utc_now

logger = logging.getLogger(__name__)


def record_processed_event(
    event_id: str,
    event_type: str,
    provider: str,
    object_id: Optional[str] = None,
    payload=None,
) -> ProcessedEvent:
    """Add a ledger row to the current transaction.  Does not commit."""
    row = ProcessedEvent(
        event_id=event_id,
        event_type=event_type,
        provider=provider,
        object_id=object_id,
        processed_at=utc_now(),
        payload=json.dumps(payload, default=str) if payload is not None else None,
    )
    db.session.add(row)
    return row


def is_processed(event_id: str) -> bool:
    return db.session.query(ProcessedEvent.id).filter_by(event_id=event_id).first() is not None


def commit_with_ledger(event_id: str) -> None:
    """Commit the pending business effect together with its ledger row.

    Raises ConflictError when another worker recorded *event_id* first.
    """
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if is_processed(event_id):
            raise ConflictError(f"event {event_id} already processed")
        raise


class WebhookEventProcessor:
    """Verifies, de-duplicates and dispatches gateway events."""

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        state: SubscriptionStateManager,
        payments: PaymentService,
        alerts: AlertService,
    ):
        self.gateway = gateway
        self.state = state
        self.payments = payments
        self.alerts = alerts
        self._handlers = {
            EventType.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            EventType.PAYMENT_FAILED: self._on_payment_failed,
            EventType.SUBSCRIPTION_CANCELLED: self._on_subscription_cancelled,
            EventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            EventType.CHECKOUT_COMPLETED: self._on_checkout_completed,
            EventType.CHARGE_REFUNDED: self._on_charge_refunded,
        }

    def verify_and_parse(self, raw_body: bytes, signature: str) -> Optional[WebhookEvent]:
        """Return the verified event, or None when the signature is invalid."""
        return self.gateway.parse_webhook(raw_body, signature)

    def handle(self, event: WebhookEvent) -> bool:
        """Apply *event* once.

        Returns False for an already-processed event.  Handler errors roll
        back, leave no ledger row and propagate so the provider retries.
        """
        if is_processed(event.id):
            logger.info("Event %s (%s) already processed; skipping", event.id, event.raw_type)
            return False

        handler = self._handlers.get(event.type)
        try:
            if handler is None:
                logger.info("Ignoring %s event %s (%s)", event.provider, event.id, event.raw_type)
            else:
                handler(event)
            record_processed_event(
                event.id,
                event.raw_type or event.type.value,
                event.provider,
                event.object_id,
                event.raw,
            )
            commit_with_ledger(event.id)
        except ConflictError:
            discard_queued_alerts()
            logger.info("Event %s was processed concurrently; treating as replay", event.id)
            return False
        except Exception:
            db.session.rollback()
            discard_queued_alerts()
            logger.exception("Failed to handle %s event %s (%s)",
                             event.provider, event.id, event.raw_type)
            raise
        logger.info("Processed %s event %s (%s)", event.provider, event.id, event.raw_type)
        send_queued_alerts(self.alerts)
        return True

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _occurred_at(self, event: WebhookEvent):
        return event.created_at or utc_now()

    def _apply_transaction(self, event: WebhookEvent, transaction: GatewayTransaction) -> None:
        payment = self.payments.find_by_external_id(transaction.id, transaction.reference)
        if payment is None:
            logger.warning("%s transaction %s matches no payment", event.provider, transaction.id)
            return
        self.payments.apply_transaction(payment, transaction, self._occurred_at(event))

    def _on_payment_succeeded(self, event: WebhookEvent) -> None:
        if isinstance(event.data, GatewayTransaction):
            self._apply_transaction(event, event.data)
            return
        invoice: GatewayInvoice = event.data
        sub = self.state.find_by_external_id(invoice.subscription_id)
        if sub is None:
            logger.warning("Paid invoice %s matches no subscription (%s)",
                           invoice.id, invoice.subscription_id)
            return
        self.state.activate_from_invoice(sub, invoice, self._occurred_at(event))

    def _on_payment_failed(self, event: WebhookEvent) -> None:
        if isinstance(event.data, GatewayTransaction):
            self._apply_transaction(event, event.data)
            return
        invoice: GatewayInvoice = event.data
        sub = self.state.find_by_external_id(invoice.subscription_id)
        if sub is None:
            logger.warning("Failed invoice %s matches no subscription (%s)",
                           invoice.id, invoice.subscription_id)
            return
        self.state.record_payment_failure(sub, self._occurred_at(event))

    def _on_subscription_cancelled(self, event: WebhookEvent) -> None:
        sub = self.state.find_by_external_id(event.data.id)
        if sub is None:
            logger.warning("Cancelled gateway subscription %s is unknown", event.data.id)
            return
        self.state.cancel_from_gateway(sub, self._occurred_at(event))

    def _on_subscription_updated(self, event: WebhookEvent) -> None:
        sub = self.state.find_by_external_id(event.data.id)
        if sub is None:
            logger.warning("Updated gateway subscription %s is unknown", event.data.id)
            return
        try:
            self.state.apply_gateway_state(sub, event.data, self._occurred_at(event))
        except ConfigurationError as e:
            logger.warning("Cannot apply update %s for tenant %s: %s", event.id, sub.tenant_id, e)
            self.state.flag_for_sync(sub, f"Gateway update {event.id} not applied: {e}")
            queue_alert(Alert(
                title="Unmapped gateway subscription update",
                message=str(e),
                severity=SEVERITY_WARNING,
                tenant_id=sub.tenant_id,
                metadata={"event_id": event.id, "subscription_id": event.data.id},
            ))

    def _on_checkout_completed(self, event: WebhookEvent) -> None:
        session: CheckoutSession = event.data
        payment = None
        payment_id = safe_int(session.metadata.get("payment_id"), default=None)
        if payment_id is not None:
            payment = self.payments.find_by_id(payment_id)
        if payment is None:
            payment = self.payments.find_by_external_id(session.id)
        if payment is None:
            logger.warning("Checkout session %s matches no payment", session.id)
            return

        if session.payment_status in ("paid", "no_payment_required"):
            self.payments.confirm_payment(payment, self._occurred_at(event))

        sub = self.state.get_subscription(payment.tenant_id, lock=True)
        if sub is None:
            return
        if session.subscription_id and sub.external_subscription_id != session.subscription_id:
            other = self.state.find_by_external_id(session.subscription_id)
            if other is not None and other.id != sub.id:
                logger.error(
                    "Gateway subscription %s already linked to tenant %s; not relinking to %s",
                    session.subscription_id, other.tenant_id, sub.tenant_id,
                )
                return
            sub.external_subscription_id = session.subscription_id
            logger.info("Linked tenant %s to gateway subscription %s",
                        sub.tenant_id, session.subscription_id)
        if session.customer_id:
            sub.external_customer_id = session.customer_id
        db.session.flush()

    def _on_charge_refunded(self, event: WebhookEvent) -> None:
        self.state.handle_charge_refunded(event.data, self._occurred_at(event))
