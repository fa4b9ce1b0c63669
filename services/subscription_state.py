"""Subscription state machine.

All writes to ``TenantSubscription`` go through ``SubscriptionStateManager``.

Transaction rules: ``request_plan_change``, ``apply_scheduled_changes`` and
``start_subscription_payment`` commit their own work.  The remaining methods
are driven by webhooks or reconciliation; they mutate and flush, and the
caller commits (for webhooks, together with the ``ProcessedEvent`` row).
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_

from config_models import BillingConfig
from extensions import db
from models import (
    ACTIVATION_ACTIVATED,
    ACTIVATION_PENDING,
    INTERVAL_YEARLY,
    PAYMENT_APPROVED,
    PAYMENT_DECLINED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PURPOSE_SUBSCRIPTION,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PENDING_PAYMENT,
    STATUS_SUSPENDED,
    VALID_BILLING_INTERVALS,
    ModuleActivation,
    Payment,
    SubscriptionPlan,
    Tenant,
    TenantAddOn,
    TenantSubscription,
    User,
    UserTenant,
)
from services.alerts import SEVERITY_CRITICAL, SEVERITY_WARNING, Alert, AlertService, queue_alert
from services.audit import log_action
from services.errors import (
    ConfigurationError,
    ExternalGatewayError,
    NotFoundError,
    ValidationError,
)
from services.gateway_types import GatewayCharge, GatewayInvoice, GatewaySubscription
from services.gateways import PaymentGatewayClient
from utils import as_utc, period_end_for, utc_now

logger = logging.getLogger(__name__)

# Gateway subscription status -> internal status
GATEWAY_STATUS_MAP = {
    "active": STATUS_ACTIVE,
    "trialing": STATUS_ACTIVE,
    "canceled": STATUS_CANCELLED,
    "unpaid": STATUS_CANCELLED,
    "incomplete_expired": STATUS_CANCELLED,
    "past_due": STATUS_PENDING_PAYMENT,
    "incomplete": STATUS_PENDING_PAYMENT,
    "paused": STATUS_SUSPENDED,
}

APPLIED_NONE = "none"
APPLIED_IMMEDIATE = "immediate"
APPLIED_SCHEDULED = "scheduled"

REFUND_CREDIT_DAYS = 30


@dataclass
class PlanChangeResult:
    success: bool
    applied: str
    scheduled_change_at: Optional[datetime.datetime] = None
    warnings: list[str] = field(default_factory=list)
    external_synced: bool = True

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "applied": self.applied,
            "warnings": self.warnings,
        }
        if self.scheduled_change_at:
            data["scheduled_change_at"] = as_utc(self.scheduled_change_at).isoformat()
        if not self.external_synced:
            data["external_synced"] = False
        return data


@dataclass
class DowngradeValidation:
    allowed: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "errors": self.errors, "warnings": self.warnings}


@dataclass
class ScheduledChangesResult:
    checked: int = 0
    applied: int = 0
    sync_failed: int = 0
    errors: int = 0


class SubscriptionStateManager:
    """Authoritative state machine for tenant subscriptions."""

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        alerts: AlertService,
        config: BillingConfig,
    ):
        self.gateway = gateway
        self.alerts = alerts
        self.config = config

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_subscription(self, tenant_id: int, lock: bool = False) -> Optional[TenantSubscription]:
        query = TenantSubscription.query.filter_by(tenant_id=tenant_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def find_by_external_id(self, external_subscription_id: Optional[str]) -> Optional[TenantSubscription]:
        if not external_subscription_id:
            return None
        return (
            TenantSubscription.query
            .filter_by(external_subscription_id=external_subscription_id)
            .with_for_update()
            .first()
        )

    def plan_for_price(self, price_id: Optional[str]) -> tuple[Optional[SubscriptionPlan], Optional[str]]:
        """Reverse-map a gateway price id to ``(plan, billing_interval)``."""
        if not price_id:
            return None, None
        plan = SubscriptionPlan.query.filter(
            or_(
                SubscriptionPlan.external_price_monthly_id == price_id,
                SubscriptionPlan.external_price_yearly_id == price_id,
            )
        ).first()
        if plan is None:
            return None, None
        interval = INTERVAL_YEARLY if plan.external_price_yearly_id == price_id else "monthly"
        return plan, interval

    @staticmethod
    def active_user_count(tenant_id: int) -> int:
        return (
            db.session.query(func.count(UserTenant.id))
            .join(User, User.id == UserTenant.user_id)
            .filter(UserTenant.tenant_id == tenant_id, User.is_active.is_(True))
            .scalar()
            or 0
        )

    def _get_tenant(self, tenant_id: int) -> Tenant:
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    def _get_plan(self, plan_id) -> SubscriptionPlan:
        plan = db.session.get(SubscriptionPlan, plan_id) if plan_id is not None else None
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    @staticmethod
    def _check_interval(billing_interval: str) -> None:
        if billing_interval not in VALID_BILLING_INTERVALS:
            raise ValidationError([f"Unknown billing interval '{billing_interval}'"])

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    def _downgrade_findings(
        self,
        tenant_id: int,
        current_plan: SubscriptionPlan,
        new_plan: SubscriptionPlan,
        now: datetime.datetime,
    ) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []

        if new_plan.max_users:
            users = self.active_user_count(tenant_id)
            if users > new_plan.max_users:
                errors.append(
                    f"Plan '{new_plan.name}' allows {new_plan.max_users} users but the "
                    f"tenant has {users} active users. Deactivate users before downgrading."
                )

        add_ons = {
            addon.module_code
            for addon in TenantAddOn.query.filter_by(tenant_id=tenant_id).all()
            if addon.valid_until is None or as_utc(addon.valid_until) > now
        }
        lost = current_plan.module_codes - new_plan.module_codes - add_ons
        other_lost = []
        for code in sorted(lost):
            activation = None
            if code in self.config.regulated_modules:
                activation = ModuleActivation.query.filter_by(
                    tenant_id=tenant_id, module_code=code
                ).first()
            if activation is not None and activation.status == ACTIVATION_ACTIVATED:
                errors.append(
                    f"Module '{code}' is activated with the regulator and is not included "
                    f"in plan '{new_plan.name}'. It must be deactivated before downgrading."
                )
            elif activation is not None and activation.status == ACTIVATION_PENDING:
                warnings.append(
                    f"Module '{code}' has a pending activation that will be abandoned "
                    f"when plan '{new_plan.name}' takes effect."
                )
            else:
                other_lost.append(code)
        if other_lost:
            warnings.append(
                f"These modules are not included in plan '{new_plan.name}' and will be "
                f"disabled when the change takes effect: {', '.join(other_lost)}"
            )
        return errors, warnings

    def validate_downgrade(self, tenant_id: int, plan_id: int,
                           now: Optional[datetime.datetime] = None) -> DowngradeValidation:
        """Run the downgrade rules without changing anything."""
        now = now or utc_now()
        self._get_tenant(tenant_id)
        new_plan = self._get_plan(plan_id)
        sub = self.get_subscription(tenant_id)
        if sub is None:
            raise NotFoundError(f"Tenant {tenant_id} has no subscription")
        errors, warnings = self._downgrade_findings(tenant_id, sub.plan, new_plan, now)
        return DowngradeValidation(allowed=not errors, errors=errors, warnings=warnings)

    def request_plan_change(
        self,
        tenant_id: int,
        plan_id: int,
        billing_interval: Optional[str] = None,
        now: Optional[datetime.datetime] = None,
    ) -> PlanChangeResult:
        """Move a tenant to another plan.

        Upgrades (higher effective price) apply immediately with proration.
        Downgrades and interval switches on the same plan are validated and
        scheduled for the end of the current period.
        """
        now = now or utc_now()
        tenant = self._get_tenant(tenant_id)
        new_plan = self._get_plan(plan_id)
        if not new_plan.is_active:
            raise ValidationError([f"Plan '{new_plan.name}' is no longer offered"])

        sub = self.get_subscription(tenant_id, lock=True)
        if sub is None:
            raise NotFoundError(f"Tenant {tenant_id} has no subscription")
        if sub.status == STATUS_CANCELLED:
            raise ValidationError(
                ["The subscription is cancelled; start a new one through checkout"]
            )
        billing_interval = billing_interval or sub.billing_interval
        self._check_interval(billing_interval)

        if sub.plan_id == new_plan.id and sub.billing_interval == billing_interval:
            db.session.rollback()
            return PlanChangeResult(success=True, applied=APPLIED_NONE)

        current_plan = sub.plan
        current_price = current_plan.effective_price(billing_interval)
        new_price = new_plan.effective_price(billing_interval)
        if new_plan.id != current_plan.id and new_price > current_price:
            return self._apply_upgrade(tenant, sub, current_plan, new_plan, billing_interval,
                                       current_price, new_price)
        return self._schedule_change(tenant, sub, current_plan, new_plan, billing_interval, now)

    def _apply_upgrade(
        self,
        tenant: Tenant,
        sub: TenantSubscription,
        current_plan: SubscriptionPlan,
        new_plan: SubscriptionPlan,
        billing_interval: str,
        current_price: Decimal,
        new_price: Decimal,
    ) -> PlanChangeResult:
        sub.plan_id = new_plan.id
        sub.billing_interval = billing_interval
        sub.clear_scheduled_change()
        tenant.plan_id = new_plan.id
        tenant.billing_interval = billing_interval
        self._open_module_activations(tenant.id, new_plan.module_codes - current_plan.module_codes)
        log_action(
            tenant.id, "plan_upgraded", sub.id,
            {"from_plan": current_plan.slug, "to_plan": new_plan.slug,
             "billing_interval": billing_interval,
             "from_price": current_price, "to_price": new_price},
            source="api",
        )
        db.session.commit()
        logger.info(
            "Tenant %s upgraded from %s to %s (%s)",
            tenant.id, current_plan.slug, new_plan.slug, billing_interval,
        )

        synced = True
        if sub.external_subscription_id and self.gateway.manages_subscriptions:
            try:
                price_id = new_plan.external_price_id(billing_interval)
                if not price_id:
                    raise ConfigurationError(
                        f"Plan {new_plan.slug} has no gateway price for {billing_interval} billing"
                    )
                self.gateway.update_subscription_price(
                    sub.external_subscription_id, price_id, prorate=True
                )
            except (ExternalGatewayError, ConfigurationError) as e:
                synced = False
                logger.error(
                    "Upgrade of tenant %s saved but gateway update failed: %s", tenant.id, e
                )
                self.flag_for_sync(sub, f"Upgrade to {new_plan.slug} not pushed to gateway: {e}")
                db.session.commit()
                self.alerts.send_alert(Alert(
                    title="Upgrade not synced with payment gateway",
                    message=(
                        f"Tenant {tenant.id} was upgraded to '{new_plan.name}' locally, but the "
                        f"gateway subscription could not be updated: {e}"
                    ),
                    severity=SEVERITY_CRITICAL,
                    tenant_id=tenant.id,
                    metadata={"subscription_id": sub.external_subscription_id,
                              "plan": new_plan.slug},
                ))
        return PlanChangeResult(success=True, applied=APPLIED_IMMEDIATE, external_synced=synced)

    def _schedule_change(
        self,
        tenant: Tenant,
        sub: TenantSubscription,
        current_plan: SubscriptionPlan,
        new_plan: SubscriptionPlan,
        billing_interval: str,
        now: datetime.datetime,
    ) -> PlanChangeResult:
        warnings: list[str] = []
        if new_plan.id != current_plan.id:
            errors, warnings = self._downgrade_findings(tenant.id, current_plan, new_plan, now)
            if errors:
                db.session.rollback()
                logger.info("Downgrade of tenant %s to %s blocked: %s", tenant.id, new_plan.slug, errors)
                raise ValidationError(errors, warnings)
        if sub.current_period_end is None:
            db.session.rollback()
            raise ConfigurationError(
                f"Subscription of tenant {tenant.id} has no current period end to schedule against"
            )

        sub.scheduled_plan_id = new_plan.id
        sub.scheduled_billing_interval = billing_interval
        sub.scheduled_change_at = sub.current_period_end
        log_action(
            tenant.id, "plan_change_scheduled", sub.id,
            {"from_plan": current_plan.slug, "to_plan": new_plan.slug,
             "billing_interval": billing_interval,
             "scheduled_change_at": as_utc(sub.scheduled_change_at).isoformat()},
            source="api",
        )
        db.session.commit()
        logger.info(
            "Tenant %s change to %s (%s) scheduled for %s",
            tenant.id, new_plan.slug, billing_interval, sub.scheduled_change_at,
        )
        return PlanChangeResult(
            success=True,
            applied=APPLIED_SCHEDULED,
            scheduled_change_at=sub.scheduled_change_at,
            warnings=warnings,
        )

    def apply_scheduled_changes(self, now: Optional[datetime.datetime] = None) -> ScheduledChangesResult:
        """Apply every due scheduled change; each subscription in its own transaction."""
        now = now or utc_now()
        result = ScheduledChangesResult()
        due_ids = [
            row.id
            for row in db.session.query(TenantSubscription.id)
            .filter(
                TenantSubscription.status == STATUS_ACTIVE,
                TenantSubscription.scheduled_plan_id.isnot(None),
                TenantSubscription.scheduled_change_at <= now,
            )
            .order_by(TenantSubscription.id)
            .all()
        ]
        db.session.rollback()
        for sub_id in due_ids:
            result.checked += 1
            try:
                outcome = self._apply_scheduled_change(sub_id, now)
            except Exception:
                db.session.rollback()
                result.errors += 1
                logger.exception("Failed to apply scheduled change for subscription %s", sub_id)
                continue
            if outcome == "applied":
                result.applied += 1
            elif outcome == "sync_failed":
                result.sync_failed += 1
        if result.checked:
            logger.info(
                "Scheduled changes: %s checked, %s applied, %s sync failures, %s errors",
                result.checked, result.applied, result.sync_failed, result.errors,
            )
        return result

    def _apply_scheduled_change(self, sub_id: int, now: datetime.datetime) -> str:
        sub = TenantSubscription.query.filter_by(id=sub_id).with_for_update().first()
        if (
            sub is None
            or sub.status != STATUS_ACTIVE
            or sub.scheduled_plan_id is None
            or as_utc(sub.scheduled_change_at) > now
        ):
            db.session.rollback()
            return "skipped"

        new_plan = sub.scheduled_plan
        old_plan = sub.plan
        interval = sub.scheduled_billing_interval or sub.billing_interval

        if sub.external_subscription_id and self.gateway.manages_subscriptions:
            try:
                price_id = new_plan.external_price_id(interval)
                if not price_id:
                    raise ConfigurationError(
                        f"Plan {new_plan.slug} has no gateway price for {interval} billing"
                    )
                self.gateway.update_subscription_price(
                    sub.external_subscription_id, price_id, prorate=False
                )
            except (ExternalGatewayError, ConfigurationError) as e:
                logger.warning(
                    "Scheduled change of tenant %s to %s postponed: %s",
                    sub.tenant_id, new_plan.slug, e,
                )
                self.flag_for_sync(sub, f"Scheduled change to {new_plan.slug} failed: {e}")
                db.session.commit()
                return "sync_failed"

        sub.plan_id = new_plan.id
        sub.billing_interval = interval
        sub.clear_scheduled_change()
        sub.tenant.plan_id = new_plan.id
        sub.tenant.billing_interval = interval
        log_action(
            sub.tenant_id, "scheduled_change_applied", sub.id,
            {"from_plan": old_plan.slug, "to_plan": new_plan.slug, "billing_interval": interval},
            source="scheduler",
        )
        db.session.commit()
        logger.info(
            "Applied scheduled change for tenant %s: %s -> %s",
            sub.tenant_id, old_plan.slug, new_plan.slug,
        )
        return "applied"

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def start_subscription_payment(
        self,
        tenant_id: int,
        plan_id: int,
        billing_interval: str,
        customer_email: Optional[str] = None,
        details: Optional[dict] = None,
        now: Optional[datetime.datetime] = None,
    ):
        """Open a PENDING payment for a plan and create the gateway charge.

        Returns ``(payment, transaction)``; ``transaction`` is None for free
        plans, which are activated straight away.
        """
        now = now or utc_now()
        self._check_interval(billing_interval)
        tenant = self._get_tenant(tenant_id)
        plan = self._get_plan(plan_id)
        if not plan.is_active:
            raise ValidationError([f"Plan '{plan.name}' is no longer offered"])

        sub = self.get_subscription(tenant_id, lock=True)
        if sub is None:
            sub = TenantSubscription(
                tenant_id=tenant_id,
                plan_id=plan.id,
                status=STATUS_PENDING_PAYMENT,
                billing_interval=billing_interval,
            )
            db.session.add(sub)

        amount = plan.effective_price(billing_interval)
        payment = Payment(
            tenant_id=tenant_id,
            provider=self.gateway.name,
            status=PAYMENT_PENDING,
            amount=amount,
            currency=plan.currency,
            purpose=PURPOSE_SUBSCRIPTION,
        )
        payment.meta = {"plan_id": plan.id, "billing_interval": billing_interval}
        db.session.add(payment)
        db.session.flush()

        if amount <= 0:
            payment.status = PAYMENT_APPROVED
            self.confirm_payment_approved(tenant_id, plan.id, billing_interval, None, now)
            db.session.commit()
            logger.info("Tenant %s activated on free plan %s", tenant_id, plan.slug)
            return payment, None

        meta = payment.meta
        meta["reference"] = f"sub-{tenant_id}-{payment.id}"
        payment.meta = meta
        db.session.commit()

        try:
            transaction = self.gateway.create_charge(
                payment, plan, billing_interval,
                customer_email or tenant.billing_email or tenant.email,
                details,
            )
        except (ExternalGatewayError, ConfigurationError) as e:
            payment.status = PAYMENT_DECLINED
            meta = payment.meta
            meta["error"] = str(e)
            payment.meta = meta
            db.session.commit()
            logger.error("Could not create %s charge for tenant %s: %s",
                         self.gateway.name, tenant_id, e)
            raise

        payment.external_id = transaction.id
        db.session.commit()
        logger.info(
            "Started %s payment %s for tenant %s (plan %s, %s)",
            self.gateway.name, transaction.id, tenant_id, plan.slug, billing_interval,
        )
        return payment, transaction

    def confirm_payment_approved(
        self,
        tenant_id: int,
        plan_id: int,
        billing_interval: str,
        external_transaction_id: Optional[str],
        now: Optional[datetime.datetime] = None,
    ) -> bool:
        """Activate the subscription for a confirmed payment.

        Starts a new billing cycle at *now*.  Replays of the same transaction
        are no-ops.  Returns True when the subscription changed.
        """
        now = now or utc_now()
        self._check_interval(billing_interval)
        tenant = self._get_tenant(tenant_id)
        plan = self._get_plan(plan_id)
        sub = self.get_subscription(tenant_id, lock=True)

        payment = None
        if external_transaction_id:
            payment = Payment.query.filter_by(
                tenant_id=tenant_id, external_id=external_transaction_id
            ).first()
        if (
            sub is not None
            and payment is not None
            and payment.status == PAYMENT_APPROVED
            and sub.status == STATUS_ACTIVE
            and sub.plan_id == plan.id
            and sub.billing_interval == billing_interval
            and sub.current_period_end is not None
            and as_utc(sub.current_period_end) > now
        ):
            logger.info(
                "Payment %s already applied to tenant %s; nothing to do",
                external_transaction_id, tenant_id,
            )
            return False

        if sub is None:
            sub = TenantSubscription(tenant_id=tenant_id, plan_id=plan.id)
            db.session.add(sub)
            previous_plan_codes: set[str] = set()
        else:
            previous_plan_codes = sub.plan.module_codes if sub.plan else set()

        previous_status = sub.status
        sub.plan_id = plan.id
        sub.billing_interval = billing_interval
        sub.status = STATUS_ACTIVE
        sub.current_period_start = now
        sub.current_period_end = period_end_for(now, billing_interval)
        sub.last_payment_failed_at = None
        sub.cancelled_at = None
        sub.clear_scheduled_change()
        tenant.plan_id = plan.id
        tenant.billing_interval = billing_interval
        tenant.is_active = True
        if payment is not None:
            payment.status = PAYMENT_APPROVED
        self._open_module_activations(tenant_id, plan.module_codes - previous_plan_codes)
        db.session.flush()
        log_action(
            tenant_id, "payment_confirmed", sub.id,
            {"plan": plan.slug, "billing_interval": billing_interval,
             "transaction_id": external_transaction_id, "previous_status": previous_status},
            source="payment",
        )
        logger.info(
            "Tenant %s active on %s (%s) until %s after payment %s",
            tenant_id, plan.slug, billing_interval, sub.current_period_end, external_transaction_id,
        )
        return True

    # ------------------------------------------------------------------
    # Gateway-driven transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _is_stale(sub: TenantSubscription, occurred_at: Optional[datetime.datetime]) -> bool:
        if occurred_at is None or sub.last_external_event_at is None:
            return False
        return as_utc(occurred_at) < as_utc(sub.last_external_event_at)

    @staticmethod
    def _mark_event_time(sub: TenantSubscription, occurred_at: Optional[datetime.datetime]) -> None:
        if occurred_at is not None:
            sub.last_external_event_at = occurred_at

    def activate_from_invoice(
        self,
        sub: TenantSubscription,
        invoice: GatewayInvoice,
        occurred_at: Optional[datetime.datetime] = None,
    ) -> bool:
        """Mark the subscription paid for the invoice's billing period.

        ``occurred_at`` is the event time for webhook-driven calls; it enables
        the ordering guard and the terminal CANCELLED rule.
        """
        if sub.status == STATUS_CANCELLED:
            logger.warning(
                "Ignoring paid invoice %s for cancelled subscription of tenant %s",
                invoice.id, sub.tenant_id,
            )
            return False
        if self._is_stale(sub, occurred_at):
            logger.info("Ignoring out-of-order invoice %s for tenant %s", invoice.id, sub.tenant_id)
            return False

        previous_status = sub.status
        sub.status = STATUS_ACTIVE
        if invoice.period_start:
            sub.current_period_start = invoice.period_start
        if invoice.period_end:
            sub.current_period_end = invoice.period_end
        if invoice.customer_id and not sub.external_customer_id:
            sub.external_customer_id = invoice.customer_id
        sub.last_payment_failed_at = None
        sub.tenant.is_active = True
        self._mark_event_time(sub, occurred_at)
        log_action(
            sub.tenant_id, "invoice_paid", sub.id,
            {"invoice_id": invoice.id, "previous_status": previous_status,
             "period_end": invoice.period_end},
            source="webhook" if occurred_at else "reconciliation",
        )
        db.session.flush()
        logger.info(
            "Subscription of tenant %s active through %s (invoice %s)",
            sub.tenant_id, sub.current_period_end, invoice.id,
        )
        return True

    def record_payment_failure(
        self,
        sub: TenantSubscription,
        occurred_at: Optional[datetime.datetime] = None,
    ) -> bool:
        """Record a failed charge.

        The status is left alone on a first failure; a repeat failure inside
        the suspension window suspends. The suspension alert is queued and goes
        out once the caller commits.
        """
        if sub.status == STATUS_CANCELLED:
            logger.info("Ignoring payment failure for cancelled subscription of tenant %s",
                        sub.tenant_id)
            return False
        if self._is_stale(sub, occurred_at):
            logger.info("Ignoring out-of-order payment failure for tenant %s", sub.tenant_id)
            return False

        failed_at = occurred_at or utc_now()
        previous_failure = as_utc(sub.last_payment_failed_at)
        window = datetime.timedelta(days=self.config.payment_failure_suspend_days)
        sub.last_payment_failed_at = failed_at
        self._mark_event_time(sub, occurred_at)

        if previous_failure is not None and as_utc(failed_at) - previous_failure <= window:
            sub.status = STATUS_SUSPENDED
            sub.tenant.is_active = False
            log_action(sub.tenant_id, "suspended_after_payment_failures", sub.id,
                       {"previous_failure": previous_failure, "failed_at": failed_at},
                       source="webhook")
            db.session.flush()
            logger.warning("Tenant %s suspended after repeated payment failures", sub.tenant_id)
            queue_alert(Alert(
                title="Tenant suspended after repeated payment failures",
                message=(
                    f"Second failed payment within {self.config.payment_failure_suspend_days} "
                    f"days; tenant {sub.tenant_id} has been suspended."
                ),
                severity=SEVERITY_CRITICAL,
                tenant_id=sub.tenant_id,
                metadata={"subscription_id": sub.external_subscription_id or sub.id},
            ))
            return True

        log_action(sub.tenant_id, "payment_failed", sub.id, {"failed_at": failed_at},
                   source="webhook")
        db.session.flush()
        logger.warning("Payment failed for tenant %s; subscription stays %s",
                       sub.tenant_id, sub.status)
        return True

    def cancel_from_gateway(
        self,
        sub: TenantSubscription,
        occurred_at: Optional[datetime.datetime] = None,
    ) -> bool:
        if sub.status == STATUS_CANCELLED:
            return False
        if self._is_stale(sub, occurred_at):
            logger.info("Ignoring out-of-order cancellation for tenant %s", sub.tenant_id)
            return False
        previous_status = sub.status
        sub.status = STATUS_CANCELLED
        sub.cancelled_at = occurred_at or utc_now()
        sub.clear_scheduled_change()
        self._mark_event_time(sub, occurred_at)
        log_action(sub.tenant_id, "subscription_cancelled", sub.id,
                   {"previous_status": previous_status}, source="webhook")
        db.session.flush()
        logger.info("Subscription of tenant %s cancelled by the gateway", sub.tenant_id)
        return True

    def apply_gateway_state(
        self,
        sub: TenantSubscription,
        remote: GatewaySubscription,
        occurred_at: Optional[datetime.datetime] = None,
    ) -> bool:
        """Overwrite plan, status and period with the gateway's view.

        Raises ConfigurationError when the remote status or price cannot be
        mapped; the caller decides whether that keeps a sync flag or is
        skipped.
        """
        if occurred_at is not None:
            if sub.status == STATUS_CANCELLED:
                logger.info("Ignoring update for cancelled subscription of tenant %s", sub.tenant_id)
                return False
            if self._is_stale(sub, occurred_at):
                logger.info("Ignoring out-of-order subscription update for tenant %s", sub.tenant_id)
                return False

        status = GATEWAY_STATUS_MAP.get(remote.status)
        if status is None:
            raise ConfigurationError(f"Unknown gateway subscription status '{remote.status}'")
        plan, interval = self.plan_for_price(remote.price_id)
        if plan is None:
            raise ConfigurationError(f"No plan matches gateway price '{remote.price_id}'")

        before = {"plan_id": sub.plan_id, "status": sub.status,
                  "billing_interval": sub.billing_interval}
        sub.plan_id = plan.id
        sub.billing_interval = interval
        sub.status = status
        if remote.current_period_start:
            sub.current_period_start = remote.current_period_start
        if remote.current_period_end:
            sub.current_period_end = remote.current_period_end
        if remote.customer_id:
            sub.external_customer_id = remote.customer_id
        if status == STATUS_CANCELLED and sub.cancelled_at is None:
            sub.cancelled_at = occurred_at or utc_now()
        if sub.scheduled_plan_id == plan.id and (
            sub.scheduled_billing_interval in (None, interval)
        ):
            sub.clear_scheduled_change()
        sub.tenant.plan_id = plan.id
        sub.tenant.billing_interval = interval
        if status == STATUS_ACTIVE:
            sub.tenant.is_active = True
        sub.needs_external_sync = False
        sub.last_sync_error = None
        self._mark_event_time(sub, occurred_at)

        after = {"plan_id": sub.plan_id, "status": sub.status,
                 "billing_interval": sub.billing_interval}
        if before != after:
            log_action(sub.tenant_id, "gateway_state_applied", sub.id,
                       {"before": before, "after": after},
                       source="webhook" if occurred_at else "reconciliation")
            logger.info("Subscription of tenant %s aligned with gateway: %s -> %s",
                        sub.tenant_id, before, after)
        db.session.flush()
        return True

    def handle_charge_refunded(
        self,
        charge: GatewayCharge,
        occurred_at: Optional[datetime.datetime] = None,
    ) -> bool:
        """Full refund cancels; a partial refund credits days to the period."""
        sub, payment = self._resolve_refund_target(charge)
        if sub is None:
            logger.warning("Refund %s matches no subscription; ignoring", charge.id)
            return False
        if charge.amount <= 0:
            logger.warning("Refund %s has no original amount; ignoring", charge.id)
            return False

        refunded = min(charge.amount_refunded, charge.amount)
        if refunded >= charge.amount:
            if sub.status == STATUS_CANCELLED:
                marked = payment is not None and payment.status != PAYMENT_REFUNDED
                if marked:
                    payment.status = PAYMENT_REFUNDED
                    db.session.flush()
                logger.info("Full refund %s on already cancelled subscription of tenant %s",
                            charge.id, sub.tenant_id)
                return marked
            sub.status = STATUS_CANCELLED
            sub.cancelled_at = sub.cancelled_at or occurred_at or utc_now()
            sub.clear_scheduled_change()
            sub.tenant.is_active = False
            if payment is not None:
                payment.status = PAYMENT_REFUNDED
            log_action(sub.tenant_id, "refunded_full", sub.id,
                       {"charge_id": charge.id, "amount": charge.amount}, source="webhook")
            db.session.flush()
            logger.info("Full refund %s: subscription of tenant %s cancelled",
                        charge.id, sub.tenant_id)
            if sub.external_subscription_id and self.gateway.manages_subscriptions:
                try:
                    self.gateway.cancel_subscription(sub.external_subscription_id)
                except ExternalGatewayError as e:
                    logger.error(
                        "Could not cancel gateway subscription %s after refund: %s",
                        sub.external_subscription_id, e,
                    )
            return True

        if sub.status == STATUS_CANCELLED:
            logger.info("Partial refund %s on cancelled subscription of tenant %s; no credit",
                        charge.id, sub.tenant_id)
            return False
        if sub.current_period_end is None:
            logger.warning("Partial refund %s: tenant %s has no period end to extend",
                           charge.id, sub.tenant_id)
            return False
        credit_days = (REFUND_CREDIT_DAYS * refunded) // charge.amount
        if credit_days <= 0:
            return False
        sub.current_period_end = as_utc(sub.current_period_end) + datetime.timedelta(days=credit_days)
        if sub.scheduled_plan_id is not None:
            sub.scheduled_change_at = sub.current_period_end
        log_action(sub.tenant_id, "refunded_partial", sub.id,
                   {"charge_id": charge.id, "refunded": refunded, "amount": charge.amount,
                    "credit_days": credit_days}, source="webhook")
        db.session.flush()
        logger.info("Partial refund %s: tenant %s period extended by %s days",
                    charge.id, sub.tenant_id, credit_days)
        return True

    def _resolve_refund_target(self, charge: GatewayCharge):
        payment = None
        for external_id in (charge.transaction_id, charge.id):
            if external_id:
                payment = Payment.query.filter_by(external_id=external_id).first()
                if payment is not None:
                    break

        sub = self.find_by_external_id(charge.subscription_id)
        if sub is None and charge.invoice_id:
            try:
                invoice = self.gateway.retrieve_invoice(charge.invoice_id)
            except ExternalGatewayError as e:
                logger.warning("Could not look up invoice %s for refund %s: %s",
                               charge.invoice_id, charge.id, e)
                invoice = None
            if invoice is not None:
                sub = self.find_by_external_id(invoice.subscription_id)
        if sub is None and payment is not None:
            sub = self.get_subscription(payment.tenant_id, lock=True)
        return sub, payment

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_module_activations(self, tenant_id: int, granted: set[str]) -> None:
        for code in sorted(granted & set(self.config.regulated_modules)):
            exists = ModuleActivation.query.filter_by(tenant_id=tenant_id, module_code=code).first()
            if exists is None:
                db.session.add(ModuleActivation(
                    tenant_id=tenant_id, module_code=code, status=ACTIVATION_PENDING
                ))
                logger.info("Opened pending activation of %s for tenant %s", code, tenant_id)

    def flag_for_sync(self, sub: TenantSubscription, error: str) -> None:
        sub.needs_external_sync = True
        sub.last_sync_error = error[:1000]
        log_action(sub.tenant_id, "flagged_for_sync", sub.id, {"error": error[:500]})
