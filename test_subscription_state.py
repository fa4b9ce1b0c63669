"""Tests for the subscription state machine: plan changes, payments, refunds."""

import datetime

import pytest

from conftest import NOW, add_users, make_tenant
from extensions import db
from models import (
    ACTIVATION_ACTIVATED,
    ACTIVATION_PENDING,
    PAYMENT_APPROVED,
    PAYMENT_REFUNDED,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PENDING_PAYMENT,
    STATUS_SUSPENDED,
    AuditLog,
    ModuleActivation,
    Payment,
    Tenant,
    TenantAddOn,
    TenantSubscription,
)
from services.alerts import discard_queued_alerts, send_queued_alerts
from services.errors import (
    ConfigurationError,
    ExternalGatewayError,
    NotFoundError,
    ValidationError,
)
from services.gateway_types import GatewayCharge, GatewayInvoice, GatewaySubscription
from services.subscription_state import APPLIED_IMMEDIATE, APPLIED_NONE, APPLIED_SCHEDULED
from utils import as_utc


def _reload(tenant):
    db.session.expire_all()
    return TenantSubscription.query.filter_by(tenant_id=tenant.id).one()


# ============================================================================
# Effective price
# ============================================================================


class TestEffectivePrice:
    def test_yearly_price_used_for_yearly_interval(self, plans):
        assert plans["basic"].effective_price("yearly") == 500

    def test_monthly_price_used_for_monthly_interval(self, plans):
        assert plans["basic"].effective_price("monthly") == 50

    def test_falls_back_to_monthly_when_no_yearly_price(self, plans):
        assert plans["enterprise"].effective_price("yearly") == 200


# ============================================================================
# Upgrades
# ============================================================================


class TestUpgrade:
    def test_upgrade_applies_immediately(self, billing, tenant, plans, fake_gateway):
        result = billing.state.request_plan_change(tenant.id, plans["pro"].id, "monthly", now=NOW)

        assert result.success is True
        assert result.applied == APPLIED_IMMEDIATE
        assert result.scheduled_change_at is None
        sub = _reload(tenant)
        assert sub.plan_id == plans["pro"].id
        assert sub.scheduled_plan_id is None
        assert db.session.get(Tenant, tenant.id).plan_id == plans["pro"].id
        assert fake_gateway.calls_named("update_subscription_price") == [
            ("update_subscription_price", "sub_123", "price_pro_m", True)
        ]

    def test_upgrade_opens_pending_activation_for_regulated_module(self, billing, tenant, plans):
        billing.state.request_plan_change(tenant.id, plans["pro"].id, "monthly", now=NOW)

        activation = ModuleActivation.query.filter_by(
            tenant_id=tenant.id, module_code="electronic_invoicing"
        ).one()
        assert activation.status == ACTIVATION_PENDING

    def test_upgrade_writes_audit_row(self, billing, tenant, plans):
        billing.state.request_plan_change(tenant.id, plans["pro"].id, "monthly", now=NOW)

        entry = AuditLog.query.filter_by(tenant_id=tenant.id, action="plan_upgraded").one()
        assert entry.entity_type == "subscription"
        assert '"to_plan": "pro"' in entry.details

    def test_gateway_failure_keeps_upgrade_and_flags_sync(
        self, billing, tenant, plans, fake_gateway, alerts
    ):
        fake_gateway.fail_with = ExternalGatewayError("gateway down", provider="fake")

        result = billing.state.request_plan_change(tenant.id, plans["pro"].id, "monthly", now=NOW)

        assert result.success is True
        assert result.external_synced is False
        sub = _reload(tenant)
        assert sub.plan_id == plans["pro"].id
        assert sub.needs_external_sync is True
        assert "gateway down" in sub.last_sync_error
        assert alerts.severities() == ["critical"]

    def test_upgrade_without_gateway_subscription_skips_gateway(
        self, billing, plans, fake_gateway
    ):
        local = make_tenant(plans["basic"], slug="local", external_id=None)

        billing.state.request_plan_change(local.id, plans["pro"].id, "monthly", now=NOW)

        assert _reload(local).plan_id == plans["pro"].id
        assert fake_gateway.calls_named("update_subscription_price") == []

    def test_upgrade_clears_pending_downgrade(self, billing, plans):
        tenant = make_tenant(plans["pro"], slug="mid")
        billing.state.request_plan_change(tenant.id, plans["basic"].id, "monthly", now=NOW)
        assert _reload(tenant).scheduled_plan_id == plans["basic"].id

        billing.state.request_plan_change(tenant.id, plans["enterprise"].id, "monthly", now=NOW)

        sub = _reload(tenant)
        assert sub.plan_id == plans["enterprise"].id
        assert sub.scheduled_plan_id is None
        assert sub.scheduled_change_at is None

    def test_same_plan_and_interval_is_noop(self, billing, tenant, plans, fake_gateway):
        result = billing.state.request_plan_change(tenant.id, plans["basic"].id, "monthly", now=NOW)

        assert result.applied == APPLIED_NONE
        assert fake_gateway.calls == []
        assert AuditLog.query.count() == 0

    def test_unknown_plan_raises_not_found(self, billing, tenant):
        with pytest.raises(NotFoundError):
            billing.state.request_plan_change(tenant.id, 9999, "monthly", now=NOW)

    def test_unknown_interval_rejected(self, billing, tenant, plans):
        with pytest.raises(ValidationError):
            billing.state.request_plan_change(tenant.id, plans["pro"].id, "weekly", now=NOW)

    def test_cancelled_subscription_cannot_change_plan(self, billing, plans):
        tenant = make_tenant(plans["basic"], slug="gone", status=STATUS_CANCELLED)
        with pytest.raises(ValidationError):
            billing.state.request_plan_change(tenant.id, plans["pro"].id, "monthly", now=NOW)


# ============================================================================
# Downgrades
# ============================================================================


class TestDowngrade:
    @pytest.fixture
    def pro_tenant(self, plans):
        return make_tenant(plans["pro"], slug="protenant")

    def test_downgrade_is_scheduled_at_period_end(self, billing, pro_tenant, plans, fake_gateway):
        result = billing.state.request_plan_change(
            pro_tenant.id, plans["basic"].id, "monthly", now=NOW
        )

        assert result.applied == APPLIED_SCHEDULED
        sub = _reload(pro_tenant)
        assert sub.plan_id == plans["pro"].id
        assert sub.scheduled_plan_id == plans["basic"].id
        assert as_utc(sub.scheduled_change_at) == NOW + datetime.timedelta(days=20)
        assert as_utc(result.scheduled_change_at) == NOW + datetime.timedelta(days=20)
        assert fake_gateway.calls == []

    def test_downgrade_warns_about_lost_modules(self, billing, pro_tenant, plans):
        result = billing.state.request_plan_change(
            pro_tenant.id, plans["basic"].id, "monthly", now=NOW
        )

        assert any("reports" in warning for warning in result.warnings)

    def test_downgrade_blocked_by_user_limit(self, billing, pro_tenant, plans):
        add_users(pro_tenant, 2)  # 4 active users, Basic allows 3

        with pytest.raises(ValidationError) as excinfo:
            billing.state.request_plan_change(pro_tenant.id, plans["basic"].id, "monthly", now=NOW)

        assert "4 active users" in excinfo.value.errors[0]
        sub = _reload(pro_tenant)
        assert sub.scheduled_plan_id is None
        assert sub.plan_id == plans["pro"].id

    def test_inactive_users_do_not_count(self, billing, pro_tenant, plans):
        add_users(pro_tenant, 5, active=False)

        result = billing.state.request_plan_change(
            pro_tenant.id, plans["basic"].id, "monthly", now=NOW
        )

        assert result.applied == APPLIED_SCHEDULED

    def test_activated_regulated_module_blocks(self, billing, pro_tenant, plans):
        db.session.add(ModuleActivation(
            tenant_id=pro_tenant.id, module_code="electronic_invoicing",
            status=ACTIVATION_ACTIVATED,
        ))
        db.session.commit()

        with pytest.raises(ValidationError) as excinfo:
            billing.state.request_plan_change(pro_tenant.id, plans["basic"].id, "monthly", now=NOW)

        assert "electronic_invoicing" in excinfo.value.errors[0]
        assert _reload(pro_tenant).scheduled_plan_id is None

    def test_pending_regulated_module_warns(self, billing, pro_tenant, plans):
        db.session.add(ModuleActivation(
            tenant_id=pro_tenant.id, module_code="electronic_invoicing",
            status=ACTIVATION_PENDING,
        ))
        db.session.commit()

        result = billing.state.request_plan_change(
            pro_tenant.id, plans["basic"].id, "monthly", now=NOW
        )

        assert result.applied == APPLIED_SCHEDULED
        assert any("pending activation" in warning for warning in result.warnings)
        assert any("reports" in warning for warning in result.warnings)

    def test_addon_module_is_not_lost(self, billing, pro_tenant, plans):
        db.session.add(TenantAddOn(tenant_id=pro_tenant.id, module_code="reports"))
        db.session.commit()

        result = billing.state.request_plan_change(
            pro_tenant.id, plans["basic"].id, "monthly", now=NOW
        )

        assert not any("reports" in warning for warning in result.warnings)

    def test_missing_period_end_raises_configuration_error(self, billing, pro_tenant, plans):
        sub = _reload(pro_tenant)
        sub.current_period_end = None
        db.session.commit()

        with pytest.raises(ConfigurationError):
            billing.state.request_plan_change(pro_tenant.id, plans["basic"].id, "monthly", now=NOW)

    def test_same_plan_interval_switch_is_scheduled(self, billing, tenant, plans):
        result = billing.state.request_plan_change(tenant.id, plans["basic"].id, "yearly", now=NOW)

        assert result.applied == APPLIED_SCHEDULED
        sub = _reload(tenant)
        assert sub.billing_interval == "monthly"
        assert sub.scheduled_plan_id == plans["basic"].id
        assert sub.scheduled_billing_interval == "yearly"

    def test_validate_downgrade_reports_without_changing(self, billing, pro_tenant, plans):
        add_users(pro_tenant, 2)

        validation = billing.state.validate_downgrade(pro_tenant.id, plans["basic"].id, now=NOW)

        assert validation.allowed is False
        assert len(validation.errors) == 1
        assert _reload(pro_tenant).scheduled_plan_id is None


class TestUpgradeThenDowngradeScenario:
    def test_a_to_b_immediate_then_b_to_a_deferred(self, billing, tenant, plans):
        billing.state.request_plan_change(tenant.id, plans["pro"].id, "monthly", now=NOW)
        sub = _reload(tenant)
        assert sub.plan_id == plans["pro"].id
        assert sub.scheduled_plan_id is None

        result = billing.state.request_plan_change(tenant.id, plans["basic"].id, "monthly", now=NOW)
        sub = _reload(tenant)
        assert sub.plan_id == plans["pro"].id
        assert sub.scheduled_plan_id == plans["basic"].id
        assert as_utc(result.scheduled_change_at) == as_utc(sub.current_period_end)

        billing.state.apply_scheduled_changes(NOW + datetime.timedelta(days=19))
        assert _reload(tenant).plan_id == plans["pro"].id

        billing.state.apply_scheduled_changes(NOW + datetime.timedelta(days=20))
        sub = _reload(tenant)
        assert sub.plan_id == plans["basic"].id
        assert sub.scheduled_plan_id is None


# ============================================================================
# Scheduled changes
# ============================================================================


class TestApplyScheduledChanges:
    @pytest.fixture
    def scheduled(self, billing, plans):
        tenant = make_tenant(plans["pro"], slug="sched")
        billing.state.request_plan_change(tenant.id, plans["basic"].id, "monthly", now=NOW)
        return tenant

    def test_nothing_due_before_change_date(self, billing, scheduled, plans):
        result = billing.state.apply_scheduled_changes(NOW)

        assert result.checked == 0
        assert _reload(scheduled).plan_id == plans["pro"].id

    def test_applies_once_when_due(self, billing, scheduled, plans, fake_gateway):
        due = NOW + datetime.timedelta(days=21)

        first = billing.state.apply_scheduled_changes(due)
        second = billing.state.apply_scheduled_changes(due)

        assert first.applied == 1
        assert second.checked == 0
        sub = _reload(scheduled)
        assert sub.plan_id == plans["basic"].id
        assert sub.scheduled_plan_id is None
        assert sub.scheduled_change_at is None
        assert db.session.get(Tenant, scheduled.id).plan_id == plans["basic"].id
        assert fake_gateway.calls_named("update_subscription_price") == [
            ("update_subscription_price", "sub_123", "price_basic_m", False)
        ]

    def test_gateway_failure_postpones_change(self, billing, scheduled, plans, fake_gateway):
        fake_gateway.fail_with = ExternalGatewayError("timeout", provider="fake")

        result = billing.state.apply_scheduled_changes(NOW + datetime.timedelta(days=21))

        assert result.sync_failed == 1
        sub = _reload(scheduled)
        assert sub.plan_id == plans["pro"].id
        assert sub.scheduled_plan_id == plans["basic"].id
        assert sub.needs_external_sync is True

    def test_retry_succeeds_on_next_sweep(self, billing, scheduled, plans, fake_gateway):
        fake_gateway.fail_with = ExternalGatewayError("timeout", provider="fake")
        billing.state.apply_scheduled_changes(NOW + datetime.timedelta(days=21))
        fake_gateway.fail_with = None

        result = billing.state.apply_scheduled_changes(NOW + datetime.timedelta(days=22))

        assert result.applied == 1
        assert _reload(scheduled).plan_id == plans["basic"].id

    def test_interval_switch_applied(self, billing, tenant, plans, fake_gateway):
        billing.state.request_plan_change(tenant.id, plans["basic"].id, "yearly", now=NOW)

        billing.state.apply_scheduled_changes(NOW + datetime.timedelta(days=21))

        sub = _reload(tenant)
        assert sub.billing_interval == "yearly"
        assert sub.scheduled_billing_interval is None
        assert fake_gateway.calls_named("update_subscription_price")[0][2] == "price_basic_y"


# ============================================================================
# Payments
# ============================================================================


class TestConfirmPayment:
    def test_new_cycle_starts_at_now(self, billing, plans):
        tenant = make_tenant(plans["basic"], slug="fresh", status=STATUS_PENDING_PAYMENT)

        changed = billing.state.confirm_payment_approved(
            tenant.id, plans["pro"].id, "monthly", None, NOW
        )
        db.session.commit()

        assert changed is True
        sub = _reload(tenant)
        assert sub.status == STATUS_ACTIVE
        assert sub.plan_id == plans["pro"].id
        assert as_utc(sub.current_period_start) == NOW
        assert as_utc(sub.current_period_end) == datetime.datetime(2026, 4, 10, 12, tzinfo=NOW.tzinfo)

    def test_yearly_period(self, billing, plans):
        tenant = make_tenant(plans["basic"], slug="yearly", status=STATUS_PENDING_PAYMENT)

        billing.state.confirm_payment_approved(tenant.id, plans["basic"].id, "yearly", None, NOW)
        db.session.commit()

        assert as_utc(_reload(tenant).current_period_end).year == 2027

    def test_replay_of_same_transaction_is_noop(self, billing, tenant, plans):
        payment, transaction = billing.state.start_subscription_payment(
            tenant.id, plans["pro"].id, "monthly", now=NOW
        )

        first = billing.state.confirm_payment_approved(
            tenant.id, plans["pro"].id, "monthly", transaction.id, NOW
        )
        db.session.commit()
        second = billing.state.confirm_payment_approved(
            tenant.id, plans["pro"].id, "monthly", transaction.id, NOW
        )

        assert first is True
        assert second is False
        assert db.session.get(Payment, payment.id).status == PAYMENT_APPROVED

    def test_confirmed_payment_reopens_cancelled_subscription(self, billing, plans):
        tenant = make_tenant(plans["basic"], slug="back", status=STATUS_CANCELLED)

        billing.state.confirm_payment_approved(tenant.id, plans["basic"].id, "monthly", None, NOW)
        db.session.commit()

        sub = _reload(tenant)
        assert sub.status == STATUS_ACTIVE
        assert sub.cancelled_at is None

    def test_creates_subscription_when_missing(self, billing, plans):
        tenant = Tenant(name="New", slug="new", plan_id=plans["basic"].id)
        db.session.add(tenant)
        db.session.commit()

        billing.state.confirm_payment_approved(tenant.id, plans["basic"].id, "monthly", None, NOW)
        db.session.commit()

        assert _reload(tenant).status == STATUS_ACTIVE


class TestStartSubscriptionPayment:
    def test_creates_pending_payment_and_charge(self, billing, tenant, plans, fake_gateway):
        payment, transaction = billing.state.start_subscription_payment(
            tenant.id, plans["pro"].id, "yearly", now=NOW
        )

        assert payment.status == "PENDING"
        assert payment.amount == 800
        assert payment.external_id == transaction.id
        assert payment.meta["plan_id"] == plans["pro"].id
        assert payment.meta["billing_interval"] == "yearly"
        assert fake_gateway.calls_named("create_charge")[0][2:] == ("pro", "yearly")

    def test_gateway_failure_declines_payment(self, billing, tenant, plans, fake_gateway):
        fake_gateway.fail_with = ExternalGatewayError("card service down", provider="fake")

        with pytest.raises(ExternalGatewayError):
            billing.state.start_subscription_payment(tenant.id, plans["pro"].id, "monthly", now=NOW)

        payment = Payment.query.filter_by(tenant_id=tenant.id).one()
        assert payment.status == "DECLINED"
        assert "card service down" in payment.meta["error"]


# ============================================================================
# Gateway-driven transitions
# ============================================================================


class TestPaymentFailures:
    def test_first_failure_only_records_time(self, billing, tenant, subscription, alerts):
        billing.state.record_payment_failure(subscription, NOW)
        db.session.commit()

        sub = _reload(tenant)
        assert sub.status == STATUS_ACTIVE
        assert as_utc(sub.last_payment_failed_at) == NOW
        assert db.session.get(Tenant, tenant.id).is_active is True
        assert alerts.alerts == []

    def test_second_failure_within_window_suspends(self, billing, tenant, subscription, alerts):
        billing.state.record_payment_failure(subscription, NOW)
        billing.state.record_payment_failure(subscription, NOW + datetime.timedelta(days=5))
        db.session.commit()

        sub = _reload(tenant)
        assert sub.status == STATUS_SUSPENDED
        assert db.session.get(Tenant, tenant.id).is_active is False
        # Held until the caller has committed
        assert alerts.alerts == []
        assert send_queued_alerts(alerts) == 1
        assert alerts.severities() == ["critical"]

    def test_suspension_alert_dropped_with_the_transaction(self, billing, subscription, alerts):
        billing.state.record_payment_failure(subscription, NOW)
        billing.state.record_payment_failure(subscription, NOW + datetime.timedelta(days=5))
        db.session.rollback()
        discard_queued_alerts()

        assert send_queued_alerts(alerts) == 0
        assert alerts.alerts == []

    def test_second_failure_after_window_does_not_suspend(self, billing, tenant, subscription):
        billing.state.record_payment_failure(subscription, NOW)
        billing.state.record_payment_failure(subscription, NOW + datetime.timedelta(days=40))
        db.session.commit()

        assert _reload(tenant).status == STATUS_ACTIVE

    def test_paid_invoice_clears_failure(self, billing, tenant, subscription):
        billing.state.record_payment_failure(subscription, NOW)
        invoice = GatewayInvoice(
            id="in_1", subscription_id="sub_123", status="paid",
            period_start=NOW, period_end=NOW + datetime.timedelta(days=30),
        )
        billing.state.activate_from_invoice(subscription, invoice, NOW + datetime.timedelta(hours=1))
        db.session.commit()

        sub = _reload(tenant)
        assert sub.status == STATUS_ACTIVE
        assert sub.last_payment_failed_at is None
        assert as_utc(sub.current_period_end) == NOW + datetime.timedelta(days=30)


class TestOrdering:
    def test_cancelled_is_terminal_for_invoice_events(self, billing, tenant, subscription):
        billing.state.cancel_from_gateway(subscription, NOW)
        invoice = GatewayInvoice(id="in_2", subscription_id="sub_123", status="paid")

        applied = billing.state.activate_from_invoice(
            subscription, invoice, NOW + datetime.timedelta(minutes=5)
        )
        db.session.commit()

        assert applied is False
        assert _reload(tenant).status == STATUS_CANCELLED

    def test_older_event_does_not_override_newer(self, billing, tenant, subscription):
        billing.state.record_payment_failure(subscription, NOW)
        invoice = GatewayInvoice(id="in_3", subscription_id="sub_123", status="paid")

        applied = billing.state.activate_from_invoice(
            subscription, invoice, NOW - datetime.timedelta(hours=1)
        )
        db.session.commit()

        assert applied is False
        assert _reload(tenant).status == STATUS_ACTIVE
        assert _reload(tenant).last_payment_failed_at is not None

    def test_gateway_update_with_unknown_price_raises(self, billing, subscription):
        remote = GatewaySubscription(
            id="sub_123", status="active", price_id="price_unknown",
            current_period_start=None, current_period_end=None,
        )
        with pytest.raises(ConfigurationError):
            billing.state.apply_gateway_state(subscription, remote, NOW)


class TestRefunds:
    def test_full_refund_cancels_and_deactivates(self, billing, tenant, subscription, fake_gateway):
        charge = GatewayCharge(id="ch_1", amount=5000, amount_refunded=5000,
                               subscription_id="sub_123")

        billing.state.handle_charge_refunded(charge, NOW)
        db.session.commit()

        sub = _reload(tenant)
        assert sub.status == STATUS_CANCELLED
        assert sub.cancelled_at is not None
        assert db.session.get(Tenant, tenant.id).is_active is False
        assert fake_gateway.calls_named("cancel_subscription") == [("cancel_subscription", "sub_123")]

    def test_full_refund_survives_gateway_cancel_failure(
        self, billing, tenant, subscription, fake_gateway
    ):
        fake_gateway.fail_with = ExternalGatewayError("down", provider="fake")
        charge = GatewayCharge(id="ch_1", amount=5000, amount_refunded=5000,
                               subscription_id="sub_123")

        billing.state.handle_charge_refunded(charge, NOW)
        db.session.commit()

        assert _reload(tenant).status == STATUS_CANCELLED

    def test_half_refund_extends_period_by_fifteen_days(self, billing, tenant, subscription):
        charge = GatewayCharge(id="ch_2", amount=5000, amount_refunded=2500,
                               subscription_id="sub_123")

        billing.state.handle_charge_refunded(charge, NOW)
        db.session.commit()

        sub = _reload(tenant)
        assert sub.status == STATUS_ACTIVE
        assert as_utc(sub.current_period_end) == NOW + datetime.timedelta(days=35)

    def test_refund_resolved_through_invoice(self, billing, tenant, subscription, fake_gateway):
        fake_gateway.invoices["in_9"] = GatewayInvoice(
            id="in_9", subscription_id="sub_123", status="paid"
        )
        charge = GatewayCharge(id="ch_3", amount=5000, amount_refunded=5000, invoice_id="in_9")

        assert billing.state.handle_charge_refunded(charge, NOW) is True
        db.session.commit()

        assert _reload(tenant).status == STATUS_CANCELLED

    def test_refund_marks_payment_refunded(self, billing, tenant, subscription):
        payment = Payment(tenant_id=tenant.id, provider="fake", status=PAYMENT_APPROVED,
                          amount=50, external_id="txn_paid")
        db.session.add(payment)
        db.session.commit()
        charge = GatewayCharge(id="ch_4", amount=5000, amount_refunded=5000,
                               transaction_id="txn_paid")

        billing.state.handle_charge_refunded(charge, NOW)
        db.session.commit()

        assert db.session.get(Payment, payment.id).status == PAYMENT_REFUNDED
        assert _reload(tenant).status == STATUS_CANCELLED

    def test_full_refund_after_gateway_cancellation_does_not_cancel_again(
        self, billing, tenant, subscription, fake_gateway
    ):
        payment = Payment(tenant_id=tenant.id, provider="fake", status=PAYMENT_APPROVED,
                          amount=50, external_id="txn_late")
        db.session.add(payment)
        billing.state.cancel_from_gateway(subscription, NOW)
        db.session.commit()
        cancelled_at = _reload(tenant).cancelled_at
        audit_rows = AuditLog.query.count()
        charge = GatewayCharge(id="ch_5", amount=5000, amount_refunded=5000,
                               subscription_id="sub_123", transaction_id="txn_late")

        assert billing.state.handle_charge_refunded(charge, NOW + datetime.timedelta(hours=1))
        db.session.commit()

        assert fake_gateway.calls_named("cancel_subscription") == []
        assert db.session.get(Payment, payment.id).status == PAYMENT_REFUNDED
        assert _reload(tenant).cancelled_at == cancelled_at
        assert AuditLog.query.count() == audit_rows

        # A second delivery of the same refund changes nothing
        replay = billing.state.handle_charge_refunded(charge, NOW + datetime.timedelta(hours=2))
        assert replay is False

    def test_unmatched_refund_is_ignored(self, billing, tenant):
        charge = GatewayCharge(id="ch_5", amount=5000, amount_refunded=5000)

        assert billing.state.handle_charge_refunded(charge, NOW) is False
