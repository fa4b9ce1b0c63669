"""Shared fixtures: in-memory app, fake gateway, recording alerts, plan/tenant data."""

import datetime
import os
from datetime import timezone
from decimal import Decimal

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["PAYMENT_GATEWAY"] = "none"
os.environ["ALERTS_ENABLED"] = "false"
os.environ["CONFIG_PATH"] = "does-not-exist.yaml"

from app import create_app
from extensions import db
from models import (
    INTERVAL_MONTHLY,
    PAYMENT_PENDING,
    STATUS_ACTIVE,
    PlanFeature,
    SubscriptionPlan,
    Tenant,
    TenantSubscription,
    User,
    UserTenant,
)
from services.billing import init_billing
from services.errors import ExternalGatewayError
from services.gateway_types import GatewayTransaction, WebhookEvent
from services.gateways import PaymentGatewayClient

NOW = datetime.datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeGateway(PaymentGatewayClient):
    """In-memory gateway that records every call and can be told to fail."""

    name = "fake"
    signature_header = "X-Fake-Signature"
    manages_subscriptions = True

    def __init__(self):
        super().__init__(timeout=1.0)
        self.calls = []
        self.fail_with = None
        self.subscriptions = {}
        self.transactions = {}
        self.invoices = {}
        self.open_invoices = {}
        self.paid_invoices = []
        self.queued_event = None
        self._counter = 0

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail_with is not None:
            raise self.fail_with

    def calls_named(self, name):
        return [call for call in self.calls if call[0] == name]

    def create_charge(self, payment, plan, billing_interval, customer_email, details=None):
        self._record("create_charge", payment.id, plan.slug, billing_interval)
        self._counter += 1
        transaction = GatewayTransaction(
            id=f"txn_{self._counter}",
            status=PAYMENT_PENDING,
            amount=payment.amount,
            currency=payment.currency,
            reference=payment.meta.get("reference"),
            redirect_url="https://pay.example/checkout",
        )
        self.transactions[transaction.id] = transaction
        return transaction

    def retrieve_transaction(self, transaction_id):
        self._record("retrieve_transaction", transaction_id)
        if transaction_id not in self.transactions:
            raise ExternalGatewayError("unknown transaction", provider=self.name, retryable=False)
        return self.transactions[transaction_id]

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id)
        return self.subscriptions.get(subscription_id)

    def update_subscription_price(self, subscription_id, price_id, prorate):
        self._record("update_subscription_price", subscription_id, price_id, prorate)

    def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription", subscription_id)

    def retrieve_invoice(self, invoice_id):
        self._record("retrieve_invoice", invoice_id)
        return self.invoices.get(invoice_id)

    def list_open_invoices(self, subscription_id):
        self._record("list_open_invoices", subscription_id)
        return list(self.open_invoices.get(subscription_id, []))

    def list_paid_invoices(self, since):
        self._record("list_paid_invoices", since)
        return [inv for inv in self.paid_invoices if inv.paid_at and inv.paid_at >= since]

    def parse_webhook(self, raw_body, signature):
        if signature != "good":
            return None
        return self.queued_event


class RecordingAlerts:
    def __init__(self):
        self.alerts = []

    def send_alert(self, alert):
        self.alerts.append(alert)

    def severities(self):
        return [alert.severity for alert in self.alerts]


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def app(fake_gateway, alerts):
    """Create application for testing, with the fake gateway wired in."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    application.config["RATELIMIT_ENABLED"] = False
    init_billing(application, application.config["SETTINGS"], gateway=fake_gateway, alerts=alerts)
    with application.app_context():
        yield application
        db.session.remove()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def billing(app):
    return app.extensions["billing"]


def _plan(slug, name, monthly, yearly, max_users, modules, sort_order):
    plan = SubscriptionPlan(
        slug=slug,
        name=name,
        price_monthly=Decimal(monthly),
        price_yearly=Decimal(yearly) if yearly is not None else None,
        currency="USD",
        max_users=max_users,
        external_price_monthly_id=f"price_{slug}_m",
        external_price_yearly_id=f"price_{slug}_y",
        sort_order=sort_order,
    )
    plan.features = [PlanFeature(module_code=code) for code in modules]
    db.session.add(plan)
    return plan


@pytest.fixture
def plans(app):
    """Basic ($50) < Pro ($80) < Enterprise ($200).  Pro adds a regulated module."""
    basic = _plan("basic", "Basic", "50.00", "500.00", 3, ["sales", "inventory"], 1)
    pro = _plan("pro", "Pro", "80.00", "800.00", 10,
                ["sales", "inventory", "reports", "electronic_invoicing"], 2)
    enterprise = _plan("enterprise", "Enterprise", "200.00", None, 0,
                       ["sales", "inventory", "reports", "electronic_invoicing", "payroll"], 3)
    db.session.commit()
    return {"basic": basic, "pro": pro, "enterprise": enterprise}


def add_users(tenant, count, active=True):
    for _ in range(count):
        index = User.query.count() + 1
        user = User(username=f"user{index}", email=f"user{index}@example.com", is_active=active)
        db.session.add(user)
        db.session.flush()
        db.session.add(UserTenant(user_id=user.id, tenant_id=tenant.id))
    db.session.commit()


def make_tenant(plan, slug="acme", status=STATUS_ACTIVE, external_id="sub_123", users=2):
    tenant = Tenant(name=slug.title(), slug=slug, email=f"billing@{slug}.example",
                    plan_id=plan.id, billing_interval=INTERVAL_MONTHLY)
    db.session.add(tenant)
    db.session.flush()
    sub = TenantSubscription(
        tenant_id=tenant.id,
        plan_id=plan.id,
        status=status,
        billing_interval=INTERVAL_MONTHLY,
        current_period_start=NOW - datetime.timedelta(days=10),
        current_period_end=NOW + datetime.timedelta(days=20),
        external_subscription_id=external_id,
        external_customer_id="cus_1" if external_id else None,
    )
    db.session.add(sub)
    db.session.commit()
    add_users(tenant, users)
    return tenant


@pytest.fixture
def tenant(plans):
    """Tenant on Basic, ACTIVE, 20 days left, linked to gateway subscription sub_123."""
    return make_tenant(plans["basic"])


@pytest.fixture
def subscription(tenant):
    return TenantSubscription.query.filter_by(tenant_id=tenant.id).one()


@pytest.fixture
def make_event():
    def factory(event_type, data, event_id="evt_1", created_at=NOW, provider="fake"):
        return WebhookEvent(
            id=event_id,
            type=event_type,
            data=data,
            provider=provider,
            created_at=created_at,
            raw_type=event_type.value,
            raw={"id": event_id},
        )
    return factory


@pytest.fixture
def logged_in_client(client, tenant):
    """Test client with the tenant selected in the session."""
    with client.session_transaction() as sess:
        sess["active_tenant_id"] = tenant.id
    return client
