"""SQLAlchemy models for tenants, plans and subscription billing."""

from __future__ import annotations

import json
from decimal import Decimal

from extensions import db
from utils import as_utc, utc_now

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

STATUS_ACTIVE = "ACTIVE"
STATUS_PENDING_PAYMENT = "PENDING_PAYMENT"
STATUS_CANCELLED = "CANCELLED"
STATUS_SUSPENDED = "SUSPENDED"
VALID_SUBSCRIPTION_STATUSES = {
    STATUS_ACTIVE,
    STATUS_PENDING_PAYMENT,
    STATUS_CANCELLED,
    STATUS_SUSPENDED,
}

INTERVAL_MONTHLY = "monthly"
INTERVAL_YEARLY = "yearly"
VALID_BILLING_INTERVALS = {INTERVAL_MONTHLY, INTERVAL_YEARLY}

PAYMENT_PENDING = "PENDING"
PAYMENT_APPROVED = "APPROVED"
PAYMENT_DECLINED = "DECLINED"
PAYMENT_REFUNDED = "REFUNDED"
VALID_PAYMENT_STATUSES = {PAYMENT_PENDING, PAYMENT_APPROVED, PAYMENT_DECLINED, PAYMENT_REFUNDED}

PURPOSE_SUBSCRIPTION = "SUBSCRIPTION"
ADDON_PURPOSE_PREFIX = "ADDON:"

ACTIVATION_PENDING = "pending"
ACTIVATION_ACTIVATED = "activated"


# ---------------------------------------------------------------------------
# Tenant & users
# ---------------------------------------------------------------------------

class Tenant(db.Model):
    """A tenant represents an isolated business entity (company/organization)."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    email = db.Column(db.String(120))
    billing_email = db.Column(db.String(120))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    billing_interval = db.Column(db.String(20), default=INTERVAL_MONTHLY, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    plan = db.relationship("SubscriptionPlan")
    user_memberships = db.relationship(
        "UserTenant", backref="tenant", cascade="all, delete-orphan"
    )


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    tenant_memberships = db.relationship(
        "UserTenant", backref="user", cascade="all, delete-orphan"
    )


class UserTenant(db.Model):
    """Associates users with tenants; counts toward the plan's user limit."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("user_id", "tenant_id", name="uq_user_tenant"),
    )


# ---------------------------------------------------------------------------
# Plans (reference data)
# ---------------------------------------------------------------------------

class SubscriptionPlan(db.Model):
    """Defines available subscription tiers and their entitled modules."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.Text)
    price_monthly = db.Column(db.Numeric(12, 2, asdecimal=True))
    price_yearly = db.Column(db.Numeric(12, 2, asdecimal=True))
    currency = db.Column(db.String(10), default="USD")
    max_users = db.Column(db.Integer)  # NULL or 0 = unlimited
    external_price_monthly_id = db.Column(db.String(120), index=True)
    external_price_yearly_id = db.Column(db.String(120), index=True)
    is_active = db.Column(db.Boolean, default=True)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    features = db.relationship(
        "PlanFeature", backref="plan", cascade="all, delete-orphan"
    )

    @property
    def module_codes(self) -> set[str]:
        return {feature.module_code for feature in self.features}

    def effective_price(self, billing_interval: str) -> Decimal:
        """Price used to compare plans at *billing_interval*.

        Yearly price when the interval is yearly and it is defined, else the
        monthly price, else whichever one exists.
        """
        if billing_interval == INTERVAL_YEARLY and self.price_yearly is not None:
            return Decimal(self.price_yearly)
        if self.price_monthly is not None:
            return Decimal(self.price_monthly)
        if self.price_yearly is not None:
            return Decimal(self.price_yearly)
        return Decimal("0")

    def external_price_id(self, billing_interval: str):
        if billing_interval == INTERVAL_YEARLY:
            return self.external_price_yearly_id
        return self.external_price_monthly_id


class PlanFeature(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"), nullable=False)
    module_code = db.Column(db.String(60), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("plan_id", "module_code", name="uq_plan_feature"),
    )


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

class TenantSubscription(db.Model):
    """The single subscription row of a tenant; never hard-deleted."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), unique=True, nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"), nullable=False)
    status = db.Column(db.String(30), default=STATUS_PENDING_PAYMENT, nullable=False)
    billing_interval = db.Column(db.String(20), default=INTERVAL_MONTHLY, nullable=False)
    current_period_start = db.Column(db.DateTime)
    current_period_end = db.Column(db.DateTime)
    scheduled_plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"))
    scheduled_change_at = db.Column(db.DateTime, index=True)
    scheduled_billing_interval = db.Column(db.String(20))
    external_subscription_id = db.Column(db.String(120), unique=True)
    external_customer_id = db.Column(db.String(120))
    needs_external_sync = db.Column(db.Boolean, default=False, nullable=False, index=True)
    last_sync_error = db.Column(db.Text)
    last_payment_failed_at = db.Column(db.DateTime)
    last_external_event_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    tenant = db.relationship("Tenant", backref=db.backref("subscription", uselist=False))
    plan = db.relationship("SubscriptionPlan", foreign_keys=[plan_id])
    scheduled_plan = db.relationship("SubscriptionPlan", foreign_keys=[scheduled_plan_id])

    __table_args__ = (
        db.CheckConstraint(
            "(scheduled_plan_id IS NULL AND scheduled_change_at IS NULL) OR "
            "(scheduled_plan_id IS NOT NULL AND scheduled_change_at IS NOT NULL)",
            name="ck_subscription_scheduled_pair",
        ),
        db.Index("ix_subscription_status", "status"),
    )

    def clear_scheduled_change(self) -> None:
        self.scheduled_plan_id = None
        self.scheduled_change_at = None
        self.scheduled_billing_interval = None

    def to_dict(self) -> dict:
        period_start = as_utc(self.current_period_start)
        period_end = as_utc(self.current_period_end)
        scheduled_at = as_utc(self.scheduled_change_at)
        return {
            "tenant_id": self.tenant_id,
            "plan": {"id": self.plan.id, "name": self.plan.name, "slug": self.plan.slug}
            if self.plan
            else None,
            "status": self.status,
            "billing_interval": self.billing_interval,
            "current_period_start": period_start.isoformat() if period_start else None,
            "current_period_end": period_end.isoformat() if period_end else None,
            "scheduled_plan_id": self.scheduled_plan_id,
            "scheduled_change_at": scheduled_at.isoformat() if scheduled_at else None,
            "needs_external_sync": self.needs_external_sync,
        }


# ---------------------------------------------------------------------------
# Idempotency ledger
# ---------------------------------------------------------------------------

class ProcessedEvent(db.Model):
    """An external event whose business effect has been committed."""
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(191), unique=True, nullable=False)
    event_type = db.Column(db.String(80), nullable=False)
    provider = db.Column(db.String(30))
    object_id = db.Column(db.String(191), index=True)
    processed_at = db.Column(db.DateTime, default=utc_now, nullable=False)
    payload = db.Column(db.Text)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class Payment(db.Model):
    """One payment attempt; anchors an external transaction to a plan/tenant."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    provider = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), default=PAYMENT_PENDING, nullable=False)
    amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), default="USD")
    purpose = db.Column(db.String(80), default=PURPOSE_SUBSCRIPTION)
    external_id = db.Column(db.String(191), index=True)
    metadata_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    tenant = db.relationship("Tenant")

    __table_args__ = (
        db.Index("ix_payment_status_created", "status", "created_at"),
    )

    @property
    def meta(self) -> dict:
        if not self.metadata_json:
            return {}
        try:
            return json.loads(self.metadata_json)
        except ValueError:
            return {}

    @meta.setter
    def meta(self, value: dict) -> None:
        self.metadata_json = json.dumps(value or {})


# ---------------------------------------------------------------------------
# Modules
# ---------------------------------------------------------------------------

class ModuleActivation(db.Model):
    """Activation state of a regulated module (e.g. electronic invoicing)."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False)
    module_code = db.Column(db.String(60), nullable=False)
    status = db.Column(db.String(20), default=ACTIVATION_PENDING, nullable=False)
    requested_at = db.Column(db.DateTime, default=utc_now)
    activated_at = db.Column(db.DateTime)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "module_code", name="uq_module_activation"),
    )


class TenantAddOn(db.Model):
    """A module purchased on top of the plan."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False)
    module_code = db.Column(db.String(60), nullable=False)
    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"))
    valid_until = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "module_code", name="uq_tenant_addon"),
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    source = db.Column(db.String(40))
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
