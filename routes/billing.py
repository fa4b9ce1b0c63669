"""Billing routes: gateway webhook, plan changes, checkout and payment polling."""

import logging

from flask import Blueprint, jsonify, request

from extensions import csrf, limiter
from models import SubscriptionPlan
from services.billing import get_billing
from services.errors import BillingError, ConfigurationError, NotFoundError, ValidationError
from services.tenant import require_tenant
from utils import safe_int

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/billing")


@billing_bp.errorhandler(BillingError)
def handle_billing_error(error):
    body = {"success": False, "error": str(error)}
    if isinstance(error, ValidationError):
        body["errors"] = error.errors
        body["warnings"] = error.warnings
    return jsonify(body), error.status_code


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


# ---------------------------------------------------------------------------
# Gateway webhook
# ---------------------------------------------------------------------------

@billing_bp.route("/webhook", methods=["POST"])
@csrf.exempt
@limiter.exempt
def webhook():
    """Receive a payment gateway event.

    400 on a bad signature; 500 when handling fails so the provider retries.
    """
    billing = get_billing()
    header = billing.gateway.signature_header
    signature = request.headers.get(header, "") if header else ""
    event = billing.webhooks.verify_and_parse(request.get_data(), signature)
    if event is None:
        return jsonify({"status": "error", "message": "invalid signature"}), 400
    try:
        applied = billing.webhooks.handle(event)
    except Exception:
        # Already logged with traceback by the processor.
        return jsonify({"status": "error"}), 500
    return jsonify({"status": "ok", "duplicate": not applied}), 200


# ---------------------------------------------------------------------------
# Plans & subscription
# ---------------------------------------------------------------------------

@billing_bp.route("/plans")
def plans():
    """Active plans with prices."""
    rows = (
        SubscriptionPlan.query.filter_by(is_active=True)
        .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id)
        .all()
    )
    return jsonify([
        {
            "id": plan.id,
            "name": plan.name,
            "slug": plan.slug,
            "price_monthly": str(plan.price_monthly) if plan.price_monthly is not None else None,
            "price_yearly": str(plan.price_yearly) if plan.price_yearly is not None else None,
            "currency": plan.currency,
            "max_users": plan.max_users,
            "modules": sorted(plan.module_codes),
        }
        for plan in rows
    ])


@billing_bp.route("/subscription")
def subscription():
    tid = require_tenant()
    sub = get_billing().state.get_subscription(tid)
    if sub is None:
        raise NotFoundError("No subscription for this tenant")
    return jsonify(sub.to_dict())


@billing_bp.route("/plan", methods=["PATCH"])
def change_plan():
    """Upgrade now or schedule a downgrade for the end of the period."""
    tid = require_tenant()
    data = _json_body()
    plan_id = safe_int(data.get("plan_id"), default=None)
    if plan_id is None:
        raise ValidationError(["plan_id is required"])
    try:
        result = get_billing().state.request_plan_change(
            tid, plan_id, data.get("billing_interval") or None
        )
    except ConfigurationError as e:
        return jsonify({"success": False, "error": str(e)}), 409
    return jsonify(result.to_dict())


@billing_bp.route("/plan/validate-downgrade")
def validate_downgrade():
    tid = require_tenant()
    plan_id = safe_int(request.args.get("plan_id"), default=None)
    if plan_id is None:
        raise ValidationError(["plan_id is required"])
    return jsonify(get_billing().state.validate_downgrade(tid, plan_id).to_dict())


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@billing_bp.route("/checkout", methods=["POST"])
@limiter.limit("10 per minute")
def checkout():
    """Start a subscription payment and return what the client needs to pay."""
    tid = require_tenant()
    data = _json_body()
    plan_id = safe_int(data.get("plan_id"), default=None)
    if plan_id is None:
        raise ValidationError(["plan_id is required"])
    payment, transaction = get_billing().state.start_subscription_payment(
        tid,
        plan_id,
        data.get("billing_interval") or "monthly",
        customer_email=data.get("customer_email"),
        details=data.get("details") or {},
    )
    body = {"payment_id": payment.id, "status": payment.status}
    if transaction is not None:
        body.update({
            "transaction_id": transaction.id,
            "redirect_url": transaction.redirect_url,
            "form_data": transaction.form_data,
        })
    return jsonify(body), 201


@billing_bp.route("/transactions/<transaction_id>")
def transaction_status(transaction_id):
    """Payment-confirmation poll."""
    tid = require_tenant()
    return jsonify(get_billing().payments.get_transaction_status(tid, transaction_id))
