"""Payment gateway clients.

One capability interface, ``PaymentGatewayClient``, with a variant per
provider.  The variant is chosen once at startup by ``build_gateway_client``;
billing code never checks for a missing gateway, it talks to ``NullClient``.

Every network call carries an explicit timeout.  Transport and provider
errors are translated into ``ExternalGatewayError``.
"""

from __future__ import annotations

import datetime
import hashlib
import hmac
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from urllib.parse import parse_qsl

import requests
import stripe
from requests.exceptions import RequestException

from config_models import PayuConfig, Settings, StripeConfig, WompiConfig
from models import (
    PAYMENT_APPROVED,
    PAYMENT_DECLINED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
)
from services.errors import ConfigurationError, ExternalGatewayError
from services.gateway_types import (
    CheckoutSession,
    EventType,
    GatewayCharge,
    GatewayInvoice,
    GatewaySubscription,
    GatewayTransaction,
    WebhookEvent,
)
from utils import from_timestamp, parse_iso_datetime

logger = logging.getLogger(__name__)


def _to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class PaymentGatewayClient:
    """Capabilities the billing core needs from a payment provider."""

    name = "base"
    signature_header = ""
    manages_subscriptions = False

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    # -- charges ----------------------------------------------------------

    def create_charge(self, payment, plan, billing_interval: str, customer_email: str,
                      details: Optional[dict] = None) -> GatewayTransaction:
        raise NotImplementedError

    def retrieve_transaction(self, transaction_id: str) -> GatewayTransaction:
        raise NotImplementedError

    # -- subscriptions ----------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> Optional[GatewaySubscription]:
        raise self._unsupported("retrieve_subscription")

    def update_subscription_price(self, subscription_id: str, price_id: str,
                                  prorate: bool) -> None:
        raise self._unsupported("update_subscription_price")

    def cancel_subscription(self, subscription_id: str) -> None:
        raise self._unsupported("cancel_subscription")

    # -- invoices ---------------------------------------------------------

    def retrieve_invoice(self, invoice_id: str) -> Optional[GatewayInvoice]:
        raise self._unsupported("retrieve_invoice")

    def list_open_invoices(self, subscription_id: str) -> list[GatewayInvoice]:
        return []

    def list_paid_invoices(self, since: datetime.datetime) -> list[GatewayInvoice]:
        return []

    # -- webhooks ---------------------------------------------------------

    def parse_webhook(self, raw_body: bytes, signature: str) -> Optional[WebhookEvent]:
        """Verify *signature* over *raw_body*; return the event or None."""
        raise NotImplementedError

    def _unsupported(self, operation: str) -> ExternalGatewayError:
        return ExternalGatewayError(
            f"{self.name} does not support {operation}", provider=self.name, retryable=False
        )

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else {}
        except requests.exceptions.Timeout:
            logger.error("Timeout calling %s %s", self.name, url)
            raise ExternalGatewayError(f"Connection to {self.name} timed out", provider=self.name)
        except requests.exceptions.ConnectionError as e:
            logger.error("Connection error calling %s: %s", self.name, e)
            raise ExternalGatewayError(f"Could not connect to {self.name}: {e}", provider=self.name)
        except requests.exceptions.HTTPError as e:
            logger.error("HTTP error from %s: %s", self.name, e)
            raise ExternalGatewayError(f"{self.name} API error: {e}", provider=self.name)
        except (RequestException, ValueError) as e:
            logger.error("Request to %s failed: %s", self.name, e)
            raise ExternalGatewayError(f"Request to {self.name} failed: {e}", provider=self.name)


# ---------------------------------------------------------------------------
# Null client
# ---------------------------------------------------------------------------

class NullClient(PaymentGatewayClient):
    """Gateway stand-in when no provider is configured.

    Read operations find nothing and write operations are no-ops, so the DB
    remains the only record.
    """

    name = "none"

    def create_charge(self, payment, plan, billing_interval, customer_email, details=None):
        raise ConfigurationError("No payment gateway is configured")

    def retrieve_transaction(self, transaction_id):
        raise ConfigurationError("No payment gateway is configured")

    def retrieve_subscription(self, subscription_id):
        return None

    def update_subscription_price(self, subscription_id, price_id, prorate):
        logger.debug("NullClient: skipping price update for %s", subscription_id)

    def cancel_subscription(self, subscription_id):
        logger.debug("NullClient: skipping cancel for %s", subscription_id)

    def retrieve_invoice(self, invoice_id):
        return None

    def parse_webhook(self, raw_body, signature):
        logger.warning("Webhook received but no payment gateway is configured")
        return None


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

STRIPE_EVENT_TYPES = {
    "invoice.paid": EventType.PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": EventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventType.PAYMENT_FAILED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_CANCELLED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "checkout.session.completed": EventType.CHECKOUT_COMPLETED,
    "charge.refunded": EventType.CHARGE_REFUNDED,
}


def _plain(obj) -> dict:
    """Return a Stripe object (or plain dict) as a dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _ref_id(value) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _plain(value).get("id")


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def stripe_subscription_from_dict(obj: dict) -> GatewaySubscription:
    item = _first_item(obj)
    # Newer API versions moved the period onto the subscription item.
    start = obj.get("current_period_start") or item.get("current_period_start")
    end = obj.get("current_period_end") or item.get("current_period_end")
    return GatewaySubscription(
        id=obj["id"],
        status=obj.get("status", ""),
        price_id=_ref_id(item.get("price")),
        current_period_start=from_timestamp(start),
        current_period_end=from_timestamp(end),
        customer_id=_ref_id(obj.get("customer")),
    )


def stripe_invoice_from_dict(obj: dict) -> GatewayInvoice:
    subscription_id = _ref_id(obj.get("subscription"))
    if not subscription_id:
        details = ((obj.get("parent") or {}).get("subscription_details")) or {}
        subscription_id = _ref_id(details.get("subscription"))
    lines = (obj.get("lines") or {}).get("data") or []
    line = lines[0] if lines else {}
    period = line.get("period") or {}
    price_id = _ref_id(line.get("price"))
    if not price_id:
        price_id = ((line.get("pricing") or {}).get("price_details") or {}).get("price")
    transitions = obj.get("status_transitions") or {}
    return GatewayInvoice(
        id=obj["id"],
        subscription_id=subscription_id,
        status=obj.get("status", ""),
        amount_due=int(obj.get("amount_due") or 0),
        amount_paid=int(obj.get("amount_paid") or 0),
        currency=(obj.get("currency") or "").upper(),
        created_at=from_timestamp(obj.get("created")),
        paid_at=from_timestamp(transitions.get("paid_at")),
        period_start=from_timestamp(period.get("start") or obj.get("period_start")),
        period_end=from_timestamp(period.get("end") or obj.get("period_end")),
        price_id=price_id,
        customer_id=_ref_id(obj.get("customer")),
    )


def stripe_charge_from_dict(obj: dict) -> GatewayCharge:
    return GatewayCharge(
        id=obj["id"],
        amount=int(obj.get("amount") or 0),
        amount_refunded=int(obj.get("amount_refunded") or 0),
        currency=(obj.get("currency") or "").upper(),
        invoice_id=_ref_id(obj.get("invoice")),
        transaction_id=_ref_id(obj.get("payment_intent")),
    )


def stripe_checkout_from_dict(obj: dict) -> CheckoutSession:
    return CheckoutSession(
        id=obj["id"],
        subscription_id=_ref_id(obj.get("subscription")),
        customer_id=_ref_id(obj.get("customer")),
        payment_status=obj.get("payment_status", ""),
        metadata=dict(obj.get("metadata") or {}),
    )


_STRIPE_PARSERS = {
    EventType.PAYMENT_SUCCEEDED: stripe_invoice_from_dict,
    EventType.PAYMENT_FAILED: stripe_invoice_from_dict,
    EventType.SUBSCRIPTION_CANCELLED: stripe_subscription_from_dict,
    EventType.SUBSCRIPTION_UPDATED: stripe_subscription_from_dict,
    EventType.CHECKOUT_COMPLETED: stripe_checkout_from_dict,
    EventType.CHARGE_REFUNDED: stripe_charge_from_dict,
}


def stripe_event_from_dict(payload: dict) -> WebhookEvent:
    raw_type = payload.get("type", "")
    event_type = STRIPE_EVENT_TYPES.get(raw_type, EventType.UNRECOGNIZED)
    obj = (payload.get("data") or {}).get("object") or {}
    parser = _STRIPE_PARSERS.get(event_type)
    return WebhookEvent(
        id=payload["id"],
        type=event_type,
        data=parser(obj) if parser else obj,
        provider=StripeClient.name,
        created_at=from_timestamp(payload.get("created")),
        raw_type=raw_type,
        raw=payload,
    )


class StripeClient(PaymentGatewayClient):
    name = "stripe"
    signature_header = "Stripe-Signature"
    manages_subscriptions = True

    def __init__(self, config: StripeConfig, timeout: float = 10.0):
        super().__init__(timeout)
        self.config = config
        self._client = stripe.StripeClient(
            config.secret_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=1,
        )

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", description, e)
            retryable = not isinstance(e, (stripe.InvalidRequestError, stripe.AuthenticationError))
            raise ExternalGatewayError(
                f"Stripe {description} failed: {e}", provider=self.name, retryable=retryable
            )

    def create_charge(self, payment, plan, billing_interval, customer_email, details=None):
        price_id = plan.external_price_id(billing_interval)
        if not price_id:
            raise ConfigurationError(
                f"Plan {plan.slug} has no Stripe price for {billing_interval} billing"
            )
        metadata = {
            "tenant_id": str(payment.tenant_id),
            "payment_id": str(payment.id),
            "plan_id": str(plan.id),
            "billing_interval": billing_interval,
        }
        session = _plain(self._call(
            "checkout session create",
            self._client.checkout.sessions.create,
            params={
                "mode": "subscription",
                "line_items": [{"price": price_id, "quantity": 1}],
                "customer_email": customer_email or None,
                "client_reference_id": str(payment.tenant_id),
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
                "success_url": self.config.success_url,
                "cancel_url": self.config.cancel_url,
            },
        ))
        return GatewayTransaction(
            id=session["id"],
            status=PAYMENT_PENDING,
            amount=payment.amount,
            currency=payment.currency,
            reference=str(payment.id),
            redirect_url=session.get("url"),
        )

    def retrieve_transaction(self, transaction_id):
        session = _plain(self._call(
            "checkout session retrieve", self._client.checkout.sessions.retrieve, transaction_id
        ))
        if session.get("payment_status") in ("paid", "no_payment_required"):
            status = PAYMENT_APPROVED
        elif session.get("status") == "expired":
            status = PAYMENT_DECLINED
        else:
            status = PAYMENT_PENDING
        total = session.get("amount_total")
        return GatewayTransaction(
            id=session["id"],
            status=status,
            amount=Decimal(total) / 100 if total is not None else None,
            currency=(session.get("currency") or "").upper(),
            reference=(session.get("metadata") or {}).get("payment_id"),
            redirect_url=session.get("url"),
        )

    def retrieve_subscription(self, subscription_id):
        try:
            obj = self._client.subscriptions.retrieve(subscription_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404:
                return None
            raise ExternalGatewayError(f"Stripe subscription retrieve failed: {e}",
                                       provider=self.name, retryable=False)
        except stripe.StripeError as e:
            raise ExternalGatewayError(f"Stripe subscription retrieve failed: {e}",
                                       provider=self.name)
        return stripe_subscription_from_dict(_plain(obj))

    def update_subscription_price(self, subscription_id, price_id, prorate):
        current = _plain(self._call(
            "subscription retrieve", self._client.subscriptions.retrieve, subscription_id
        ))
        item = _first_item(current)
        if not item:
            raise ExternalGatewayError(
                f"Stripe subscription {subscription_id} has no items", provider=self.name
            )
        self._call(
            "subscription update",
            self._client.subscriptions.update,
            subscription_id,
            params={
                "items": [{"id": item["id"], "price": price_id}],
                "proration_behavior": "create_prorations" if prorate else "none",
            },
        )
        logger.info(
            "Stripe subscription %s moved to price %s (prorate=%s)", subscription_id, price_id, prorate
        )

    def cancel_subscription(self, subscription_id):
        self._call("subscription cancel", self._client.subscriptions.cancel, subscription_id)
        logger.info("Stripe subscription %s cancelled", subscription_id)

    def retrieve_invoice(self, invoice_id):
        obj = self._call("invoice retrieve", self._client.invoices.retrieve, invoice_id)
        return stripe_invoice_from_dict(_plain(obj))

    def list_open_invoices(self, subscription_id):
        page = self._call(
            "invoice list",
            self._client.invoices.list,
            params={"subscription": subscription_id, "status": "open", "limit": 100},
        )
        return [stripe_invoice_from_dict(_plain(obj)) for obj in page.auto_paging_iter()]

    def list_paid_invoices(self, since):
        # An invoice paid in the window may have been created up to a cycle earlier.
        created_after = since - datetime.timedelta(days=35)
        page = self._call(
            "invoice list",
            self._client.invoices.list,
            params={
                "status": "paid",
                "created": {"gte": int(created_after.timestamp())},
                "limit": 100,
            },
        )
        invoices = []
        for obj in page.auto_paging_iter():
            invoice = stripe_invoice_from_dict(_plain(obj))
            if invoice.paid_at and invoice.paid_at >= since:
                invoices.append(invoice)
        return invoices

    def parse_webhook(self, raw_body, signature):
        if not self.config.webhook_secret or not signature:
            logger.warning("Stripe webhook rejected: missing secret or signature")
            return None
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"), signature, self.config.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            payload = json.loads(raw_body)
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe webhook signature verification failed: %s", e)
            return None
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("Stripe webhook payload is not valid JSON: %s", e)
            return None
        try:
            return stripe_event_from_dict(payload)
        except KeyError as e:
            logger.warning("Stripe webhook payload missing field %s", e)
            return None


# ---------------------------------------------------------------------------
# Wompi
# ---------------------------------------------------------------------------

WOMPI_STATUSES = {
    "APPROVED": PAYMENT_APPROVED,
    "DECLINED": PAYMENT_DECLINED,
    "ERROR": PAYMENT_DECLINED,
    "VOIDED": PAYMENT_REFUNDED,
    "PENDING": PAYMENT_PENDING,
}

_WOMPI_EVENT_TYPES = {
    PAYMENT_APPROVED: EventType.PAYMENT_SUCCEEDED,
    PAYMENT_DECLINED: EventType.PAYMENT_FAILED,
    PAYMENT_REFUNDED: EventType.CHARGE_REFUNDED,
}


def _dig(data: dict, dotted: str):
    value = data
    for key in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


class WompiClient(PaymentGatewayClient):
    """Wompi one-off transactions; Wompi has no recurring subscriptions."""

    name = "wompi"
    signature_header = "X-Event-Checksum"

    def __init__(self, config: WompiConfig, timeout: float = 10.0):
        super().__init__(timeout)
        self.config = config

    def integrity_signature(self, reference: str, amount_in_cents: int, currency: str) -> str:
        raw = f"{reference}{amount_in_cents}{currency}{self.config.integrity_secret}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _transaction_from_dict(self, data: dict) -> GatewayTransaction:
        extra = (data.get("payment_method") or {}).get("extra") or {}
        cents = data.get("amount_in_cents")
        return GatewayTransaction(
            id=str(data["id"]),
            status=WOMPI_STATUSES.get(str(data.get("status", "")).upper(), PAYMENT_PENDING),
            amount=Decimal(cents) / 100 if cents is not None else None,
            currency=data.get("currency", ""),
            reference=data.get("reference"),
            redirect_url=extra.get("async_payment_url") or extra.get("url"),
            message=data.get("status_message"),
        )

    def create_charge(self, payment, plan, billing_interval, customer_email, details=None):
        details = details or {}
        if not details.get("acceptance_token") or not details.get("payment_method"):
            raise ConfigurationError("Wompi charges need acceptance_token and payment_method")
        amount_in_cents = _to_minor_units(payment.amount)
        reference = payment.meta.get("reference") or f"pay_{payment.id}"
        body = {
            "acceptance_token": details["acceptance_token"],
            "accept_personal_auth": details.get("accept_personal_auth", ""),
            "amount_in_cents": amount_in_cents,
            "currency": payment.currency or self.config.currency,
            "customer_email": customer_email,
            "reference": reference,
            "signature": self.integrity_signature(
                reference, amount_in_cents, payment.currency or self.config.currency
            ),
            "payment_method_type": details.get("payment_method_type", "CARD"),
            "payment_method": details["payment_method"],
        }
        if self.config.redirect_url:
            body["redirect_url"] = self.config.redirect_url
        response = self._request(
            "POST",
            f"{self.config.base_url}/transactions",
            json=body,
            headers={"Authorization": f"Bearer {self.config.private_key}"},
        )
        data = response.get("data") or {}
        if not data.get("id"):
            raise ExternalGatewayError("Wompi returned no transaction id", provider=self.name)
        return self._transaction_from_dict(data)

    def retrieve_transaction(self, transaction_id):
        response = self._request(
            "GET",
            f"{self.config.base_url}/transactions/{transaction_id}",
            headers={"Authorization": f"Bearer {self.config.private_key}"},
        )
        data = response.get("data")
        if not data:
            raise ExternalGatewayError(
                f"Wompi transaction {transaction_id} not found", provider=self.name, retryable=False
            )
        return self._transaction_from_dict(data)

    def parse_webhook(self, raw_body, signature):
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("Wompi webhook payload is not valid JSON: %s", e)
            return None
        sig = payload.get("signature") or {}
        data = payload.get("data") or {}
        timestamp = payload.get("timestamp")
        properties = sig.get("properties") or []
        expected = signature or sig.get("checksum") or ""
        if not self.config.events_secret or not expected or timestamp is None:
            logger.warning("Wompi webhook rejected: missing secret, checksum or timestamp")
            return None
        concatenated = "".join(str(_dig(data, prop) or "") for prop in properties)
        computed = hashlib.sha256(
            f"{concatenated}{timestamp}{self.config.events_secret}".encode("utf-8")
        ).hexdigest()
        if not hmac.compare_digest(
            computed.upper().encode("utf-8"), str(expected).upper().encode("utf-8")
        ):
            logger.warning("Wompi webhook checksum mismatch")
            return None

        transaction_data = data.get("transaction") or {}
        if payload.get("event") != "transaction.updated" or not transaction_data.get("id"):
            return WebhookEvent(
                id=f"wompi:{payload.get('event')}:{timestamp}",
                type=EventType.UNRECOGNIZED,
                data=data,
                provider=self.name,
                created_at=from_timestamp(timestamp),
                raw_type=payload.get("event", ""),
                raw=payload,
            )
        transaction = self._transaction_from_dict(transaction_data)
        event_type = _WOMPI_EVENT_TYPES.get(transaction.status, EventType.UNRECOGNIZED)
        if event_type == EventType.CHARGE_REFUNDED:
            cents = _to_minor_units(transaction.amount or 0)
            event_data = GatewayCharge(
                id=transaction.id, amount=cents, amount_refunded=cents,
                currency=transaction.currency, transaction_id=transaction.id,
            )
        else:
            event_data = transaction
        return WebhookEvent(
            id=f"wompi:{transaction.id}:{transaction.status}",
            type=event_type,
            data=event_data,
            provider=self.name,
            created_at=parse_iso_datetime(payload.get("sent_at")) or from_timestamp(timestamp),
            raw_type=payload.get("event", ""),
            raw=payload,
        )


# ---------------------------------------------------------------------------
# PayU
# ---------------------------------------------------------------------------

PAYU_CHECKOUT_SANDBOX = "https://sandbox.checkout.payulatam.com/ppp-web-gateway-payu/"
PAYU_CHECKOUT_PRODUCTION = "https://checkout.payulatam.com/ppp-web-gateway-payu/"
PAYU_REPORTS_SANDBOX = "https://sandbox.api.payulatam.com/reports-api/4.0/service.cgi"
PAYU_REPORTS_PRODUCTION = "https://api.payulatam.com/reports-api/4.0/service.cgi"

# state_pol values sent on the confirmation page
PAYU_STATE_POL = {
    "4": PAYMENT_APPROVED,
    "5": PAYMENT_DECLINED,
    "6": PAYMENT_DECLINED,
    "7": PAYMENT_PENDING,
}

PAYU_TRANSACTION_STATES = {
    "APPROVED": PAYMENT_APPROVED,
    "DECLINED": PAYMENT_DECLINED,
    "REJECTED": PAYMENT_DECLINED,
    "EXPIRED": PAYMENT_DECLINED,
    "ERROR": PAYMENT_DECLINED,
    "REFUNDED": PAYMENT_REFUNDED,
    "VOIDED": PAYMENT_REFUNDED,
    "PENDING": PAYMENT_PENDING,
}


def payu_confirmation_value(raw: str) -> str:
    """Format ``value`` the way PayU signs it: one decimal when the second is 0."""
    amount = Decimal(raw).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    text = f"{amount:.2f}"
    return text[:-1] if text.endswith("0") else text


class PayuClient(PaymentGatewayClient):
    """PayU Latam WebCheckout; payments are confirmed by a form-encoded POST."""

    name = "payu"
    signature_header = ""

    def __init__(self, config: PayuConfig, timeout: float = 10.0):
        super().__init__(timeout)
        self.config = config

    @property
    def checkout_url(self) -> str:
        return PAYU_CHECKOUT_SANDBOX if self.config.test else PAYU_CHECKOUT_PRODUCTION

    @property
    def reports_url(self) -> str:
        return PAYU_REPORTS_SANDBOX if self.config.test else PAYU_REPORTS_PRODUCTION

    def checkout_signature(self, reference: str, amount: Decimal, currency: str) -> str:
        amount_text = str(int(amount)) if amount == amount.to_integral_value() else f"{amount:.2f}"
        raw = f"{self.config.api_key}~{self.config.merchant_id}~{reference}~{amount_text}~{currency}"
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def create_charge(self, payment, plan, billing_interval, customer_email, details=None):
        amount = Decimal(payment.amount).quantize(Decimal("0.01"))
        reference = payment.meta.get("reference") or f"pay{payment.id}"
        currency = payment.currency or "COP"
        form_data = {
            "merchantId": self.config.merchant_id,
            "accountId": self.config.account_id,
            "description": f"{plan.name} ({billing_interval})"[:255],
            "referenceCode": reference,
            "amount": str(amount),
            "tax": "0",
            "taxReturnBase": "0",
            "currency": currency,
            "signature": self.checkout_signature(reference, amount, currency),
            "test": "1" if self.config.test else "0",
            "buyerEmail": customer_email or "",
        }
        if self.config.response_url:
            form_data["responseUrl"] = self.config.response_url
        if self.config.confirmation_url:
            form_data["confirmationUrl"] = self.config.confirmation_url
        return GatewayTransaction(
            id=reference,
            status=PAYMENT_PENDING,
            amount=amount,
            currency=currency,
            reference=reference,
            redirect_url=self.checkout_url,
            form_data=form_data,
        )

    def retrieve_transaction(self, transaction_id):
        response = self._request(
            "POST",
            self.reports_url,
            json={
                "test": self.config.test,
                "language": "es",
                "command": "ORDER_DETAIL_BY_REFERENCE_CODE",
                "merchant": {"apiLogin": self.config.api_login, "apiKey": self.config.api_key},
                "details": {"referenceCode": transaction_id},
            },
            headers={"Accept": "application/json"},
        )
        if response.get("code") != "SUCCESS":
            raise ExternalGatewayError(
                f"PayU report error: {response.get('error')}", provider=self.name
            )
        orders = response.get("result", {}).get("payload") or []
        transactions = [t for order in orders for t in (order.get("transactions") or [])]
        if not transactions:
            return GatewayTransaction(id=transaction_id, status=PAYMENT_PENDING,
                                      reference=transaction_id)
        latest = transactions[-1]
        state = str((latest.get("transactionResponse") or {}).get("state", "")).upper()
        return GatewayTransaction(
            id=transaction_id,
            status=PAYU_TRANSACTION_STATES.get(state, PAYMENT_PENDING),
            reference=transaction_id,
            message=(latest.get("transactionResponse") or {}).get("responseMessage"),
        )

    def parse_webhook(self, raw_body, signature):
        try:
            form = dict(parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError:
            logger.warning("PayU confirmation is not valid UTF-8")
            return None
        reference = form.get("reference_sale", "")
        state_pol = form.get("state_pol", "")
        currency = form.get("currency", "")
        sign = form.get("sign", "")
        try:
            value = payu_confirmation_value(form.get("value", ""))
        except ArithmeticError:
            logger.warning("PayU confirmation has an invalid value: %r", form.get("value"))
            return None
        if not self.config.api_key or not reference or not sign:
            logger.warning("PayU confirmation rejected: missing key, reference or sign")
            return None
        raw = f"{self.config.api_key}~{form.get('merchant_id', '')}~{reference}~{value}~{currency}~{state_pol}"
        computed = hashlib.md5(raw.encode("utf-8")).hexdigest()
        if not hmac.compare_digest(computed.encode("utf-8"), sign.lower().encode("utf-8")):
            logger.warning("PayU confirmation signature mismatch for %s", reference)
            return None

        status = PAYU_STATE_POL.get(state_pol, PAYMENT_PENDING)
        transaction = GatewayTransaction(
            id=reference,
            status=status,
            amount=Decimal(form.get("value") or "0"),
            currency=currency,
            reference=reference,
            message=form.get("response_message_pol"),
        )
        event_type = {
            PAYMENT_APPROVED: EventType.PAYMENT_SUCCEEDED,
            PAYMENT_DECLINED: EventType.PAYMENT_FAILED,
        }.get(status, EventType.UNRECOGNIZED)
        return WebhookEvent(
            id=f"payu:{form.get('transaction_id') or reference}:{state_pol}",
            type=event_type,
            data=transaction,
            provider=self.name,
            created_at=parse_iso_datetime(form.get("transaction_date")),
            raw_type=f"state_pol:{state_pol}",
            raw=form,
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_gateway_client(settings: Settings) -> PaymentGatewayClient:
    """Select the gateway client once, from configuration."""
    choice = settings.billing.gateway
    timeout = settings.billing.gateway_timeout_seconds
    if choice == "stripe":
        if settings.stripe.secret_key:
            return StripeClient(settings.stripe, timeout)
        logger.warning("PAYMENT_GATEWAY=stripe but STRIPE_SECRET_KEY is not set; using NullClient")
    elif choice == "wompi":
        cfg = settings.wompi
        if cfg.private_key and cfg.public_key and cfg.integrity_secret:
            return WompiClient(cfg, timeout)
        logger.warning("PAYMENT_GATEWAY=wompi but Wompi keys are incomplete; using NullClient")
    elif choice == "payu":
        cfg = settings.payu
        if cfg.api_key and cfg.merchant_id:
            return PayuClient(cfg, timeout)
        logger.warning("PAYMENT_GATEWAY=payu but PayU credentials are incomplete; using NullClient")
    elif choice not in ("", "none"):
        logger.warning("Unknown payment gateway %r; using NullClient", choice)
    return NullClient(timeout)
