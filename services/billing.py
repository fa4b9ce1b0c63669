"""Billing service wiring.

Builds the gateway client, alerting, state machine, webhook processor,
reconciliation engine and scheduler once per application and keeps them on
``app.extensions["billing"]``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from config_models import Settings
from services.alerts import AlertService
from services.gateways import PaymentGatewayClient, build_gateway_client
from services.payments import PaymentService
from services.reconciliation import ReconciliationEngine
from services.scheduler import SchedulerDriver
from services.subscription_state import SubscriptionStateManager
from services.webhooks import WebhookEventProcessor

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: Settings
    gateway: PaymentGatewayClient
    alerts: AlertService
    state: SubscriptionStateManager
    payments: PaymentService
    webhooks: WebhookEventProcessor
    reconciliation: ReconciliationEngine
    scheduler: SchedulerDriver


def build_billing(
    settings: Settings,
    gateway: Optional[PaymentGatewayClient] = None,
    alerts: Optional[AlertService] = None,
) -> BillingServices:
    gateway = gateway or build_gateway_client(settings)
    alerts = alerts or AlertService(settings.alerts, settings.email)
    state = SubscriptionStateManager(gateway, alerts, settings.billing)
    payments = PaymentService(gateway, state)
    webhooks = WebhookEventProcessor(gateway, state, payments, alerts)
    reconciliation = ReconciliationEngine(gateway, state, payments, alerts, settings.billing)
    return BillingServices(
        settings=settings,
        gateway=gateway,
        alerts=alerts,
        state=state,
        payments=payments,
        webhooks=webhooks,
        reconciliation=reconciliation,
        scheduler=SchedulerDriver(reconciliation),
    )


def init_billing(app, settings: Settings, gateway=None, alerts=None) -> BillingServices:
    """Attach billing services to *app*.  Call once during app init."""
    services = build_billing(settings, gateway, alerts)
    app.extensions["billing"] = services
    logger.info("Billing initialised with %s gateway", services.gateway.name)
    return services


def get_billing(app=None) -> BillingServices:
    return (app or current_app).extensions["billing"]
