"""Configuration loading from a YAML file with environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import (
    AlertConfig,
    AppConfig,
    BillingConfig,
    EmailConfig,
    PayuConfig,
    SchedulerConfig,
    Settings,
    StripeConfig,
    WompiConfig,
)

logger = logging.getLogger(__name__)

WOMPI_SANDBOX_URL = "https://sandbox.wompi.co/v1"
WOMPI_PRODUCTION_URL = "https://production.wompi.co/v1"


def _env_bool(name: str, default) -> bool:
    return os.environ.get(name, str(default)).lower() in ("true", "1", "yes")


def _env_list(name: str, default) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        if isinstance(default, str):
            raw = default
        else:
            return [str(item).strip() for item in (default or []) if str(item).strip()]
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_config() -> Settings:
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    email_cfg = raw.get("email", {})
    alert_cfg = raw.get("alerts", {})
    billing_cfg = raw.get("billing", {})
    stripe_cfg = raw.get("stripe", {})
    wompi_cfg = raw.get("wompi", {})
    payu_cfg = raw.get("payu", {})
    scheduler_cfg = raw.get("scheduler", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    wompi_private = os.environ.get("WOMPI_PRIVATE_KEY", wompi_cfg.get("private_key", ""))
    wompi_default_url = (
        WOMPI_SANDBOX_URL
        if not wompi_private or wompi_private.startswith("prv_test_")
        else WOMPI_PRODUCTION_URL
    )

    return Settings(
        app=AppConfig(
            name=app_cfg.get("name", "Billing"),
            secret_key=secret_key,
            base_currency=app_cfg.get("base_currency", "USD"),
        ),
        email=EmailConfig(
            enabled=_env_bool("EMAIL_ENABLED", email_cfg.get("enabled", False)),
            smtp_host=os.environ.get("SMTP_HOST", email_cfg.get("smtp_host", "")),
            smtp_port=int(os.environ.get("SMTP_PORT", email_cfg.get("smtp_port", 587))),
            smtp_user=os.environ.get("SMTP_USER", email_cfg.get("smtp_user", "")),
            smtp_password=os.environ.get("SMTP_PASSWORD", email_cfg.get("smtp_password", "")),
            sender=os.environ.get("EMAIL_SENDER", email_cfg.get("sender", "")),
            operator_cc=os.environ.get("EMAIL_OPERATOR_CC", email_cfg.get("operator_cc", "")),
        ),
        alerts=AlertConfig(
            enabled=_env_bool("ALERTS_ENABLED", alert_cfg.get("enabled", False)),
            recipients=_env_list("ALERT_EMAILS", alert_cfg.get("recipients", [])),
            email_warnings=_env_bool(
                "ALERT_EMAIL_WARNINGS", alert_cfg.get("email_warnings", False)
            ),
            slack_webhook_url=os.environ.get(
                "SLACK_WEBHOOK_URL", alert_cfg.get("slack_webhook_url", "")
            ),
            webhook_url=os.environ.get("ALERT_WEBHOOK_URL", alert_cfg.get("webhook_url", "")),
        ),
        billing=BillingConfig(
            gateway=os.environ.get("PAYMENT_GATEWAY", billing_cfg.get("gateway", "none")).lower(),
            gateway_timeout_seconds=float(
                os.environ.get(
                    "GATEWAY_TIMEOUT_SECONDS", billing_cfg.get("gateway_timeout_seconds", 10)
                )
            ),
            regulated_modules=frozenset(
                _env_list(
                    "REGULATED_MODULES",
                    billing_cfg.get("regulated_modules", ["electronic_invoicing"]),
                )
            ),
            payment_failure_suspend_days=int(
                billing_cfg.get("payment_failure_suspend_days", 30)
            ),
            paid_invoice_window_hours=int(billing_cfg.get("paid_invoice_window_hours", 2)),
            open_invoice_warning_days=int(billing_cfg.get("open_invoice_warning_days", 3)),
            open_invoice_critical_days=int(billing_cfg.get("open_invoice_critical_days", 7)),
            pending_payment_stale_minutes=int(
                billing_cfg.get("pending_payment_stale_minutes", 30)
            ),
            pending_payment_alert_hours=int(billing_cfg.get("pending_payment_alert_hours", 48)),
        ),
        stripe=StripeConfig(
            secret_key=os.environ.get("STRIPE_SECRET_KEY", stripe_cfg.get("secret_key", "")),
            webhook_secret=os.environ.get(
                "STRIPE_WEBHOOK_SECRET", stripe_cfg.get("webhook_secret", "")
            ),
            success_url=os.environ.get("STRIPE_SUCCESS_URL", stripe_cfg.get("success_url", "")),
            cancel_url=os.environ.get("STRIPE_CANCEL_URL", stripe_cfg.get("cancel_url", "")),
        ),
        wompi=WompiConfig(
            private_key=wompi_private,
            public_key=os.environ.get("WOMPI_PUBLIC_KEY", wompi_cfg.get("public_key", "")),
            integrity_secret=os.environ.get(
                "WOMPI_INTEGRITY_SECRET", wompi_cfg.get("integrity_secret", "")
            ),
            events_secret=os.environ.get("WOMPI_EVENTS_SECRET", wompi_cfg.get("events_secret", "")),
            base_url=os.environ.get("WOMPI_BASE_URL", wompi_cfg.get("base_url", wompi_default_url)),
            currency=wompi_cfg.get("currency", "COP"),
            redirect_url=os.environ.get("WOMPI_REDIRECT_URL", wompi_cfg.get("redirect_url", "")),
        ),
        payu=PayuConfig(
            api_key=os.environ.get("PAYU_API_KEY", payu_cfg.get("api_key", "")),
            api_login=os.environ.get("PAYU_API_LOGIN", payu_cfg.get("api_login", "")),
            merchant_id=os.environ.get("PAYU_MERCHANT_ID", str(payu_cfg.get("merchant_id", ""))),
            account_id=os.environ.get("PAYU_ACCOUNT_ID", str(payu_cfg.get("account_id", ""))),
            test=_env_bool("PAYU_TEST", payu_cfg.get("test", True)),
            confirmation_url=os.environ.get(
                "PAYU_CONFIRMATION_URL", payu_cfg.get("confirmation_url", "")
            ),
            response_url=os.environ.get("PAYU_RESPONSE_URL", payu_cfg.get("response_url", "")),
        ),
        scheduler=SchedulerConfig(
            broker_url=os.environ.get(
                "CELERY_BROKER_URL", scheduler_cfg.get("broker_url", "memory://")
            ),
            result_backend=os.environ.get(
                "CELERY_RESULT_BACKEND", scheduler_cfg.get("result_backend", "cache+memory://")
            ),
            timezone=scheduler_cfg.get("timezone", "UTC"),
        ),
        database_uri=os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
