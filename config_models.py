from dataclasses import dataclass, field


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_currency: str


@dataclass
class EmailConfig:
    enabled: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender: str
    operator_cc: str


@dataclass
class AlertConfig:
    enabled: bool
    recipients: list[str] = field(default_factory=list)
    email_warnings: bool = False
    slack_webhook_url: str = ""
    webhook_url: str = ""


@dataclass
class BillingConfig:
    gateway: str = "none"
    gateway_timeout_seconds: float = 10.0
    regulated_modules: frozenset[str] = frozenset({"electronic_invoicing"})
    payment_failure_suspend_days: int = 30
    paid_invoice_window_hours: int = 2
    open_invoice_warning_days: int = 3
    open_invoice_critical_days: int = 7
    pending_payment_stale_minutes: int = 30
    pending_payment_alert_hours: int = 48


@dataclass
class StripeConfig:
    secret_key: str
    webhook_secret: str
    success_url: str = ""
    cancel_url: str = ""


@dataclass
class WompiConfig:
    private_key: str
    public_key: str
    integrity_secret: str
    events_secret: str
    base_url: str
    currency: str = "COP"
    redirect_url: str = ""


@dataclass
class PayuConfig:
    api_key: str
    api_login: str
    merchant_id: str
    account_id: str
    test: bool
    confirmation_url: str = ""
    response_url: str = ""


@dataclass
class SchedulerConfig:
    broker_url: str = "memory://"
    result_backend: str = "cache+memory://"
    timezone: str = "UTC"


@dataclass
class Settings:
    app: AppConfig
    email: EmailConfig
    alerts: AlertConfig
    billing: BillingConfig
    stripe: StripeConfig
    wompi: WompiConfig
    payu: PayuConfig
    scheduler: SchedulerConfig
    database_uri: str
