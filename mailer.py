import logging
import smtplib
from email.message import EmailMessage
from socket import gaierror, timeout

from config_models import EmailConfig

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Exception raised for email sending errors."""

    pass


def send_alert_email(
    config: EmailConfig,
    subject: str,
    recipients: list[str],
    body: str,
) -> bool:
    """Send a plain-text operational alert.

    Args:
        config: Email configuration.
        subject: Email subject.
        recipients: Email recipient addresses.
        body: Email body text.

    Returns:
        True if email was sent successfully, False if email is disabled or
        there is nobody to send to.

    Raises:
        MailerError: If email sending fails.
    """
    if not config.enabled or not recipients:
        return False

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = config.sender
    message["To"] = ", ".join(recipients)
    if config.operator_cc:
        message["Cc"] = config.operator_cc
    message.set_content(body)

    try:
        logger.info("Sending alert email to %s with subject: %s", recipients, subject)
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as server:
            server.starttls()
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(message)
        logger.info("Alert email sent to %s", recipients)
        return True

    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        raise MailerError(f"Email authentication failed: {e}")

    except smtplib.SMTPRecipientsRefused as e:
        logger.error("Recipients refused: %s", e)
        raise MailerError(f"Email recipients refused: {e}")

    except smtplib.SMTPException as e:
        logger.error("SMTP error: %s", e)
        raise MailerError(f"Failed to send email: {e}")

    except (gaierror, timeout) as e:
        logger.error("Network error while sending email: %s", e)
        raise MailerError(f"Network error: could not connect to mail server: {e}")

    except OSError as e:
        logger.error("OS error while sending email: %s", e)
        raise MailerError(f"Failed to send email: {e}")
