import logging
import smtplib
from email.message import EmailMessage
from typing import Dict, Optional, Tuple

from libdesk.config import settings

logger = logging.getLogger(__name__)

TEMPLATES: Dict[str, Tuple[str, str]] = {
    "due_reminder": (
        "Book due soon: {title}",
        "Hello {name},\n\nThe book \"{title}\" is due on {due_date}. "
        "Please return or renew it in time to avoid a fine.\n\n{library}",
    ),
    "overdue": (
        "Overdue book: {title}",
        "Hello {name},\n\nThe book \"{title}\" was due on {due_date} and is now {days} day(s) overdue. "
        "A fine of {rate} per day applies until it is returned.\n\n{library}",
    ),
    "fine": (
        "Unpaid fines: {amount}",
        "Hello {name},\n\nYou have unpaid fines totalling {amount}. "
        "Please settle them at the front desk.\n\n{library}",
    ),
    "welcome": (
        "Welcome to {library}",
        "Hello {name},\n\nYour reader account is ready. Sign in with {email}.\n\n{library}",
    ),
    "password_reset": (
        "Your password was reset",
        "Hello {name},\n\nYour temporary password is {password}. "
        "You will be asked to change it after signing in.\n\n{library}",
    ),
}


class Mailer:
    """Plain-text SMTP mailer; a no-op unless e-mail notifications are enabled."""

    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = settings.enable_email_notifications if enabled is None else enabled

    @staticmethod
    def render_template(name: str, **context) -> Tuple[str, str]:
        if name not in TEMPLATES:
            raise LookupError(f"Unknown e-mail template: {name}")
        context.setdefault("library", settings.app_name)
        subject, body = TEMPLATES[name]
        try:
            return subject.format(**context), body.format(**context)
        except KeyError as e:
            raise ValueError(f"Missing template value: {e.args[0]}") from e

    def send_email(self, to: str, subject: str, body: str) -> bool:
        if not self.enabled:
            logger.debug("E-mail disabled, not sending '%s' to %s", subject, to)
            return False

        message = EmailMessage()
        message["From"] = f"{settings.smtp_from_name} <{settings.smtp_from_email}>"
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
                smtp.starttls()
                if settings.smtp_username and settings.smtp_password:
                    smtp.login(settings.smtp_username, settings.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Failed to send e-mail to %s: %s", to, e)
            return False
        logger.info("E-mail '%s' sent to %s", subject, to)
        return True

    def send_template(self, to: str, name: str, **context) -> bool:
        subject, body = self.render_template(name, **context)
        return self.send_email(to, subject, body)
