"""E-mail notification channel

Config:
    notifyEmail.enable=1                       send (otherwise dry-run)
    notifyEmail.sender=postmaster@domain.example
    notifyEmail.smtp_host=localhost            optional
    notifyEmail.smtp_port=25                   optional

Honors entries starting with "email=" from the notification list.
"""
import re
import smtplib
from email.message import EmailMessage
from typing import Optional

from errors import ConfigurationError
from extensions.notify import Notifier
from models import Recipient

EMAIL_PATTERN = re.compile(r"^[0-9a-z\.\-\+]+\@[0-9a-z\.\-]+$")


class NotifyEmail(Notifier):
    name = "notifyEmail"
    prefix = "email"
    address_pattern = EMAIL_PATTERN
    label = "E-Mail via SMTP"

    def check_config(self) -> Optional[str]:
        self.sender = self.config.get("notifyEmail.sender")
        self.smtp_host = self.config.get("notifyEmail.smtp_host", "localhost")
        try:
            self.smtp_port = int(self.config.get("notifyEmail.smtp_port", "25"))
        except ValueError:
            raise ConfigurationError("notifyEmail.smtp_port is not an integer")
        if not self.sender:
            return "missing entry in config file: notifyEmail.sender"
        if not EMAIL_PATTERN.match(self.sender):
            return f"notifyEmail.sender is not a valid E-Mail address: {self.sender}"
        return None

    def deliver(self, recipient: Recipient, message: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient.address
        msg["Subject"] = message
        msg.set_content(message)

        self.log_debug(f"send via SMTP {self.smtp_host}:{self.smtp_port} to {recipient.address}")
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.settings.EXTERNAL_TIMEOUT) as s:
            s.send_message(msg)
