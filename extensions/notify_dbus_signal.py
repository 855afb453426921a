"""Signal notification channel via the signal-cli D-Bus interface

Config:
    notifyDbusSignal.enable=1                  send (otherwise dry-run)
    notifyDbusSignal.sender=+000example000     registered at Signal before
    notifyDbusSignal.dest=org.asamk.Signal     only supported destination

Honors entries starting with "signal=" from the notification list.
"""
import logging
import re
import subprocess
from typing import Optional

from extensions.notify import Notifier
from models import Recipient

logger = logging.getLogger(__name__)

SUPPORTED_DEST = "org.asamk.Signal"
SENDER_PATTERN = re.compile(r"^(\+|_)[0-9]+$")
PHONE_PATTERN = re.compile(r"^\+[0-9]+$")


class NotifyDbusSignal(Notifier):
    name = "notifyDbusSignal"
    prefix = "signal"
    address_pattern = PHONE_PATTERN
    label = "Signal message via D-Bus"

    def check_config(self) -> Optional[str]:
        self.dest = self.config.get("notifyDbusSignal.dest", "")
        self.sender = self.config.get("notifyDbusSignal.sender", "")
        if not self.dest:
            return "missing entry in config file: notifyDbusSignal.dest"
        if self.dest != SUPPORTED_DEST:
            return f"notifyDbusSignal.dest is not a supported one: {self.dest}"
        if not self.sender:
            return "missing entry in config file: notifyDbusSignal.sender"
        if not SENDER_PATTERN.match(self.sender):
            return f"notifyDbusSignal.sender is not a valid phone number: {self.sender}"
        # object path element
        self.sender = "_" + self.sender[1:]
        return None

    def command(self, recipient: Recipient, message: str) -> list[str]:
        return [
            "dbus-send",
            "--system",
            "--type=method_call",
            "--print-reply",
            f"--dest={self.dest}",
            f"/org/asamk/Signal/{self.sender}",
            "org.asamk.Signal.sendMessage",
            f"string:{message}",
            "array:string:",
            f"string:{recipient.address}",
        ]

    def describe(self, recipient: Recipient, message: str) -> str:
        return " ".join(self.command(recipient, message))

    def deliver(self, recipient: Recipient, message: str) -> None:
        command = self.command(recipient, message)
        self.log_debug(f"call system command: {' '.join(command)}")
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=self.settings.EXTERNAL_TIMEOUT,
        )
        self.log_debug(f"result of called system command: {result.returncode}")
        if result.returncode != 0:
            raise RuntimeError(f"rc={result.returncode} output={result.stdout.strip()}")
