"""Shared fan-out for notification channels

A channel is active once its configuration validates. Without
`<name>.enable=1` it runs in dry-run mode: recipients are still filtered and
validated but only logged.
"""
import logging
import os
import re
from datetime import datetime
from typing import Optional

from extensions.base import Extension
from models import BoxStatus, Recipient, Uplink
from translations import translate

logger = logging.getLogger(__name__)

NOTIFY_STATES = (BoxStatus.FILLED, BoxStatus.EMPTIED)


def read_notify_list(path: str) -> list[str]:
    """Whitespace separated recipient entries, `#` starts a comment."""
    if not path or not os.path.isfile(path):
        return []
    entries = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.split("#", 1)[0]
            entries.extend(line.split())
    return entries


def compose_message(dev_id: str, status: BoxStatus, received: datetime, language: str = "en") -> str:
    when = received.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    return (
        f"{translate('boxstatus', language)}: {dev_id} {translate(status.value, language)} "
        f"{translate('at', language)} {when}"
    )


class Notifier(Extension):
    """Base class of a notification channel; subclasses set `prefix`, `address_pattern` and `deliver`."""

    prefix = ""
    address_pattern: re.Pattern = re.compile(r"^$")
    label = ""

    def init(self):
        self.enabled = self.config.flag(f"{self.name}.enable")
        if not self.enabled:
            self.log_debug(f"{self.name}.enable is not '1' -> notifications not enabled (dry-run)")

        problem = self.check_config()
        if problem is None:
            self.active = True
        elif self.enabled:
            logger.error(f"{self.name}/init: {problem}")
            self.active = False
        else:
            self.log_debug(f"init: {problem} (ignored in dry-run)")
            self.active = True

    def check_config(self) -> Optional[str]:
        """Return a problem description if the channel cannot deliver."""
        return None

    def recipients(self) -> list[Recipient]:
        entries = read_notify_list(self.config.notify_list)
        selected = []
        for entry in entries:
            recipient = Recipient.parse(entry)
            if recipient is None or recipient.channel != self.prefix:
                continue
            if not self.address_pattern.match(recipient.address):
                logger.warning(
                    f"{self.name}: notification receiver not valid + optional language token (SKIP): {recipient.address}"
                )
                continue
            selected.append(recipient)
        return selected

    def store_data(self, dev_id: str, received: datetime, uplink: Uplink) -> int:
        """Notify every matching recipient; returns the number of successful sends."""
        if not self.active:
            return 0
        status = uplink.box
        self.log_debug(f"store_data: called with sensor={dev_id} boxstatus={status.value}")
        if status not in NOTIFY_STATES:
            return 0

        recipients = self.recipients()
        if not recipients:
            self.log_debug("store_data: no related entry found in notification list")
            return 0

        sent = 0
        for recipient in recipients:
            language = recipient.language or "en"
            message = compose_message(dev_id, status, received, language)
            if not self.enabled:
                logger.info(f"{self.name}: would send (if enabled): {self.describe(recipient, message)}")
                continue
            try:
                self.deliver(recipient, message)
            except Exception as e:
                # one recipient must not block the others
                logger.error(f"{self.name}: notification PROBLEM: {dev_id}/{status.value}/{recipient.address} ({e})")
                continue
            logger.info(f"{self.name}: notification SUCCESS: {dev_id}/{status.value}/{recipient.address}")
            sent += 1
        return sent

    def describe(self, recipient: Recipient, message: str) -> str:
        return f"{self.label} to {recipient.address}: {message}"

    def deliver(self, recipient: Recipient, message: str) -> None:
        raise NotImplementedError
