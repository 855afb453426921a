"""Flat-file device registry: dev_id -> hardware serial -> optional credential hash"""
import fcntl
import logging
import os
from contextlib import contextmanager
from typing import Optional

from auth import hash_password, verify_password
from errors import AuthError, ConfigurationError
from models import DeviceRecord, Uplink

logger = logging.getLogger(__name__)

REGISTRY_FILE = "ttn.devices.list"
REGISTRY_LOCK = "ttn.devices.lock"


class DeviceRegistry:
    """Registry file with one `<dev_id>:<hardware_serial>[:<password_hash>]` per line."""

    def __init__(self, datadir: str):
        self.path = os.path.join(datadir, REGISTRY_FILE)
        self.lock_path = os.path.join(datadir, REGISTRY_LOCK)

    @contextmanager
    def lock(self):
        """Exclusive lock over lookup and append, shared by all devices."""
        with open(self.lock_path, "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def load(self) -> dict[str, DeviceRecord]:
        devices = {}
        if not os.path.exists(self.path):
            return devices
        with open(self.path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                fields = line.split(":", 2)
                if len(fields) < 2:
                    logger.warning(f"device registry line {lineno} malformed, skipped: {self.path}")
                    continue
                dev_id, serial = fields[0], fields[1]
                devices[dev_id] = DeviceRecord(
                    dev_id=dev_id,
                    hardware_serial=serial.upper(),
                    password_hash=fields[2] if len(fields) == 3 and fields[2] else None,
                )
        return devices

    def lookup(self, dev_id: str) -> Optional[DeviceRecord]:
        return self.load().get(dev_id)

    def register(self, dev_id: str, hardware_serial: str, credential: Optional[str] = None) -> DeviceRecord:
        record = DeviceRecord(
            dev_id=dev_id,
            hardware_serial=hardware_serial.upper(),
            password_hash=hash_password(credential) if credential else None,
        )
        line = f"{record.dev_id}:{record.hardware_serial}"
        if record.password_hash:
            line += f":{record.password_hash}"
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise ConfigurationError(f"cannot write device registry {self.path}: {e}")
        logger.info(f"Registered new device: {dev_id} (hardware_serial={record.hardware_serial})")
        return record

    def authorize(self, uplink: Uplink, credential: Optional[str], autoregister: bool) -> DeviceRecord:
        """Check device identity and credential, registering first-seen devices if enabled."""
        with self.lock():
            record = self.lookup(uplink.dev_id)
            if record is None:
                if not autoregister:
                    raise AuthError(
                        "device not accepted",
                        f"device not registered and autoregister disabled: {uplink.dev_id}",
                    )
                return self.register(uplink.dev_id, uplink.hardware_serial, credential)

        if record.hardware_serial != uplink.hardware_serial.upper():
            raise AuthError(
                "device not accepted",
                f"hardware_serial mismatch for {uplink.dev_id}: "
                f"registered={record.hardware_serial} received={uplink.hardware_serial}",
            )

        if record.password_hash:
            if not credential:
                raise AuthError("device not accepted", f"credential header missing for {uplink.dev_id}")
            if not verify_password(credential, record.password_hash):
                raise AuthError("device not accepted", f"credential mismatch for {uplink.dev_id}")

        return record
