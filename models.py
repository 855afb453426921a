"""Domain models for devices, uplinks, box status and users"""
import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from errors import ValidationError

DEV_ID_PATTERN = re.compile(r"^[0-9A-Za-z_\-]+$")
HARDWARE_SERIAL_PATTERN = re.compile(r"^[0-9A-Fa-f]{16}$")

WILDCARD = "*"


class BoxStatus(str, Enum):
    FULL = "full"
    EMPTY = "empty"
    FILLED = "filled"
    EMPTIED = "emptied"

    @property
    def side(self) -> "BoxStatus":
        """Steady state of the side this status belongs to."""
        if self in (BoxStatus.FULL, BoxStatus.FILLED):
            return BoxStatus.FULL
        return BoxStatus.EMPTY

    @property
    def is_edge(self) -> bool:
        return self in (BoxStatus.FILLED, BoxStatus.EMPTIED)

    @classmethod
    def edge_for(cls, side: "BoxStatus") -> "BoxStatus":
        return cls.FILLED if side == cls.FULL else cls.EMPTIED


class Uplink(BaseModel):
    """One uplink notification, normalised from the v2 or v3 layout"""

    dev_id: str
    hardware_serial: str
    box: BoxStatus
    sensor: Optional[float] = None
    temp_c: Optional[float] = None
    voltage: Optional[float] = None
    threshold: Optional[float] = None
    rssi: Optional[float] = None
    snr: Optional[float] = None
    time: Optional[str] = None
    counter: Optional[int] = None
    raw: dict[str, Any]

    @classmethod
    def from_json(cls, content: Any) -> "Uplink":
        if not isinstance(content, dict):
            raise ValidationError("unsupported content", "JSON content is not an object")

        uplink = content.get("uplink_message")
        ids = content.get("end_device_ids") or {}
        if isinstance(uplink, dict):
            # v3
            payload = uplink.get("decoded_payload")
            metadata = uplink.get("rx_metadata") or []
            gateway = metadata[0] if metadata and isinstance(metadata[0], dict) else {}
            counter = uplink.get("f_cnt")
            time = uplink.get("received_at") or content.get("received_at") or gateway.get("time")
            dev_id = ids.get("device_id") or content.get("dev_id")
            hardware_serial = ids.get("dev_eui") or content.get("hardware_serial")
        else:
            # v2
            payload = content.get("payload_fields")
            metadata = content.get("metadata") or {}
            if isinstance(metadata, list):
                # flat list of per-gateway entries
                gateway = metadata[0] if metadata and isinstance(metadata[0], dict) else {}
                time = gateway.get("time")
            elif isinstance(metadata, dict):
                gateways = metadata.get("gateways")
                gateway = gateways[0] if gateways and isinstance(gateways[0], dict) else {}
                time = metadata.get("time") or gateway.get("time")
            else:
                gateway = {}
                time = None
            counter = content.get("counter")
            dev_id = content.get("dev_id")
            hardware_serial = content.get("hardware_serial")

        if not dev_id:
            raise ValidationError("unsupported content", "JSON is missing: dev_id")
        if not isinstance(dev_id, str) or not DEV_ID_PATTERN.match(dev_id):
            raise ValidationError("unsupported content", f"dev_id has unsupported format: {dev_id!r}")
        if not hardware_serial:
            raise ValidationError("unsupported content", f"JSON is missing: hardware_serial (dev_id={dev_id})")
        if not isinstance(hardware_serial, str) or not HARDWARE_SERIAL_PATTERN.match(hardware_serial):
            raise ValidationError(
                "unsupported content", f"hardware_serial has unsupported format: {hardware_serial!r}"
            )
        if not isinstance(payload, dict):
            raise ValidationError("unsupported content", f"JSON is missing decoded payload (dev_id={dev_id})")
        try:
            box = BoxStatus(payload.get("box"))
        except ValueError:
            raise ValidationError("unsupported content", f"payload has unsupported box: {payload.get('box')!r}")

        try:
            return cls(
                dev_id=dev_id,
                hardware_serial=hardware_serial.upper(),
                box=box,
                sensor=payload.get("sensor"),
                temp_c=payload.get("tempC"),
                voltage=payload.get("voltage"),
                threshold=payload.get("threshold"),
                rssi=gateway.get("rssi"),
                snr=gateway.get("snr"),
                time=time,
                counter=counter,
                raw=content,
            )
        except ValueError as e:
            # pydantic rejected a numeric field
            raise ValidationError("unsupported content", f"payload field has unsupported value: {e}")


class DeviceRecord(BaseModel):
    """Registered device; identity is immutable once written"""

    model_config = ConfigDict(frozen=True)

    dev_id: str
    hardware_serial: str
    password_hash: Optional[str] = None


class StatusRecord(BaseModel):
    """Persisted per-device state machine record"""

    state: BoxStatus
    side: BoxStatus
    last_raw: dict[str, Any]
    last_received: datetime
    last_filled: Optional[datetime] = None
    last_emptied: Optional[datetime] = None

    @property
    def last_change(self) -> Optional[datetime]:
        if self.side == BoxStatus.FULL:
            return self.last_filled
        return self.last_emptied


class StatusSnapshot(StatusRecord):
    """Status record with ages computed against wall-clock now"""

    dev_id: str
    since_change: Optional[float] = None
    since_received: float


class UserRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    password_hash: str
    acl: frozenset[str] = frozenset()


class AuthenticatedUser(BaseModel):
    """User context restored from a verified authentication token"""

    username: str
    acl: frozenset[str] = frozenset()
    issued: int
    expiry: int

    @property
    def wildcard(self) -> bool:
        return WILDCARD in self.acl


RECIPIENT_PATTERN = re.compile(r"^([a-zA-Z]+)=([^;]+)(?:;([a-z]{2}))?$")


class Recipient(BaseModel):
    """Entry of the notification list, e.g. `email=me@example.org;de`"""

    channel: str
    address: str
    language: Optional[str] = None

    @classmethod
    def parse(cls, entry: str) -> Optional["Recipient"]:
        match = RECIPIENT_PATTERN.match(entry.strip())
        if not match:
            return None
        return cls(channel=match.group(1), address=match.group(2), language=match.group(3))
