"""Per-device status record, raw uplink log and the box edge state machine"""
import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from errors import ConfigurationError, NotFound, ValidationError
from models import BoxStatus, StatusRecord, StatusSnapshot

logger = logging.getLogger(__name__)

STATUS_SUFFIX = ".status.json"
RAW_LOG_PATTERN = re.compile(r"^ttn\.(?P<dev_id>[0-9A-Za-z_\-]+)\.(?P<day>[0-9]{8})\.raw\.log$")


def apply_threshold(box: BoxStatus, sensor: Optional[float], threshold: Optional[int]) -> BoxStatus:
    """Reclassify the reported status by a locally configured threshold."""
    if threshold is None or sensor is None:
        return box
    side = BoxStatus.FULL if sensor >= threshold else BoxStatus.EMPTY
    if box.side == side:
        return box
    return side


def transition(previous: Optional[StatusRecord], incoming: BoxStatus, raw: dict, now: datetime) -> StatusRecord:
    """Run the edge detection for one incoming status.

    A change of side yields the edge state and stamps its time; a repeat on
    the same side stays steady. Without history a steady report stays steady,
    an edge reported by the firmware itself is honoured.
    """
    side = incoming.side

    if previous is None:
        changed = incoming.is_edge
        last_filled = last_emptied = None
    else:
        changed = previous.side != side
        last_filled, last_emptied = previous.last_filled, previous.last_emptied

    if changed:
        state = BoxStatus.edge_for(side)
        if state == BoxStatus.FILLED:
            last_filled = now
        else:
            last_emptied = now
    else:
        state = side

    return StatusRecord(
        state=state,
        side=side,
        last_raw=raw,
        last_received=now,
        last_filled=last_filled,
        last_emptied=last_emptied,
    )


def parse_log_line(line: str) -> tuple[datetime, dict]:
    """Split `<receipt time> <raw JSON>`; inconsistent lines are fatal."""
    line = line.rstrip("\n")
    received, sep, content = line.partition(" ")
    if not sep or not content.startswith("{"):
        raise ValidationError("major problem found", f"raw log line not in expected format: {line[:80]}")
    try:
        timestamp = datetime.fromisoformat(received.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("major problem found", f"cannot parse time: {received}")
    try:
        return timestamp, json.loads(content)
    except json.JSONDecodeError:
        raise ValidationError("major problem found", "raw log line not in JSON format")


class StatusStore:
    """Flat-file persistence below the data directory."""

    def __init__(self, datadir: str):
        self.datadir = datadir

    def _path(self, dev_id: str, suffix: str) -> str:
        return os.path.join(self.datadir, f"ttn.{dev_id}{suffix}")

    @contextmanager
    def device_lock(self, dev_id: str):
        """Advisory lock serialising read-modify-write of one device."""
        with open(self._path(dev_id, ".lock"), "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def load_record(self, dev_id: str) -> Optional[StatusRecord]:
        path = self._path(dev_id, STATUS_SUFFIX)
        if not os.path.exists(path):
            return None
        with open(path, encoding="utf-8") as f:
            try:
                return StatusRecord.model_validate_json(f.read())
            except ValueError as e:
                raise ValidationError("major problem found", f"status file not consistent: {path} ({e})")

    def save(self, dev_id: str, record: StatusRecord) -> None:
        path = self._path(dev_id, STATUS_SUFFIX)
        try:
            fd, tmp = tempfile.mkstemp(dir=self.datadir, prefix=f".ttn.{dev_id}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json())
            os.replace(tmp, path)
        except OSError as e:
            raise ConfigurationError(f"cannot write status file {path}: {e}")

    def append_raw(self, dev_id: str, raw: dict, received: datetime) -> str:
        path = self._path(dev_id, f".{received:%Y%m%d}.raw.log")
        line = f"{received.astimezone(timezone.utc).isoformat()} {json.dumps(raw, separators=(',', ':'))}\n"
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            raise ConfigurationError(f"cannot append raw log {path}: {e}")
        return path

    def raw_logs(self, dev_id: str) -> list[str]:
        logs = []
        for entry in os.listdir(self.datadir):
            match = RAW_LOG_PATTERN.match(entry)
            if match and match.group("dev_id") == dev_id:
                logs.append(os.path.join(self.datadir, entry))
        return sorted(logs)

    def iter_raw_log(self, dev_id: str) -> Iterator[tuple[datetime, dict]]:
        for path in self.raw_logs(dev_id):
            with open(path, encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        yield parse_log_line(line)

    def list_devices(self) -> list[str]:
        devices = set()
        for entry in os.listdir(self.datadir):
            if entry.startswith("ttn.") and entry.endswith(STATUS_SUFFIX):
                devices.add(entry[len("ttn."):-len(STATUS_SUFFIX)])
        return sorted(devices)

    def load_status(self, dev_id: str, now: Optional[datetime] = None) -> StatusSnapshot:
        record = self.load_record(dev_id)
        if record is None:
            raise NotFound("device not found", f"no status file for device: {dev_id}")
        now = now or datetime.now(timezone.utc)
        last_change = record.last_change
        return StatusSnapshot(
            dev_id=dev_id,
            **record.model_dump(),
            since_change=(now - last_change).total_seconds() if last_change else None,
            since_received=(now - record.last_received).total_seconds(),
        )
