"""Uplink ingestion: authorize, classify, persist, fan out"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from config import LetterboxConfig
from errors import ValidationError
from models import BoxStatus, StatusRecord, Uplink
from registry import DeviceRegistry
from status_store import StatusStore, apply_threshold, transition

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    dev_id: str
    state: BoxStatus
    record: StatusRecord
    registered: bool = False


def parse_body(body: bytes) -> dict:
    try:
        text = body.decode("utf-8").strip()
    except UnicodeDecodeError:
        raise ValidationError("unsupported content", "POST data is not UTF-8")
    if not text:
        raise ValidationError("unsupported content", "POST data empty")
    try:
        content = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError("unsupported content", f"POST data not in JSON format ({e.msg})")
    if not isinstance(content, dict):
        raise ValidationError("unsupported content", "POST data is not a JSON object")
    return content


class Ingestor:
    def __init__(self, config: LetterboxConfig, registry: DeviceRegistry, store: StatusStore, extensions):
        self.config = config
        self.registry = registry
        self.store = store
        self.extensions = extensions

    def ingest(self, body: bytes, credential: Optional[str] = None, now: Optional[datetime] = None) -> IngestResult:
        """Accept one uplink; every hook has run when this returns."""
        now = now or datetime.now(timezone.utc)
        content = parse_body(body)
        uplink = Uplink.from_json(content)

        box = apply_threshold(uplink.box, uplink.sensor, self.config.threshold_for(uplink.dev_id))

        with self.store.device_lock(uplink.dev_id):
            # registration and the status update form one step per device
            known = self.registry.lookup(uplink.dev_id) is not None
            self.registry.authorize(uplink, credential, self.config.autoregister)
            if box != uplink.box:
                logger.info(
                    f"{uplink.dev_id}: box status overridden by configured threshold "
                    f"(sensor={uplink.sensor} reported={uplink.box.value} result={box.value})"
                )

            previous = self.store.load_record(uplink.dev_id)
            record = transition(previous, box, content, now)
            self.store.save(uplink.dev_id, record)
            self.store.append_raw(uplink.dev_id, content, now)

            derived = uplink.model_copy(update={"box": record.state})
            self.extensions.call("init_device", uplink.dev_id)
            self.extensions.call("store_data", uplink.dev_id, now, derived)

        logger.info(f"Received uplink: {uplink.dev_id} box={uplink.box.value} state={record.state.value}")
        return IngestResult(dev_id=uplink.dev_id, state=record.state, record=record, registered=not known)
