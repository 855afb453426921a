"""Time-series extension: per-device sample store and matplotlib charts

Samples are kept in `ttn.<dev_id>.rrd.csv` on a fixed 300 s step; a sample
landing in the step of the previous one replaces it, older steps are ignored.
"""
import base64
import csv
import io
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.dates as mdates
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure

from context import RequestContext
from errors import ConfigurationError, ValidationError
from extensions.base import Extension
from models import Uplink
from status_store import StatusStore
from translations import translate

logger = logging.getLogger(__name__)

STEP = 300  # seconds
DATA_SOURCES = ("sensor", "voltage", "tempC", "rssi", "snr")

SERIES = {
    "sensor": {"color": "#6FEF00", "log": True},
    "voltage": {"color": "#F000F0", "log": False},
    "tempC": {"color": "#0000F0", "log": False},
    "rssi": {"color": "#00F0F0", "log": False},
    "snr": {"color": "#0080F0", "log": False},
}

RANGES = {
    "1d": 1,
    "3d": 3,
    "7d": 7,
    "14d": 14,
    "30d": 30,
    "90d": 90,
    "180d": 180,
    "365d": 365,
}
DEFAULT_RANGE = "14d"
DEFAULT_RANGE_MOBILE = "7d"
ZOOM_MAX = 4
DEFAULT_RETENTION_DAYS = 400


def uplink_values(uplink: Uplink) -> dict[str, Optional[float]]:
    return {
        "sensor": uplink.sensor,
        "voltage": uplink.voltage,
        "tempC": uplink.temp_c,
        "rssi": uplink.rssi,
        "snr": uplink.snr,
    }


class SampleStore:
    """CSV backed fixed-step time series"""

    def __init__(self, path: str, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.path = path
        self.retention = retention_days * 86400

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def create(self) -> None:
        self.write([])

    def read(self) -> list[dict]:
        if not self.exists():
            return []
        rows = []
        with open(self.path, newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                try:
                    rows.append(
                        {
                            "time": int(row["time"]),
                            **{ds: float(row[ds]) if row.get(ds) not in (None, "") else None for ds in DATA_SOURCES},
                        }
                    )
                except (KeyError, ValueError):
                    raise ValidationError("major problem found", f"time series file not consistent: {self.path}")
        return rows

    def write(self, rows: list[dict]) -> None:
        try:
            fd, tmp = tempfile.mkstemp(dir=os.path.dirname(self.path), suffix=".tmp")
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=("time",) + DATA_SOURCES)
                writer.writeheader()
                for row in rows:
                    writer.writerow({k: "" if v is None else v for k, v in row.items()})
            os.replace(tmp, self.path)
        except OSError as e:
            raise ConfigurationError(f"cannot write time series file {self.path}: {e}")

    def merge(self, rows: list[dict], timestamp: float, values: dict) -> bool:
        """Merge one sample into rows in place; False if it is older than the last step."""
        bucket = int(timestamp) // STEP * STEP
        sample = {"time": bucket, **{ds: values.get(ds) for ds in DATA_SOURCES}}
        if rows and rows[-1]["time"] > bucket:
            return False
        if rows and rows[-1]["time"] == bucket:
            rows[-1] = sample
        else:
            rows.append(sample)
        return True

    def trim(self, rows: list[dict]) -> list[dict]:
        if not rows:
            return rows
        oldest = rows[-1]["time"] - self.retention
        return [row for row in rows if row["time"] >= oldest]

    def update(self, timestamp: float, values: dict) -> bool:
        rows = self.read()
        if not self.merge(rows, timestamp, values):
            return False
        self.write(self.trim(rows))
        return True

    def fetch(self, start: float, end: float) -> list[dict]:
        return [row for row in self.read() if start <= row["time"] <= end]


def parse_range(ctx: RequestContext) -> str:
    default = DEFAULT_RANGE_MOBILE if ctx.mobile else DEFAULT_RANGE
    value = ctx.param("rrdRange", default)
    return value if value in RANGES else default


def parse_int(ctx: RequestContext, key: str, default: int, minimum: int, maximum: Optional[int] = None) -> int:
    try:
        value = int(ctx.param(key, str(default)))
    except ValueError:
        return default
    if value < minimum or (maximum is not None and value > maximum):
        return default
    return value


def render_chart(
    name: str,
    rows: list[dict],
    start: float,
    end: float,
    width: int,
    height: int,
) -> bytes:
    """One PNG line chart of a series between start and end."""
    series = SERIES[name]
    dpi = 100
    fig = Figure(figsize=((width + 70) / dpi, (height + 45) / dpi), dpi=dpi)
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(1, 1, 1)

    points = [(datetime.fromtimestamp(row["time"], timezone.utc), row[name]) for row in rows if row[name] is not None]
    if series["log"]:
        points = [(t, v) for t, v in points if v > 0]
    if points:
        times, values = zip(*points)
        ax.plot(times, values, color=series["color"], linewidth=1, label=name)
        if series["log"]:
            ax.set_yscale("log")
    ax.set_xlim(datetime.fromtimestamp(start, timezone.utc), datetime.fromtimestamp(end, timezone.utc))
    ax.xaxis.set_major_formatter(mdates.DateFormatter("%d"))
    ax.tick_params(labelsize=6)
    ax.grid(True, linewidth=0.3)
    ax.set_title(name, fontsize=7, color=series["color"], loc="left")
    fig.tight_layout(pad=0.3)

    buffer = io.BytesIO()
    fig.savefig(buffer, format="png")
    return buffer.getvalue()


class Rrd(Extension):
    name = "rrd"

    def init(self):
        self.store = StatusStore(self.config.datadir)
        try:
            self.retention_days = int(self.config.get("rrd.retention_days", str(DEFAULT_RETENTION_DAYS)))
        except ValueError:
            raise ConfigurationError("rrd.retention_days is not an integer")
        self.log_debug("init called")

    def samples(self, dev_id: str) -> SampleStore:
        return SampleStore(os.path.join(self.config.datadir, f"ttn.{dev_id}.rrd.csv"), self.retention_days)

    def init_device(self, dev_id: str) -> None:
        samples = self.samples(dev_id)
        if samples.exists():
            return
        self.log_debug(f"file missing, create now: {samples.path}")
        rows: list[dict] = []
        for received, raw in self.store.iter_raw_log(dev_id):
            samples.merge(rows, received.timestamp(), uplink_values(Uplink.from_json(raw)))
        samples.write(samples.trim(rows))
        logger.info(f"rrd: created {samples.path} with {len(rows)} samples from raw logs")

    def store_data(self, dev_id: str, received: datetime, uplink: Uplink) -> None:
        samples = self.samples(dev_id)
        if not samples.update(received.timestamp(), uplink_values(uplink)):
            logger.warning(f"rrd: sample older than last step ignored: {dev_id} {received.isoformat()}")

    def get_graphics(self, dev_id: str, ctx: RequestContext, now: Optional[float] = None) -> dict[str, str]:
        if not ctx.is_on("rrd"):
            return {}
        samples = self.samples(dev_id)
        if not samples.exists():
            self.log_debug(f"file missing, skip: {samples.path}")
            return {}

        days = RANGES[parse_range(ctx)]
        shift = parse_int(ctx, "rrdShift", 0, 0)
        zoom = parse_int(ctx, "rrdZoom", 1, 1, ZOOM_MAX)
        width, height = (140, 50) if ctx.mobile else (260, 80)

        end = (now if now is not None else datetime.now(timezone.utc).timestamp()) - shift * days * 86400
        start = end - days * 86400
        rows = samples.fetch(start, end)

        html = {}
        for name in DATA_SOURCES:
            png = render_chart(name, rows, start, end, width * zoom, height * zoom)
            html[f"RRD:{name}"] = f'<img alt="{name}" src="data:image/png;base64,{base64.b64encode(png).decode()}">'
        self.log_debug(f"exported graphics: {samples.path} rows={len(rows)} range={days}d shift={shift} zoom={zoom}")
        return html

    def html_actions(self, ctx: RequestContext) -> str:
        """GET forms toggling the charts and selecting range, shift and zoom."""
        lang = ctx.language

        def button(label: str, **changes) -> str:
            hidden = ctx.hidden_fields(*changes)
            fields = "".join(f'<input type="hidden" name="{k}" value="{v}">' for k, v in changes.items())
            return (
                f'<form method="get" style="display:inline">{hidden}{fields}'
                f'<input type="submit" value="{label}"></form>'
            )

        if not ctx.is_on("rrd"):
            return button(f"RRD {translate('on', lang)}", rrd="on")

        current = parse_range(ctx)
        shift = parse_int(ctx, "rrdShift", 0, 0)
        zoom = parse_int(ctx, "rrdZoom", 1, 1, ZOOM_MAX)

        parts = [button(f"RRD {translate('off', lang)}", rrd="off"), f"{translate('Range', lang)}:"]
        for name in RANGES:
            label = f"[{name}]" if name == current else name
            parts.append(button(label, rrdRange=name, rrdShift="0"))
        parts.append(f"{translate('Shift', lang)}:")
        parts.append(button("&lt;&lt;", rrdShift=str(shift + 1)))
        if shift > 0:
            parts.append(button("&gt;&gt;", rrdShift=str(shift - 1)))
            parts.append(button(translate("now", lang), rrdShift="0"))
        parts.append(f"{translate('Zoom', lang)}:")
        if zoom > 1:
            parts.append(button("-", rrdZoom=str(zoom - 1)))
        if zoom < ZOOM_MAX:
            parts.append(button("+", rrdZoom=str(zoom + 1)))
        return "\n".join(parts)
