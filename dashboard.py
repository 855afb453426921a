"""Dashboard rendering: HTML page, plain key=value dump and JSON"""
import logging
from datetime import datetime
from html import escape
from typing import Any, Optional

from context import RequestContext
from errors import ValidationError
from models import BoxStatus, StatusSnapshot, Uplink
from translations import translate

logger = logging.getLogger(__name__)

AUTORELOAD_SECONDS = 300

STATUS_COLORS = {
    BoxStatus.FULL: "#6FEF00",
    BoxStatus.EMPTY: "#C8C8C8",
    BoxStatus.FILLED: "#FFFF00",
    BoxStatus.EMPTIED: "#FF8080",
}

DETAIL_FIELDS = ("sensor", "voltage", "tempC", "rssi", "snr", "counter")


def format_time(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


def format_age(seconds: Optional[float], language: str = "en") -> str:
    """Largest two units, e.g. '2 days 3 hours'."""
    if seconds is None:
        return ""
    seconds = max(0, int(seconds))
    parts = []
    for unit, size in (("days", 86400), ("hours", 3600), ("minutes", 60), ("seconds", 1)):
        if seconds >= size or (unit == "seconds" and not parts):
            parts.append(f"{seconds // size} {translate(unit, language)}")
            seconds %= size
        if len(parts) == 2:
            break
    return " ".join(parts)


def device_fields(snapshot: StatusSnapshot) -> dict[str, Any]:
    """Flat view of one device used by the plain and JSON output."""
    try:
        uplink = Uplink.from_json(snapshot.last_raw)
    except ValidationError:
        logger.warning(f"{snapshot.dev_id}: stored raw payload not parseable")
        uplink = None

    fields: dict[str, Any] = {
        "dev_id": snapshot.dev_id,
        "status": snapshot.state.value,
        "last_received": snapshot.last_received.isoformat(),
        "since_received": int(snapshot.since_received),
        "last_change": snapshot.last_change.isoformat() if snapshot.last_change else None,
        "since_change": int(snapshot.since_change) if snapshot.since_change is not None else None,
        "last_filled": snapshot.last_filled.isoformat() if snapshot.last_filled else None,
        "last_emptied": snapshot.last_emptied.isoformat() if snapshot.last_emptied else None,
    }
    if uplink is not None:
        fields.update(
            {
                "hardware_serial": uplink.hardware_serial,
                "sensor": uplink.sensor,
                "voltage": uplink.voltage,
                "tempC": uplink.temp_c,
                "rssi": uplink.rssi,
                "snr": uplink.snr,
                "counter": uplink.counter,
            }
        )
    return fields


def render_plain(snapshots: list[StatusSnapshot]) -> str:
    blocks = []
    for snapshot in snapshots:
        fields = device_fields(snapshot)
        lines = [f"dev_id={fields.pop('dev_id')}"]
        lines.extend(f"{key}={'' if value is None else value}" for key, value in sorted(fields.items()))
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


def render_json(snapshots: list[StatusSnapshot]) -> dict[str, dict]:
    return {snapshot.dev_id: device_fields(snapshot) for snapshot in snapshots}


def render_page(
    body: str,
    language: str = "en",
    refresh: Optional[int] = None,
    refresh_url: Optional[str] = None,
) -> str:
    """Wrap a body fragment into a complete HTML document."""
    head = ['<meta charset="utf-8">', '<meta name="viewport" content="width=device-width, initial-scale=1">']
    if refresh is not None:
        target = f"; url={escape(refresh_url)}" if refresh_url else ""
        head.append(f'<meta http-equiv="refresh" content="{refresh}{target}">')
    head.append(f"<title>{translate('Letterbox Sensor Status', language)}</title>")
    return (
        "<!DOCTYPE html>\n"
        f'<html lang="{language}">\n<head>\n'
        + "\n".join(head)
        + "\n</head>\n<body>\n"
        + body
        + "\n</body>\n</html>\n"
    )


def toggle(ctx: RequestContext, key: str, label: str) -> str:
    state = "off" if ctx.is_on(key) else "on"
    lang = ctx.language
    return (
        f'<form method="get" style="display:inline">{ctx.hidden_fields(key)}'
        f'<input type="hidden" name="{key}" value="{state}">'
        f'<input type="submit" value="{translate(label, lang)} {translate(state, lang)}"></form>'
    )


def render_device_row(snapshot: StatusSnapshot, ctx: RequestContext, details: bool) -> str:
    lang = ctx.language
    color = STATUS_COLORS[snapshot.state]
    cells = [
        f"<td>{escape(snapshot.dev_id)}</td>",
        f'<td bgcolor="{color}"><b>{translate(snapshot.state.value, lang)}</b></td>',
        f"<td>{format_time(snapshot.last_change)}<br />"
        f"{format_age(snapshot.since_change, lang)} {translate('ago', lang) if snapshot.since_change is not None else ''}</td>",
        f"<td>{format_time(snapshot.last_received)}<br />"
        f"{format_age(snapshot.since_received, lang)} {translate('ago', lang)}</td>",
    ]
    if details:
        fields = device_fields(snapshot)
        for key in DETAIL_FIELDS:
            value = fields.get(key)
            cells.append(f"<td>{'' if value is None else escape(str(value))}</td>")
    return "  <tr>" + "".join(cells) + "</tr>"


def render_dashboard(
    ctx: RequestContext,
    snapshots: list[StatusSnapshot],
    graphics: dict[str, dict[str, str]],
    actions: list[str],
    auth_box: str = "",
) -> str:
    lang = ctx.language
    details = ctx.is_on("details")

    header = [
        translate("Device", lang),
        translate("Status", lang),
        translate("Last change", lang),
        translate("Last received", lang),
    ]
    if details:
        header.extend(
            [
                translate("Sensor", lang),
                translate("Voltage", lang),
                translate("Temperature", lang),
                "RSSI",
                "SNR",
                translate("Counter", lang),
            ]
        )

    body = [f"<h3>{translate('Letterbox Sensor Status', lang)}</h3>"]
    if not snapshots:
        body.append(f"<p>{translate('no devices found', lang)}</p>")
    else:
        body.append('<table border="1" cellspacing="0" cellpadding="3">')
        body.append("  <tr>" + "".join(f"<th>{h}</th>" for h in header) + "</tr>")
        for snapshot in snapshots:
            body.append(render_device_row(snapshot, ctx, details))
            images = graphics.get(snapshot.dev_id) or {}
            if images:
                body.append(
                    f'  <tr><td colspan="{len(header)}">'
                    + "\n".join(images[name] for name in images)
                    + "</td></tr>"
                )
        body.append("</table>")

    controls = [toggle(ctx, "details", "Details"), toggle(ctx, "autoreload", "Autoreload")]
    controls.extend(a for a in actions if a)
    body.append("<p>\n" + "\n".join(controls) + "\n</p>")
    if auth_box:
        body.append(auth_box)

    refresh = AUTORELOAD_SECONDS if ctx.is_on("autoreload") else None
    return render_page("\n".join(body), lang, refresh)
