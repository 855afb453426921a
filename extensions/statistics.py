"""Statistics extension: rolling pixel-map history images

boxstatus       one pixel per 15 minutes, one row per day, coloured by box state
receivedstatus  one pixel per frame counter, gaps in red

The rolling cursor (last painted cell) is kept in a `cursor` text chunk of
each PNG. Rows ahead of the cursor are cleared so the wrap-around is visible.
"""
import base64
import io
import logging
import os
import tempfile
from datetime import datetime
from typing import Optional

from PIL import Image, ImageColor, ImageDraw, ImageFont
from PIL.PngImagePlugin import PngInfo

from context import RequestContext
from errors import ConfigurationError, ValidationError
from extensions.base import Extension
from models import BoxStatus, Uplink
from status_store import StatusStore, apply_threshold, transition
from translations import translate

logger = logging.getLogger(__name__)

BOXSTATUS = "boxstatus"
RECEIVEDSTATUS = "receivedstatus"
STATISTICS = (BOXSTATUS, RECEIVEDSTATUS)

BOXSTATUS_CELL = 60 * 15  # seconds
CURSOR_KEY = "cursor"

SIZES = {
    BOXSTATUS: {
        "xmax": 96,  # every 15 min
        "ymax": 100,  # 100 days
        "xgrid": 4,
        "ygrid": 5,
        "xdiv": 4,
        "ydiv": 1,
        "scale": 3,
        "ltext": "Days (rollover)",
        "ttext": "Hour Of Day (UTC)",
        "dborder": 8,
        "lborder": 13,
        "rborder": 5,
        "tborder": 11,
        "bborder": 5,
    },
    RECEIVEDSTATUS: {
        "xmax": 48,
        "ymax": 100,
        "xgrid": 2,
        "ygrid": 5,
        "xdiv": 2,
        "ydiv": 1,
        "scale": 3,
        "ltext": "Days (rollover)",
        "btext": "Counter (rollover)",
        "rtext": "Counter (rollover)",
        "ttext": "Hour Of Day (UTC)",
        "dborder": 8,
        "lborder": 13,
        "rborder": 21,
        "tborder": 11,
        "bborder": 11,
    },
}

COLOR_TICKS = "#101010"
COLOR_NUMBER = "#000000"
COLOR_WHITE = "#FFFFFF"
COLOR_BLACK = "#000000"
COLOR_CLEAR = "#FFFFFF"
COLOR_BORDER = "#A0A0A0"
COLOR_RECEIVED_OK = "#CCFF66"
COLOR_RECEIVED_GAP = "#FF0000"

COLORS_BOXSTATUS = {
    BoxStatus.FULL: "#6FEF00",  # green
    BoxStatus.EMPTY: "#C8C8C8",  # grey
    BoxStatus.FILLED: "#FFFF00",  # yellow
    BoxStatus.EMPTIED: "#FF8080",  # pink
}

# 3x5 digits, bit (y * 3 + x)
DIGIT_FONT = (0x7B6F, 0x2492, 0x73E7, 0x79E7, 0x49ED, 0x79CF, 0x7BCF, 0x4927, 0x7BEF, 0x79EF)


def paint_digit(image: Image.Image, x: int, y: int, digit: int, color: str) -> None:
    pattern = DIGIT_FONT[digit]
    for yd in range(5):
        for xd in range(3):
            if pattern & (1 << (yd * 3 + xd)):
                image.putpixel((x + xd, y + yd), ImageColor.getrgb(color))


def paint_number(image: Image.Image, x: int, y: int, number: int, color: str) -> None:
    """Paint up to 5 digits, 4 pixels apart."""
    for offset, char in enumerate(str(int(number))[-5:]):
        paint_digit(image, x + offset * 4, y, int(char), color)


class PixelMap:
    """One statistics image plus its cursor."""

    def __init__(self, kind: str, image: Image.Image, cursor: int = 0):
        self.kind = kind
        self.size = SIZES[kind]
        self.image = image
        self.cursor = cursor

    @classmethod
    def create(cls, kind: str) -> "PixelMap":
        s = SIZES[kind]
        xmax, ymax = s["xmax"], s["ymax"]
        lborder, rborder, tborder, bborder = s["lborder"], s["rborder"], s["tborder"], s["bborder"]
        xgrid, ygrid = s["xgrid"], s["ygrid"]
        width = xmax + lborder + rborder
        height = ymax + tborder + bborder

        image = Image.new("RGB", (width, height), COLOR_BLACK)
        draw = ImageDraw.Draw(image)
        draw.rectangle((1, 1, width - 2, height - 2), fill=COLOR_BORDER)
        draw.rectangle((lborder, tborder, width - rborder - 1, height - bborder - 1), fill=COLOR_WHITE)

        ticks = ImageColor.getrgb(COLOR_TICKS)
        for x in range(0, xmax, xgrid):
            image.putpixel((x + lborder, tborder - 1), ticks)
            image.putpixel((x + lborder, height - bborder), ticks)
        for x in range(0, xmax, xgrid * 12):
            image.putpixel((x + lborder, tborder - 3), ticks)
            image.putpixel((x + lborder, height - bborder + 2), ticks)
        for x in range(0, xmax, xgrid * 6):
            paint_number(image, x + lborder - 1, 2, x // s["xdiv"], COLOR_NUMBER)
            image.putpixel((x + lborder, tborder - 2), ticks)
            image.putpixel((x + lborder, height - bborder + 1), ticks)

        for y in range(0, ymax, ygrid):
            image.putpixel((lborder - 1, y + tborder), ticks)
            image.putpixel((width - rborder, y + tborder), ticks)
        for y in range(0, ymax, ygrid * 10):
            image.putpixel((lborder - 3, y + tborder), ticks)
            image.putpixel((width - rborder + 2, y + tborder), ticks)
        for y in range(0, ymax, ygrid * 2):
            paint_number(image, 2, y + tborder - 1, y // s["ydiv"], COLOR_NUMBER)
            image.putpixel((lborder - 2, y + tborder), ticks)
            image.putpixel((width - rborder + 1, y + tborder), ticks)

        if kind == RECEIVEDSTATUS:
            for x in range(0, xmax, xgrid * 6):
                paint_number(image, x + lborder - 1, height - bborder + 4, x, COLOR_NUMBER)
            for y in range(0, ymax, ygrid * 2):
                paint_number(image, width - rborder + 4, y + tborder - 1, y * xmax, COLOR_NUMBER)

        return cls(kind, image)

    @property
    def capacity(self) -> int:
        return self.size["xmax"] * self.size["ymax"]

    def paint_cell(self, cell: int, color: str) -> None:
        s = self.size
        x = s["lborder"] + cell % s["xmax"]
        y = s["tborder"] + (cell // s["xmax"]) % s["ymax"]
        self.image.putpixel((x, y), ImageColor.getrgb(color))

    def clear_ahead(self, cell: int) -> None:
        """Clear the next three rows after the cell."""
        for g in range(cell + 1, cell + self.size["xmax"] * 3):
            self.paint_cell(g, COLOR_CLEAR)

    def update_received(self, counter: int) -> None:
        stored = self.cursor
        if counter - 1 != stored and counter > stored:
            for c in range(max(stored + 1, counter - self.capacity), counter):
                self.paint_cell(c, COLOR_RECEIVED_GAP)
        self.paint_cell(counter, COLOR_RECEIVED_OK)
        self.clear_ahead(counter)
        self.cursor = counter

    def update_boxstatus(self, timestamp: float, status: BoxStatus) -> None:
        stored = self.cursor
        color = COLORS_BOXSTATUS[status]
        cell = int(timestamp // BOXSTATUS_CELL)
        self.paint_cell(cell, color)
        if stored > 0 and cell - 1 > stored:
            # fill gap
            for g in range(max(stored + 1, cell - self.capacity), cell):
                self.paint_cell(g, color)
        self.clear_ahead(cell)
        self.cursor = cell

    def render(self, mobile: bool = False) -> bytes:
        """Scaled PNG with axis captions."""
        s = self.size
        scale = s["scale"] - 1 if mobile else s["scale"]
        width, height = self.image.width * scale, self.image.height * scale
        dborder = s["dborder"]
        border = dborder * 2 if self.kind == RECEIVEDSTATUS else dborder
        xmax, ymax = s["xmax"] * scale, s["ymax"] * scale
        lborder, tborder = s["lborder"] * scale, s["tborder"] * scale

        scaled = Image.new("RGB", (width + border, height + border), COLOR_BLACK)
        scaled.paste(self.image.resize((width, height), Image.NEAREST), (dborder, dborder))

        font = ImageFont.load_default()
        draw = ImageDraw.Draw(scaled)
        text = s["ttext"]
        draw.text((xmax // 2 + lborder + dborder - text_width(draw, text, font) // 2, 0), text, fill=COLOR_WHITE, font=font)
        paste_vertical(scaled, s["ltext"], font, 0, ymax // 2 + tborder + dborder)
        if self.kind == RECEIVEDSTATUS:
            text = s["btext"]
            draw.text(
                (xmax // 2 + lborder + dborder - text_width(draw, text, font) // 2, height + border - 10),
                text,
                fill=COLOR_WHITE,
                font=font,
            )
            paste_vertical(scaled, s["rtext"], font, None, ymax // 2 + tborder + dborder)

        buffer = io.BytesIO()
        scaled.save(buffer, format="PNG", optimize=True)
        return buffer.getvalue()


def text_width(draw: ImageDraw.ImageDraw, text: str, font) -> int:
    left, _, right, _ = draw.textbbox((0, 0), text, font=font)
    return right - left


def paste_vertical(image: Image.Image, text: str, font, x: Optional[int], y_center: int) -> None:
    """Paste bottom-up text centred on y_center, right-aligned if x is None."""
    probe = ImageDraw.Draw(image)
    left, top, right, bottom = probe.textbbox((0, 0), text, font=font)
    label = Image.new("L", (right - left + 2, bottom - top + 2), 0)
    ImageDraw.Draw(label).text((1 - left, 1 - top), text, fill=255, font=font)
    label = label.rotate(90, expand=True)
    if x is None:
        x = image.width - label.width
    image.paste(Image.new("RGB", label.size, COLOR_WHITE), (x, max(0, y_center - label.height // 2)), label)


class Statistics(Extension):
    name = "statistics"

    def init(self):
        self.store = StatusStore(self.config.datadir)
        self.log_debug("init called")

    def image_path(self, dev_id: str, kind: str) -> str:
        return os.path.join(self.config.datadir, f"ttn.{dev_id}.{kind}.png")

    def load(self, dev_id: str, kind: str) -> Optional[PixelMap]:
        path = self.image_path(dev_id, kind)
        if not os.path.exists(path):
            return None
        with Image.open(path) as image:
            cursor_text = image.info.get(CURSOR_KEY, "0")
            image = image.convert("RGB")
        try:
            cursor = int(cursor_text)
        except ValueError:
            raise ValidationError("major problem found", f"statistics cursor not consistent: {path}")
        return PixelMap(kind, image, cursor)

    def save(self, dev_id: str, pixmap: PixelMap) -> None:
        """Write image and cursor as one PNG, replacing the previous file atomically."""
        path = self.image_path(dev_id, pixmap.kind)
        info = PngInfo()
        info.add_text(CURSOR_KEY, str(pixmap.cursor))
        fd, tmp = tempfile.mkstemp(dir=self.config.datadir, prefix=f".ttn.{dev_id}.{pixmap.kind}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                pixmap.image.save(f, format="PNG", pnginfo=info)
            os.replace(tmp, path)
        except OSError as e:
            os.unlink(tmp)
            raise ConfigurationError(f"cannot write statistics image {path}: {e}")

    def init_device(self, dev_id: str) -> None:
        for kind in STATISTICS:
            pixmap = self.load(dev_id, kind)
            if pixmap is None:
                self.log_debug(f"file missing, create now: {self.image_path(dev_id, kind)}")
                pixmap = PixelMap.create(kind)
                self.save(dev_id, pixmap)
            if pixmap.cursor == 0:
                self.log_debug(f"file existing but empty, fill from raw logs: {self.image_path(dev_id, kind)}")
                self.fill_device(dev_id, pixmap)
                self.save(dev_id, pixmap)

    def fill_device(self, dev_id: str, pixmap: PixelMap) -> None:
        """Replay the raw logs into an empty pixel map."""
        threshold = self.config.threshold_for(dev_id)
        previous = None
        boxstates: dict[float, BoxStatus] = {}
        counters = set()
        for received, raw in self.store.iter_raw_log(dev_id):
            uplink = Uplink.from_json(raw)
            if pixmap.kind == RECEIVEDSTATUS:
                if uplink.counter is not None:
                    counters.add(uplink.counter)
                continue
            box = apply_threshold(uplink.box, uplink.sensor, threshold)
            previous = transition(previous, box, raw, received)
            boxstates[received.timestamp()] = previous.state

        if pixmap.kind == RECEIVEDSTATUS:
            for counter in sorted(counters):
                pixmap.update_received(counter)
        else:
            for timestamp in sorted(boxstates):
                pixmap.update_boxstatus(timestamp, boxstates[timestamp])
        logger.info(f"statistics: filled {pixmap.kind} of {dev_id} from raw logs (cursor={pixmap.cursor})")

    def store_data(self, dev_id: str, received: datetime, uplink: Uplink) -> None:
        self.log_debug(f"store_data called dev_id={dev_id}")
        for kind in STATISTICS:
            pixmap = self.load(dev_id, kind) or PixelMap.create(kind)
            if kind == RECEIVEDSTATUS:
                if uplink.counter is None:
                    self.log_debug("uplink without counter, receivedstatus not updated")
                    continue
                pixmap.update_received(uplink.counter)
            else:
                pixmap.update_boxstatus(received.timestamp(), uplink.box)
            self.save(dev_id, pixmap)

    def get_graphics(self, dev_id: str, ctx: RequestContext) -> dict[str, str]:
        if not ctx.is_on("statistics"):
            return {}
        html = {}
        for kind in STATISTICS:
            pixmap = self.load(dev_id, kind)
            if pixmap is None:
                self.log_debug(f"file missing, skip: {self.image_path(dev_id, kind)}")
                continue
            png = base64.b64encode(pixmap.render(ctx.mobile)).decode()
            html[kind] = f'<img alt="{kind}" src="data:image/png;base64,{png}">'
        return html

    def html_actions(self, ctx: RequestContext) -> str:
        """Toggle for the statistics images."""
        state = "off" if ctx.is_on("statistics") else "on"
        hidden = ctx.hidden_fields("statistics")
        return (
            '<form method="get" style="display:inline">'
            f'{hidden}<input type="hidden" name="statistics" value="{state}">'
            f'<input type="submit" value="{translate("Statistics", ctx.language)} {translate(state, ctx.language)}"></form>'
        )
