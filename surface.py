# surface.py
"""
Paginated drawing surface for the PO document.

Layout code works in millimetres from the top-left corner of the page; the
Surface converts to reportlab's bottom-left point space when it draws. The
PageManager only does cursor bookkeeping and page breaks.
"""
import io
import logging
import os
from dataclasses import dataclass
from typing import Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

from config import Config
from text_layout import Measure, measure_with

logger = logging.getLogger(__name__)

MARGIN = 10.0          # mm, all sides
FOOTER_RESERVE = 20.0  # mm kept free at the bottom for the footer bar


# -----------------------------
# Fonts
# -----------------------------
@dataclass(frozen=True)
class FontFamily:
    regular: str
    bold: str


_COURIER = FontFamily("Courier", "Courier-Bold")
_resolved_family: Optional[FontFamily] = None


def resolve_font_family(font_dir: str | None = None) -> FontFamily:
    """
    IBM Plex Mono when both TTF files are present, the built-in Courier family
    otherwise. Registration happens once per process.
    """
    global _resolved_family
    if _resolved_family is not None:
        return _resolved_family

    font_dir = font_dir or Config.PO_FONT_DIR
    regular_path = os.path.join(font_dir, "IBMPlexMono-Regular.ttf")
    bold_path = os.path.join(font_dir, "IBMPlexMono-Bold.ttf")
    if os.path.exists(regular_path) and os.path.exists(bold_path):
        try:
            pdfmetrics.registerFont(TTFont("IBMPlexMono", regular_path))
            pdfmetrics.registerFont(TTFont("IBMPlexMono-Bold", bold_path))
            _resolved_family = FontFamily("IBMPlexMono", "IBMPlexMono-Bold")
            logger.info("Using IBM Plex Mono from %s", font_dir)
            return _resolved_family
        except Exception as e:
            logger.warning("Could not register IBM Plex Mono (%s); falling back to Courier", e)
    _resolved_family = _COURIER
    return _resolved_family


# -----------------------------
# Cursor / page bookkeeping
# -----------------------------
@dataclass
class TableContinuation:
    """Where the current table segment started and where its last row ended."""
    segment_top: float
    last_row_bottom: float
    rows_remaining: int


@dataclass
class PageState:
    y: float
    page_index: int = 0
    table: Optional[TableContinuation] = None


class PageManager:
    def __init__(self, surface: "Surface"):
        self.surface = surface
        self.top = surface.margin
        self.bottom_limit = surface.bottom_limit
        self.state = PageState(y=self.top)

    @property
    def y(self) -> float:
        return self.state.y

    @property
    def page_count(self) -> int:
        return self.state.page_index + 1

    def fits(self, required_height: float) -> bool:
        return self.state.y + required_height <= self.bottom_limit

    def ensure_space(self, required_height: float, top: float | None = None) -> bool:
        """
        Break the page when the content would cross the bottom limit.
        Returns True when a new page was started; callers redraw their own chrome.
        """
        if self.fits(required_height):
            return False
        self.new_page(top)
        return True

    def new_page(self, top: float | None = None) -> None:
        self.surface.show_page()
        self.state.page_index += 1
        self.state.y = self.top if top is None else top

    def advance(self, height: float) -> float:
        self.state.y += height
        return self.state.y

    def move_to(self, y: float) -> float:
        self.state.y = y
        return self.state.y


# -----------------------------
# Drawing primitives
# -----------------------------
class Surface:
    def __init__(self, title: str = "", pagesize=LETTER, margin: float = MARGIN, footer_reserve: float = FOOTER_RESERVE):
        self._buf = io.BytesIO()
        self.pdf = canvas.Canvas(self._buf, pagesize=pagesize)
        if title:
            self.pdf.setTitle(title)
        self.page_w_pt, self.page_h_pt = pagesize
        self.width = self.page_w_pt / mm
        self.height = self.page_h_pt / mm
        self.margin = margin
        self.content_width = self.width - 2 * margin
        self.bottom_limit = self.height - footer_reserve
        self.fonts = resolve_font_family()
        self._font = (self.fonts.regular, 10.0)
        self.set_font("normal", 10)

    # Fonts / measurement
    def set_font(self, weight: str, size: float) -> None:
        name = self.fonts.bold if weight == "bold" else self.fonts.regular
        self._font = (name, float(size))
        self.pdf.setFont(name, size)

    @property
    def measure(self) -> Measure:
        return measure_with(*self._font)

    def text_width(self, text) -> float:
        return self.measure(str(text))

    # Coordinate conversion (mm, top-down -> pt, bottom-up)
    def _x(self, x: float) -> float:
        return x * mm

    def _y(self, y: float) -> float:
        return self.page_h_pt - (y * mm)

    def text(self, s, x: float, y: float, color=colors.black) -> None:
        self.pdf.setFillColor(color)
        self.pdf.drawString(self._x(x), self._y(y), str(s))

    def line(self, x1: float, y1: float, x2: float, y2: float, color=colors.black, width: float = 0.2) -> None:
        self.pdf.setStrokeColor(color)
        self.pdf.setLineWidth(width * mm)
        self.pdf.line(self._x(x1), self._y(y1), self._x(x2), self._y(y2))

    def rect(self, x: float, y: float, w: float, h: float, fill_color=None, stroke_color=None) -> None:
        if fill_color is not None:
            self.pdf.setFillColor(fill_color)
        if stroke_color is not None:
            self.pdf.setStrokeColor(stroke_color)
            self.pdf.setLineWidth(0.2 * mm)
        self.pdf.rect(
            self._x(x),
            self._y(y + h),
            w * mm,
            h * mm,
            stroke=1 if stroke_color is not None else 0,
            fill=1 if fill_color is not None else 0,
        )

    def image(self, reader, x: float, y: float, w: float, h: float) -> None:
        self.pdf.drawImage(
            reader,
            self._x(x),
            self._y(y + h),
            width=w * mm,
            height=h * mm,
            preserveAspectRatio=True,
            anchor="c",
            mask="auto",
        )

    def show_page(self) -> None:
        self.pdf.showPage()
        # reportlab resets the graphics state on a new page
        self.pdf.setFont(*self._font)

    def save(self) -> bytes:
        self.pdf.save()
        return self._buf.getvalue()
