# text_layout.py
from datetime import datetime
from typing import Callable

from reportlab.lib.units import mm
from reportlab.pdfbase.pdfmetrics import stringWidth

# measure(text) -> width in millimetres, for whatever font is active at call time
Measure = Callable[[str], float]

CELL_PADDING = 3.0  # mm, left-aligned cell text


def measure_with(font: str, size: float) -> Measure:
    """Bind a font/size pair to a width function (result in mm)."""
    def _measure(text: str) -> float:
        return stringWidth(str(text), font, size) / mm
    return _measure


def wrap_text(text, max_width: float, measure: Measure) -> list[str]:
    """
    Greedy word wrap. A word that is wider than max_width on its own is kept
    whole on its own line.
    """
    words = str(text or "").split()
    lines: list[str] = []
    current = ""
    for w in words:
        test = f"{current} {w}" if current else w
        if current and measure(test) > max_width:
            lines.append(current)
            current = w
        else:
            current = test
    if current:
        lines.append(current)
    return lines


def wrap_paragraphs(text, max_width: float, measure: Measure) -> list[str]:
    """
    Split on explicit newlines first and wrap each paragraph on its own.
    Blank paragraphs come back as "" so the caller can leave a gap for them.
    """
    out: list[str] = []
    for paragraph in str(text or "").split("\n"):
        if not paragraph.strip():
            out.append("")
            continue
        out.extend(wrap_text(paragraph.strip(), max_width, measure))
    return out


def align_x(text, cell_width: float, mode: str, measure: Measure) -> float:
    """x offset of text inside a cell: centered, or left with a fixed padding."""
    if mode == "center":
        return (cell_width - measure(str(text))) / 2.0
    return CELL_PADDING


def fit_text(text, max_width: float, measure: Measure, suffix: str = "...") -> str:
    """Trim text (adding suffix) until it fits max_width."""
    raw = str(text or "")
    if measure(raw) <= max_width:
        return raw
    while raw and measure(raw + suffix) > max_width:
        raw = raw[:-1]
    return (raw.rstrip() + suffix) if raw else ""


def format_money(x) -> str:
    try:
        return f"${float(x):,.2f}"
    except (TypeError, ValueError):
        return f"${x}"


def format_quantity(q) -> str:
    try:
        f = float(q)
    except (TypeError, ValueError):
        return str(q or "")
    return str(int(f)) if f == int(f) else f"{f:g}"


def format_date(value) -> str:
    """ISO-8601 -> MM/DD/YYYY. Unparseable values are returned as given."""
    raw = str(value or "").strip()
    if not raw:
        return ""
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return raw
    return dt.strftime("%m/%d/%Y")
