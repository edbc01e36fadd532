# table_layout.py
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from reportlab.lib import colors

from image_pipeline import ImageResolver, color_from_attributes, parse_attributes
from models import LineItem
from surface import PageManager, Surface, TableContinuation
from text_layout import (
    CELL_PADDING,
    align_x,
    fit_text,
    format_money,
    format_quantity,
    wrap_text,
)

logger = logging.getLogger(__name__)

# (label, base weight); weights are scaled to the content width
COLUMNS = (
    ("IMAGE", 25),
    ("ITEM", 25),
    ("DESCRIPTION", 45),
    ("COLOR", 25),
    ("UNIT PRICE", 30),
    ("QUANTITY", 25),
    ("TOTAL", 30),
)
CENTERED_COLUMN = 1  # ITEM / SKU

HEADER_HEIGHT = 8.0
ROW_HEIGHT = 15.0
IMAGE_MAX = 18.0
IMAGE_PAD = 1.0
BODY_SIZE = 9
HEADER_SIZE = 10
LINE_STEP = 4.0
MAX_CELL_LINES = 3

ROW_FILL = colors.Color(240 / 255.0, 240 / 255.0, 240 / 255.0)
HEADER_FILL = colors.black
BORDER = colors.black


@dataclass
class TableResult:
    top: float
    bottom: float
    first_page: int
    last_page: int
    rows: int


def column_widths(content_width: float, weights: Iterable[float] | None = None) -> list[float]:
    weights = list(weights) if weights is not None else [w for _label, w in COLUMNS]
    total = float(sum(weights)) or 1.0
    scale = content_width / total
    return [w * scale for w in weights]


def group_line_items(items: Iterable[LineItem]) -> list[LineItem]:
    """Variants of one product end up next to each other; equal keys keep their order."""
    return sorted(items, key=lambda li: (li.product_id, li.sku or ""))


def row_cells(item: LineItem) -> list[str]:
    attrs = parse_attributes(item.product_variant_attributes)
    return [
        item.sku or "",
        item.notes or "",
        color_from_attributes(attrs),
        format_money(item.unit_price),
        format_quantity(item.ordered_quantity),
        format_money(item.line_total),
    ]


def _draw_header(surface: Surface, x0: float, top: float, widths: list[float]) -> None:
    surface.rect(x0, top, sum(widths), HEADER_HEIGHT, fill_color=HEADER_FILL)
    surface.set_font("bold", HEADER_SIZE)
    text_y = top + (HEADER_HEIGHT / 2) + 2
    cx = x0
    for idx, (label, _w) in enumerate(COLUMNS):
        mode = "center" if idx == CENTERED_COLUMN else "left"
        surface.text(label, cx + align_x(label, widths[idx], mode, surface.measure), text_y, color=colors.white)
        cx += widths[idx]
        if idx < len(COLUMNS) - 1:
            surface.line(cx, top, cx, top + HEADER_HEIGHT, color=colors.white)


def _draw_sides(surface: Surface, x0: float, table_w: float, top: float, bottom: float) -> None:
    surface.line(x0, top, x0, bottom, color=BORDER)
    surface.line(x0 + table_w, top, x0 + table_w, bottom, color=BORDER)


def _draw_cell_text(surface: Surface, text: str, cx: float, row_top: float, width: float, centered: bool) -> None:
    inner = width - 2 * CELL_PADDING
    lines = wrap_text(text, inner, surface.measure)
    if len(lines) > MAX_CELL_LINES:
        lines = lines[:MAX_CELL_LINES]
        lines[-1] = fit_text(lines[-1] + " ...", inner, surface.measure)
    lines = [fit_text(ln, inner, surface.measure) for ln in lines]
    if not lines:
        return
    block_h = (len(lines) - 1) * LINE_STEP
    y = row_top + (ROW_HEIGHT - block_h) / 2 + 1.2
    for ln in lines:
        mode = "center" if centered else "left"
        surface.text(ln, cx + align_x(ln, width, mode, surface.measure), y)
        y += LINE_STEP


def _draw_row_image(surface: Surface, image, x: float, row_top: float, col_w: float) -> None:
    box = min(IMAGE_MAX, ROW_HEIGHT - 2 * IMAGE_PAD, col_w - 2 * IMAGE_PAD)
    if box <= 0:
        return
    try:
        surface.image(image.reader(), x + (col_w - box) / 2, row_top + (ROW_HEIGHT - box) / 2, box, box)
    except Exception as e:
        logger.warning("Could not embed line-item image: %s", e)


async def draw_line_item_table(
    surface: Surface,
    pages: PageManager,
    items: Iterable[LineItem],
    resolver: Optional[ImageResolver] = None,
) -> Optional[TableResult]:
    """
    Line-item table at the cursor. Returns None (and draws nothing) when there
    are no items. The header band is drawn once; continuation pages get a top
    border only. Side borders are drawn per page, the bottom border once, at the
    last row's bottom edge.
    """
    rows = group_line_items(items)
    if not rows:
        return None

    x0 = surface.margin
    table_w = surface.content_width
    widths = column_widths(table_w)

    # header and first row stay together
    pages.ensure_space(HEADER_HEIGHT + ROW_HEIGHT)
    top = pages.y
    first_page = pages.state.page_index
    _draw_header(surface, x0, top, widths)
    pages.advance(HEADER_HEIGHT)

    state = TableContinuation(segment_top=top, last_row_bottom=pages.y, rows_remaining=len(rows))
    pages.state.table = state

    for index, item in enumerate(rows):
        if not pages.fits(ROW_HEIGHT):
            _draw_sides(surface, x0, table_w, state.segment_top, state.last_row_bottom)
            pages.new_page()
            state.segment_top = pages.y
            state.last_row_bottom = pages.y
            surface.line(x0, pages.y, x0 + table_w, pages.y, color=BORDER)
            logger.debug("Table continues on page %d with %d rows left", pages.page_count, state.rows_remaining)

        row_top = pages.y
        if index % 2 == 0:
            surface.rect(x0, row_top, table_w, ROW_HEIGHT, fill_color=ROW_FILL)

        image = await resolver.resolve(item) if resolver is not None else None
        if image is not None:
            _draw_row_image(surface, image, x0, row_top, widths[0])

        surface.set_font("normal", BODY_SIZE)
        cx = x0 + widths[0]
        surface.line(cx, row_top, cx, row_top + ROW_HEIGHT, color=BORDER)
        for col, text in enumerate(row_cells(item), start=1):
            _draw_cell_text(surface, text, cx, row_top, widths[col], centered=(col == CENTERED_COLUMN))
            cx += widths[col]
            if col < len(COLUMNS) - 1:
                surface.line(cx, row_top, cx, row_top + ROW_HEIGHT, color=BORDER)

        pages.advance(ROW_HEIGHT)
        state.last_row_bottom = pages.y
        state.rows_remaining -= 1

    _draw_sides(surface, x0, table_w, state.segment_top, state.last_row_bottom)
    surface.line(x0, state.last_row_bottom, x0 + table_w, state.last_row_bottom, color=BORDER)
    pages.state.table = None

    return TableResult(
        top=top,
        bottom=state.last_row_bottom,
        first_page=first_page,
        last_page=pages.state.page_index,
        rows=len(rows),
    )
