# po_pdf_service.py
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from reportlab.lib import colors

from config import Config
from file_service import FileService
from image_pipeline import ImageCache, ImageResolver, load_signature
from models import Address, Approval, DocumentInput, PurchaseOrder, PurchaseOrderPdf, find_stored_pdf
from surface import PageManager, Surface
from table_layout import draw_line_item_table
from text_layout import fit_text, format_date, format_money, wrap_paragraphs, wrap_text

logger = logging.getLogger(__name__)

DEFAULT_ROLES = ("CFO", "DIRECTOR")

# Address block
ADDRESS_HEADING_SIZE = 10
ADDRESS_BODY_SIZE = 9
ADDRESS_FIRST_LINE = 5.0
ADDRESS_STEP = 4.0

# Financial summary
SUMMARY_W = 60.0
SUMMARY_ROW_H = 8.0
SUMMARY_VALUE_X = 35.0

# Approvals
BAND_H = 8.0
INSTRUCTION_STEP = 5.0
INSTRUCTION_AFTER = 15.0
SIGNATURE_W = 40.0
SIGNATURE_H = 15.0
SIGNATURE_LINE_W = 50.0
SIGNATURE_BLOCK_H = 27.0

# Overflow sections
SECTION_BREAK_RESERVE = 40.0
SECTION_LINE_STEP = 5.0
SECTION_BLANK_STEP = 3.0


def _safe_filename(name: str) -> str:
    # strip characters not allowed on Windows/mac paths
    return re.sub(r'[\\/*?:"<>|]', "", (name or "")).strip() or "PO"


def po_pdf_filename(po: PurchaseOrder) -> str:
    return f"PO-{_safe_filename(po.po_number)}.pdf"


def _address_lines(address: Optional[Address], fallback_name: str, max_w: float, measure) -> list[str]:
    if address is None:
        return [fallback_name] if fallback_name else []
    lines = []
    if address.name:
        lines.append(address.name)
    if address.address:
        lines.extend(wrap_text(address.address, max_w, measure))
    city_line = address.city_line()
    if city_line:
        lines.append(city_line)
    if address.phone:
        lines.append(address.phone)
    if address.contact_person:
        lines.append(f"ATTN: {address.contact_person}")
    return lines


class PurchaseOrderRenderer:
    """
    One render of one purchase order. Sections are drawn strictly top to bottom;
    every section moves the shared cursor and may break the page.
    """

    def __init__(
        self,
        document: DocumentInput,
        files: FileService,
        *,
        brand: str | None = None,
        instruction_lines: Sequence[str] | None = None,
        roles: Sequence[str] = DEFAULT_ROLES,
    ):
        self.doc = document
        self.po = document.purchase_order
        self.files = files
        self.brand = brand if brand is not None else Config.PO_BRAND_NAME
        self.instruction_lines = list(instruction_lines if instruction_lines is not None else Config.PO_INSTRUCTION_LINES)
        self.roles = tuple(roles) + DEFAULT_ROLES[len(tuple(roles)):]
        self.surface = Surface(title=f"Purchase Order - {self.po.po_number}")
        self.pages = PageManager(self.surface)
        self.cache = ImageCache()

    # -----------------------------
    # Sections
    # -----------------------------
    def draw_header(self) -> None:
        s, p = self.surface, self.pages
        y = p.y + 10
        s.set_font("bold", 14)
        s.text("PURCHASE ORDER", s.margin, y)
        s.text(self.brand, s.width - s.margin - s.text_width(self.brand), y)
        p.advance(20)

    def draw_address_block(self) -> None:
        s, p = self.surface, self.pages
        col_w = s.content_width / 3

        s.set_font("normal", ADDRESS_BODY_SIZE)
        columns = [
            ("SHIP TO:", _address_lines(self.doc.warehouse_address, self.po.warehouse_name, col_w - 5, s.measure)),
            ("VENDOR:", _address_lines(self.doc.vendor_address, self.po.vendor_name, col_w - 5, s.measure)),
        ]
        # each column tracks its own extent; the block is as tall as the tallest
        heights = [ADDRESS_FIRST_LINE + len(lines) * ADDRESS_STEP for _t, lines in columns]
        heights.append(ADDRESS_FIRST_LINE + 3 * ADDRESS_STEP)
        p.ensure_space(max(heights))
        top = p.y

        extents = []
        for idx, (title, lines) in enumerate(columns):
            x = s.margin + idx * col_w
            s.set_font("bold", ADDRESS_HEADING_SIZE)
            s.text(title, x, top)
            s.set_font("normal", ADDRESS_BODY_SIZE)
            y = top + ADDRESS_FIRST_LINE
            for ln in lines:
                s.text(ln, x, y)
                y += ADDRESS_STEP
            extents.append(y - top)

        extents.append(self._draw_po_details(s.margin + 2 * col_w, top))
        p.advance(max(extents) + 10)

    def _draw_po_details(self, x: float, top: float) -> float:
        s = self.surface
        s.set_font("bold", ADDRESS_HEADING_SIZE)
        s.text("PO DETAILS:", x, top)

        s.set_font("bold", ADDRESS_BODY_SIZE)
        rows = [
            ("DATE:", format_date(self.po.po_date) or format_date(self.po.created_date)),
            ("PO NUMBER:", self.po.po_number),
            ("PO TOTAL:", format_money(self.po.total_value)),
        ]
        value_x = x + max(s.text_width(label) for label, _v in rows) + 3
        y = top + ADDRESS_FIRST_LINE
        for label, value in rows:
            s.set_font("bold", ADDRESS_BODY_SIZE)
            s.text(label, x, y)
            s.set_font("normal", ADDRESS_BODY_SIZE)
            s.text(value, value_x, y)
            y += ADDRESS_STEP
        return y - top

    async def draw_line_items(self) -> None:
        resolver = ImageResolver(self.files, self.po.line_items, cache=self.cache)
        result = await draw_line_item_table(self.surface, self.pages, self.po.line_items, resolver)
        if result is not None:
            self.pages.move_to(result.bottom + 10)

    def draw_financial_summary(self) -> None:
        s, p = self.surface, self.pages
        p.ensure_space(3 * SUMMARY_ROW_H)
        x = s.width - s.margin - SUMMARY_W
        y = p.y
        rows = [
            ("TOTAL", self.po.total_value),
            ("DEPOSIT", self.po.deposit()),
            ("BALANCE", self.po.balance()),
        ]
        for label, value in rows:
            s.rect(x, y, SUMMARY_W, SUMMARY_ROW_H, stroke_color=colors.black)
            s.set_font("bold", 10)
            s.text(label, x + 2, y + 6)
            s.set_font("normal", 10)
            s.text(format_money(value), x + SUMMARY_VALUE_X, y + 6)
            y += SUMMARY_ROW_H
        p.advance(35)

    def _instruction_rows(self) -> list[str]:
        s = self.surface
        s.set_font("normal", 9)
        rows = []
        for ln in self.instruction_lines:
            rows.extend(wrap_text(ln, s.content_width, s.measure))
        return rows

    def _approvals_height(self) -> float:
        rows = len(self._instruction_rows())
        return BAND_H + 7 + rows * INSTRUCTION_STEP + INSTRUCTION_AFTER + SIGNATURE_BLOCK_H

    def draw_approval_band(self) -> None:
        s, p = self.surface, self.pages
        # band, instructions and signatures stay on one page
        p.ensure_space(self._approvals_height())
        s.rect(s.margin, p.y, s.content_width, BAND_H, fill_color=colors.black)
        s.set_font("bold", 12)
        s.text(f"{self.brand} APPROVALS:", s.margin + 2, p.y + 6, color=colors.white)
        p.advance(BAND_H + 7)

    def draw_instructions(self) -> None:
        s, p = self.surface, self.pages
        for row in self._instruction_rows():
            p.ensure_space(INSTRUCTION_STEP)
            s.text(row, s.margin, p.y)
            p.advance(INSTRUCTION_STEP)
        p.advance(INSTRUCTION_AFTER)

    async def draw_signatures(self) -> None:
        s, p = self.surface, self.pages
        p.ensure_space(SIGNATURE_BLOCK_H)
        approvals = list(self.doc.approval_list())
        slot_w = (s.content_width - 10) / 2
        y = p.y
        for slot in range(2):
            x = s.margin + slot * (slot_w + 10)
            approval: Optional[Approval] = approvals[slot] if slot < len(approvals) else None
            await self._draw_signature_slot(approval, slot, x, y)
        p.advance(SIGNATURE_BLOCK_H)

    async def _draw_signature_slot(self, approval: Optional[Approval], slot: int, x: float, y: float) -> None:
        s = self.surface
        if approval is not None and approval.signature_url:
            image = await load_signature(self.files, approval.signature_url)
            if image is not None:
                try:
                    s.image(image.reader(), x, y, SIGNATURE_W, SIGNATURE_H)
                except Exception as e:
                    logger.warning("Could not embed signature for approval %s: %s", approval.po_approval_id, e)

        s.line(x, y + SIGNATURE_H, x + SIGNATURE_LINE_W, y + SIGNATURE_H)
        s.set_font("normal", 10)
        name = approval.user_name if approval is not None else ""
        if slot == 1 and not name:
            name = "SECOND APPROVAL"
        if name:
            s.text(name, x, y + 20)
        s.text(self.roles[slot], x, y + 25)

    def draw_footer(self) -> None:
        s = self.surface
        footer_y = s.height - 10
        s.rect(s.margin, footer_y, s.content_width, 8, fill_color=colors.black)
        s.set_font("normal", 9)
        text = " | ".join([
            f"ORDER PLACED BY: {self.po.created_by_name or self.brand}",
            f"SHIP DATE: {format_date(self.po.expected_delivery_date) or 'TBD'}",
            f"SHIP VIA: {self.po.delivery_term.strip() or 'TBD'}",
        ])
        s.text(fit_text(text, s.content_width - 4, s.measure), s.margin + 2, footer_y + 6, color=colors.white)

    def overflow_sections(self) -> list[tuple[str, str]]:
        sections = [
            ("PO NOTES", self.po.notes),
            ("DELIVERY TERM", self.po.delivery_term),
            ("PACKING", self.po.packing),
        ]
        return [(title, body) for title, body in sections if (body or "").strip()]

    def draw_overflow_page(self) -> None:
        sections = self.overflow_sections()
        if not sections:
            return
        top = self.surface.margin + 10
        self.pages.new_page(top)
        for title, body in sections:
            self._draw_text_section(title, body, top)

    def _draw_text_section(self, title: str, body: str, top: float) -> None:
        s, p = self.surface, self.pages
        p.ensure_space(SECTION_BREAK_RESERVE, top)
        s.set_font("bold", 12)
        s.text(title, s.margin, p.y)
        p.advance(8)

        s.set_font("normal", 9)
        for line in wrap_paragraphs(body, s.content_width, s.measure):
            step = SECTION_BLANK_STEP if line == "" else SECTION_LINE_STEP
            p.ensure_space(step, top)
            if line:
                s.text(line, s.margin, p.y)
            p.advance(step)
        p.advance(10)

    # -----------------------------
    # Whole document
    # -----------------------------
    async def render(self) -> bytes:
        self.draw_header()
        self.draw_address_block()
        await self.draw_line_items()
        self.draw_financial_summary()
        self.draw_approval_band()
        self.draw_instructions()
        await self.draw_signatures()
        self.draw_footer()
        self.draw_overflow_page()
        data = self.surface.save()
        logger.info(
            "Rendered PO %s: %d page(s), %d line item(s), %d cached product image(s)",
            self.po.po_number, self.pages.page_count, len(self.po.line_items), len(self.cache),
        )
        return data


@dataclass(frozen=True)
class RenderedDocument:
    data: bytes
    page_count: int


async def render_po_document(
    document: DocumentInput,
    files: FileService | None = None,
    *,
    roles: Sequence[str] = DEFAULT_ROLES,
) -> RenderedDocument:
    """
    Render the purchase order document.
    A FileService is created (and closed) for the call when none is given.
    """
    if files is not None:
        renderer = PurchaseOrderRenderer(document, files, roles=roles)
        data = await renderer.render()
    else:
        async with FileService() as own_files:
            renderer = PurchaseOrderRenderer(document, own_files, roles=roles)
            data = await renderer.render()
    return RenderedDocument(data=data, page_count=renderer.pages.page_count)


async def generate_po_pdf(
    document: DocumentInput,
    files: FileService | None = None,
    *,
    roles: Sequence[str] = DEFAULT_ROLES,
) -> bytes:
    rendered = await render_po_document(document, files, roles=roles)
    return rendered.data


async def generate_and_store_pdf(
    session,
    document: DocumentInput,
    files: FileService | None = None,
) -> str:
    """
    Renders the PO, saves it under EXPORTS_DIR/<year>/PO-<number>.pdf and
    records it in po_pdfs.

    Returns: absolute pdf path on disk.
    """
    po = document.purchase_order
    generated_dt = datetime.utcnow()
    rendered = await render_po_document(document, files)

    year = (po.po_date or po.created_date or "")[:4]
    if not (len(year) == 4 and year.isdigit()):
        year = generated_dt.strftime("%Y")
    year_dir = os.path.join(Config.EXPORTS_DIR, year)
    os.makedirs(year_dir, exist_ok=True)
    pdf_path = os.path.abspath(os.path.join(year_dir, po_pdf_filename(po)))
    with open(pdf_path, "wb") as fh:
        fh.write(rendered.data)

    record = find_stored_pdf(session, po.po_number)
    if record is None:
        record = PurchaseOrderPdf(po_number=po.po_number)
    record.purchase_order_id = po.purchase_order_id
    record.pdf_path = pdf_path
    record.page_count = rendered.page_count
    record.generated_at = generated_dt
    session.add(record)
    session.commit()
    return pdf_path
