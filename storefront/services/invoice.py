"""PDF invoice rendering.

``generate_invoice`` writes ``invoice_<unique_order_id>.pdf`` into the
invoice directory and returns its path. The document embeds the render
date, so two renders of the same order are not byte-identical.
"""

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from storefront.core.config import settings
from storefront.core.logger import setup_logger

logger = setup_logger(__name__)

PRIMARY_COLOR = colors.HexColor("#007bff")
SECONDARY_COLOR = colors.HexColor("#495057")
BORDER_COLOR = colors.HexColor("#E9ECEF")
DANGER_COLOR = colors.HexColor("#dc3545")
PAID_COLOR = colors.HexColor("#28a745")
PENDING_COLOR = colors.HexColor("#ffc107")

FONT_NORMAL = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_ITALIC = "Helvetica-Oblique"

MARGIN = 50
PAGE_WIDTH, PAGE_HEIGHT = A4
CONTENT_WIDTH = PAGE_WIDTH - 2 * MARGIN
ITEM_COL_WIDTH = 200
# rows stop here so the footer badge always has room
TABLE_BOTTOM = 130

COLS = {
    "item": MARGIN + 5,
    "qty": MARGIN + 220,
    "price": MARGIN + 280,
    "discount": MARGIN + 370,
    "total_right": MARGIN + CONTENT_WIDTH - 5,
}


def invoice_filename(unique_order_id: str) -> str:
    return f"invoice_{unique_order_id}.pdf"


def _money(value) -> str:
    return f"{settings.CURRENCY_LABEL} {Decimal(value or 0):,.2f}"


def _text(value) -> str:
    return "" if value is None else str(value)


class _InvoiceCanvas:
    def __init__(self, path: Path):
        self.c = canvas.Canvas(str(path), pagesize=A4)
        self.c.setTitle(path.stem)
        self.y = PAGE_HEIGHT - MARGIN

    def hline(self, y: float, color=BORDER_COLOR):
        self.c.setStrokeColor(color)
        self.c.setLineWidth(1)
        self.c.line(MARGIN, y, MARGIN + CONTENT_WIDTH, y)

    def text(self, x, y, value, font=FONT_NORMAL, size=10, color=SECONDARY_COLOR, align="left"):
        self.c.setFont(font, size)
        self.c.setFillColor(color)
        if align == "right":
            self.c.drawRightString(x, y, _text(value))
        else:
            self.c.drawString(x, y, _text(value))

    def new_page(self):
        self.c.showPage()
        self.y = PAGE_HEIGHT - MARGIN

    def save(self):
        self.c.save()


def _draw_header(pdf: _InvoiceCanvas, order):
    top = PAGE_HEIGHT - MARGIN
    pdf.text(MARGIN, top - 12, settings.STORE_NAME, FONT_BOLD, 16, PRIMARY_COLOR)
    pdf.text(MARGIN, top - 28, settings.STORE_ADDRESS, size=9)
    pdf.text(MARGIN, top - 40, settings.STORE_CONTACT, size=9)

    right = MARGIN + CONTENT_WIDTH
    pdf.text(right, top - 20, "INVOICE", FONT_BOLD, 28, PRIMARY_COLOR, align="right")
    pdf.text(right, top - 40, f"Invoice No: {order.unique_order_id}", align="right")
    pdf.text(right, top - 54, f"Date: {date.today().strftime('%m/%d/%Y')}", align="right")

    pdf.y = top - 70
    pdf.hline(pdf.y)


def _draw_parties(pdf: _InvoiceCanvas, customer, address):
    y = pdf.y - 20
    pdf.text(MARGIN, y, "BILL TO:", FONT_BOLD, 10, PRIMARY_COLOR)
    for i, line in enumerate((customer.name, customer.email, getattr(customer, "mobile", ""))):
        pdf.text(MARGIN, y - 15 * (i + 1), line)

    ship_x = MARGIN + CONTENT_WIDTH / 2
    pdf.text(ship_x, y, "SHIP TO:", FONT_BOLD, 10, PRIMARY_COLOR)
    ship_lines = [address.address1]
    if address.address2:
        ship_lines.append(address.address2)
    if getattr(address, "landmark", None):
        ship_lines.append(f"Landmark: {address.landmark}")
    ship_lines.append(f"{_text(address.city)}, {_text(address.state)} {_text(address.pincode)}")
    for i, line in enumerate(ship_lines):
        pdf.text(ship_x, y - 15 * (i + 1), line)

    pdf.y = y - 15 * (max(3, len(ship_lines)) + 1) - 10


def _draw_table_header(pdf: _InvoiceCanvas):
    top = pdf.y
    pdf.c.setFillColor(PRIMARY_COLOR)
    pdf.c.rect(MARGIN, top - 25, CONTENT_WIDTH, 25, stroke=0, fill=1)
    base = top - 17
    white = colors.white
    pdf.text(COLS["item"], base, "Item", FONT_BOLD, 10, white)
    pdf.text(COLS["qty"], base, "Qty", FONT_BOLD, 10, white)
    pdf.text(COLS["price"], base, "Unit Price", FONT_BOLD, 10, white)
    pdf.text(COLS["discount"], base, "Discount", FONT_BOLD, 10, white)
    pdf.text(COLS["total_right"], base, "Line Total", FONT_BOLD, 10, white, align="right")
    pdf.y = top - 40


def _draw_rows(pdf: _InvoiceCanvas, lines: List):
    for ln in lines:
        name_lines = simpleSplit(_text(ln.name), FONT_NORMAL, 9, ITEM_COL_WIDTH) or [""]
        row_height = 11 * len(name_lines) + 10 + 8
        if pdf.y - row_height < TABLE_BOTTOM:
            pdf.new_page()
            _draw_table_header(pdf)

        row_top = pdf.y
        for i, part in enumerate(name_lines):
            pdf.text(COLS["item"], row_top - 11 * i, part, size=9)
        if ln.size_name:
            pdf.text(COLS["item"], row_top - 11 * len(name_lines), f"({ln.size_name})", FONT_ITALIC, 8)

        pdf.text(COLS["qty"], row_top, ln.quantity, size=9)
        pdf.text(COLS["price"], row_top, _money(ln.price), size=9)
        pdf.text(COLS["discount"], row_top, _money(ln.discount), size=9)
        pdf.text(COLS["total_right"], row_top, _money(ln.line_total), size=9, align="right")
        pdf.y = row_top - row_height

    pdf.hline(pdf.y + 8)


def invoice_totals(order, lines: List) -> dict:
    """Breakdown rows for the totals box. The grand total is the amount the order was charged."""
    subtotal = Decimal(order.subtotal or 0) or sum((ln.price * ln.quantity for ln in lines), Decimal("0"))
    discount = Decimal(order.discount or 0)
    shipping = Decimal(order.shipping or 0)
    tax = Decimal(order.tax or 0)
    net_total = subtotal - discount
    charged = getattr(order, "grand_total", None)
    return {
        "subtotal": subtotal,
        "discount": discount,
        "net_total": net_total,
        "shipping": shipping,
        "tax": tax,
        "grand_total": Decimal(str(charged)) if charged is not None else net_total + shipping + tax,
    }


def _draw_totals(pdf: _InvoiceCanvas, order, lines: List):
    if pdf.y - 150 < TABLE_BOTTOM:
        pdf.new_page()

    totals = invoice_totals(order, lines)

    label_x = MARGIN + 300
    value_right = MARGIN + CONTENT_WIDTH - 5
    y = pdf.y - 20
    rows = (
        ("Subtotal:", totals["subtotal"], FONT_NORMAL, SECONDARY_COLOR),
        ("Discount:", -totals["discount"], FONT_NORMAL, DANGER_COLOR),
        ("Net Total:", totals["net_total"], FONT_BOLD, SECONDARY_COLOR),
        ("Shipping:", totals["shipping"], FONT_NORMAL, SECONDARY_COLOR),
        ("Tax:", totals["tax"], FONT_NORMAL, SECONDARY_COLOR),
    )
    for label, value, font, color in rows:
        pdf.text(label_x, y, label, font, 10, color)
        pdf.text(value_right, y, _money(value), font, 10, color, align="right")
        y -= 18

    pdf.c.setFillColor(PRIMARY_COLOR)
    pdf.c.rect(label_x - 5, y - 12, MARGIN + CONTENT_WIDTH - label_x + 5, 25, stroke=0, fill=1)
    pdf.text(label_x, y - 4, "GRAND TOTAL:", FONT_BOLD, 13, colors.white)
    pdf.text(value_right, y - 4, _money(totals["grand_total"]), FONT_BOLD, 13, colors.white, align="right")
    pdf.y = y - 30


def _draw_footer(pdf: _InvoiceCanvas, order):
    pdf.hline(100)
    footer_y = 85
    pdf.text(MARGIN, footer_y, "PAYMENT STATUS:", FONT_BOLD, 10)

    status_text = (_text(order.payment_status) or "pending").upper()
    badge = PAID_COLOR if status_text == "PAID" else PENDING_COLOR
    pdf.c.setFillColor(badge)
    pdf.c.rect(MARGIN + 100, footer_y - 4, 70, 15, stroke=0, fill=1)
    pdf.text(MARGIN + 105, footer_y, status_text, FONT_BOLD, 10, colors.white)

    pdf.text(
        MARGIN, footer_y - 25,
        f"Thank you for your order! All prices are in {settings.CURRENCY_LABEL}",
        FONT_ITALIC, 8, colors.HexColor("#AAAAAA"),
    )


def generate_invoice(order, lines: List, customer, address, out_dir: Optional[str] = None) -> str:
    directory = Path(out_dir or settings.INVOICE_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / invoice_filename(order.unique_order_id)

    pdf = _InvoiceCanvas(path)
    _draw_header(pdf, order)
    _draw_parties(pdf, customer, address)
    _draw_table_header(pdf)
    _draw_rows(pdf, lines)
    _draw_totals(pdf, order, lines)
    _draw_footer(pdf, order)
    pdf.save()

    logger.info(f"Invoice written for {order.unique_order_id}: {path}")
    return str(path)
