import smtplib
from decimal import Decimal
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from pathlib import Path
from typing import List, Optional

from storefront.core.config import settings
from storefront.core.logger import setup_logger

logger = setup_logger(__name__)


def _fmt(value) -> str:
    return f"{settings.CURRENCY_LABEL} {Decimal(value or 0):,.2f}"


def _e(value) -> str:
    return escape("" if value is None else str(value))


def send_email(to: str, subject: str, html_body: str, attachment_path: Optional[str] = None):
    msg = MIMEMultipart()
    msg["Subject"] = subject
    msg["From"] = settings.FROM_EMAIL
    msg["To"] = to
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    if attachment_path:
        part = MIMEApplication(Path(attachment_path).read_bytes(), _subtype="pdf")
        part.add_header("Content-Disposition", "attachment", filename="invoice.pdf")
        msg.attach(part)
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS) as s:
        if settings.SMTP_STARTTLS:
            s.starttls()
        if settings.SMTP_USER:
            s.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        s.sendmail(settings.FROM_EMAIL, [to], msg.as_string())


# --- templates ----------------------------------------------------------------

def _base_template(content_html: str, header_title: str, is_customer: bool, order) -> str:
    accent = "#007bff" if is_customer else "#dc3545"
    footer = "Thank you for shopping with us." if is_customer else "Action required: Process this order immediately."
    return f"""
<div style="font-family: Arial, sans-serif; background-color: #f4f4f4; padding: 20px;">
  <div style="max-width: 600px; margin: 20px auto; background-color: #ffffff; border-radius: 12px; overflow: hidden;">
    <div style="background-color: {accent}; color: #ffffff; padding: 30px; text-align: center;">
      <h1 style="margin: 0; font-size: 24px;">{_e(header_title)}</h1>
      <p style="margin: 5px 0 0; font-size: 14px;">Order ID: {_e(order.unique_order_id)}</p>
    </div>
    <div style="padding: 30px;">{content_html}</div>
    <div style="padding: 20px 30px; background-color: #f8f9fa; text-align: center;">
      <p style="margin: 0; font-size: 12px; color: #777777;">{footer}</p>
    </div>
  </div>
</div>"""


def _product_rows(lines: List) -> str:
    return "".join(
        f"""
        <tr style="border-bottom: 1px solid #eeeeee;">
          <td style="padding: 10px 0;">{_e(ln.name)}<div style="font-size: 10px; color: #777;">Size: {_e(ln.size_name)}</div></td>
          <td style="padding: 10px 0; text-align: center;">{ln.quantity}</td>
          <td style="padding: 10px 0; text-align: right;">{_fmt(ln.price)}</td>
          <td style="padding: 10px 0; text-align: right;">{_fmt(ln.line_total)}</td>
        </tr>"""
        for ln in lines
    )


def _address_block(customer, address) -> str:
    second = f"{_e(address.address2)}, " if address.address2 else ""
    landmark = f'<p style="margin: 0;">Landmark: {_e(address.landmark)}</p>' if address.landmark else ""
    return f"""
    <p style="margin: 0;">{_e(customer.name)}</p>
    <p style="margin: 0;">{_e(address.address1)}</p>
    <p style="margin: 0;">{second}{_e(address.city)}, {_e(address.state)} - {_e(address.pincode)}</p>
    {landmark}"""


def customer_email_html(order, customer, address, lines: List) -> str:
    content = f"""
    <p>Dear customer, thank you for your order. We are preparing your shipment now.
       Below is your order summary and shipping information. Your invoice is attached.</p>
    <table width="100%" style="font-size: 14px;">
      <tr><td>Payment Mode:</td><td style="text-align: right;"><b>{_e(order.payment_mode)}</b></td></tr>
      <tr><td>Shipping:</td><td style="text-align: right;">{_fmt(order.shipping)}</td></tr>
      <tr><td>Discount Applied:</td><td style="text-align: right; color: #28a745;">-{_fmt(order.discount)}</td></tr>
      <tr><td><b>Grand Total:</b></td><td style="text-align: right;"><b>{_fmt(order.grand_total)}</b></td></tr>
    </table>
    <h2 style="font-size: 18px;">Items Ordered</h2>
    <table width="100%" style="border-collapse: collapse;">
      <thead><tr><th align="left">Product</th><th>Qty</th><th align="right">Unit Price</th><th align="right">Line Total</th></tr></thead>
      <tbody>{_product_rows(lines)}</tbody>
    </table>
    <h3 style="font-size: 16px;">Shipping Address</h3>
    {_address_block(customer, address)}"""
    return _base_template(content, "Your Order Confirmation", True, order)


def admin_email_html(order, customer, address, lines: List) -> str:
    content = f"""
    <p style="color: #dc3545; font-weight: bold;">A new order (ID: {_e(order.unique_order_id)}) has been paid and requires processing.</p>
    <p>Name: {_e(customer.name)}<br>Email: {_e(customer.email)}<br>Phone: {_e(customer.mobile)}</p>
    <p>Total: {_fmt(order.grand_total)}<br>Tax: {_fmt(order.tax)}<br>Payment: {_e(order.payment_mode)}</p>
    <h2 style="font-size: 18px;">Product List ({len(lines)} Items)</h2>
    <table width="100%" style="border-collapse: collapse;">
      <thead><tr><th align="left">Product</th><th>Qty</th><th align="right">Unit Price</th><th align="right">Line Total</th></tr></thead>
      <tbody>{_product_rows(lines)}</tbody>
    </table>
    <h3 style="font-size: 16px;">Shipping To</h3>
    {_address_block(customer, address)}"""
    return _base_template(content, "NEW Order Alert!", False, order)


class Notifier:
    """Transactional email. Failures are logged and reported, never raised."""

    def send_invoice_email(self, to: str, subject: str, body_html: str, attachment_path: Optional[str]) -> bool:
        try:
            send_email(to, subject, body_html, attachment_path)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email '{subject}' to {to}: {e}")
            return False
        logger.info(f"Email '{subject}' sent to {to}")
        return True

    def notify_order_paid(self, order, customer, address, lines: List, invoice_path: Optional[str]) -> bool:
        sent = self.send_invoice_email(
            customer.email,
            f"Invoice for Order #{order.unique_order_id}",
            customer_email_html(order, customer, address, lines),
            invoice_path,
        )
        if settings.ADMIN_EMAIL:
            self.send_invoice_email(
                settings.ADMIN_EMAIL,
                f"New order #{order.unique_order_id}",
                admin_email_html(order, customer, address, lines),
                invoice_path,
            )
        return sent


def get_notifier() -> Notifier:
    return Notifier()
