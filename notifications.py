"""
Side channels: order emails, PDF receipts and the comment profanity filter.

Everything the Notifier sends is best effort. Failures are logged and never
reach the workflow that triggered them.
"""
import logging
import os
import smtplib
from email.message import EmailMessage
from io import BytesIO
from typing import List, Optional, Tuple

from better_profanity import profanity
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

logger = logging.getLogger(__name__)

CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "usd")


def format_money(amount: float) -> str:
    return f"{CHECKOUT_CURRENCY.upper()} {amount:,.2f}"


class Mailer:
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, user: Optional[str] = None,
                 password: Optional[str] = None, secure: Optional[bool] = None, sender: Optional[str] = None):
        self.host = host if host is not None else os.getenv("SMTP_HOST")
        self.port = port or int(os.getenv("SMTP_PORT", 587))
        self.user = user if user is not None else os.getenv("SMTP_USER")
        self.password = password if password is not None else os.getenv("SMTP_PASS")
        self.secure = secure if secure is not None else os.getenv("SMTP_SECURE") == "true"
        self.sender = sender or os.getenv("SMTP_FROM", "RunMate <no-reply@runmate.com>")

    def send(self, to: str, subject: str, body: str, attachments: Optional[List[Tuple[str, bytes]]] = None):
        if not self.host:
            raise RuntimeError("SMTP_HOST is not configured")

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        for filename, content in attachments or []:
            message.add_attachment(content, maintype="application", subtype="pdf", filename=filename)

        smtp_class = smtplib.SMTP_SSL if self.secure else smtplib.SMTP
        with smtp_class(self.host, self.port) as server:
            if not self.secure:
                server.starttls()
            if self.user:
                server.login(self.user, self.password or "")
            server.send_message(message)


class ReceiptRenderer:
    """Draws a one-page PDF receipt."""

    def render(self, order: dict, customer: dict) -> bytes:
        buffer = BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=letter)
        width, height = letter
        y = height - 60

        pdf.setFont("Helvetica-Bold", 22)
        pdf.drawCentredString(width / 2, y, "RunMate")
        y -= 26
        pdf.setFont("Helvetica", 16)
        pdf.drawCentredString(width / 2, y, "Order Receipt")
        y -= 40

        pdf.setFont("Helvetica", 11)
        created_at = order.get("created_at")
        for line in (
            f"Order ID: {order['_id']}",
            f"Order Date: {created_at:%Y-%m-%d %H:%M}" if created_at else "Order Date: N/A",
            f"Customer: {customer.get('name') or customer.get('email') or 'Customer'}",
            f"Email: {customer.get('email') or 'N/A'}",
        ):
            pdf.drawString(50, y, line)
            y -= 16

        address = order["shipping_address"]
        y -= 10
        pdf.setFont("Helvetica-Bold", 11)
        pdf.drawString(50, y, "Shipping Address")
        pdf.setFont("Helvetica", 11)
        for line in (
            address["street"],
            f"{address['city']}, {address['state']}",
            f"{address['zip_code']}, {address['country']}",
        ):
            y -= 16
            pdf.drawString(50, y, line)

        y -= 30
        pdf.setFont("Helvetica-Bold", 11)
        for x, label in ((50, "Item"), (300, "Qty"), (380, "Price"), (460, "Total")):
            pdf.drawString(x, y, label)
        pdf.setFont("Helvetica", 11)
        for item in order["items"]:
            y -= 18
            pdf.drawString(50, y, item["product_name"][:40])
            pdf.drawString(300, y, str(item["quantity"]))
            pdf.drawString(380, y, format_money(item["price"]))
            pdf.drawString(460, y, format_money(item["price"] * item["quantity"]))

        y -= 30
        pdf.setFont("Helvetica-Bold", 12)
        pdf.drawString(380, y, f"Total: {format_money(order['total_amount'])}")
        pdf.showPage()
        pdf.save()
        return buffer.getvalue()


class CommentFilter:
    def __init__(self):
        profanity.load_censor_words()

    def clean(self, text: str) -> str:
        return profanity.censor(text)


def order_status_body(order: dict) -> str:
    lines = [
        "Your RunMate order has been updated.",
        "",
        f"Order ID: {order['_id']}",
        f"Status: {order['status']}",
        f"Payment Status: {order['payment_status']}",
        "",
        "Items:",
    ]
    for item in order["items"]:
        lines.append(f"  {item['product_name']} x{item['quantity']} @ {format_money(item['price'])}")
    lines += ["", f"Total Amount: {format_money(order['total_amount'])}"]
    return "\n".join(lines)


def receipt_body(order: dict) -> str:
    return "\n".join([
        "Thank you for your purchase!",
        "",
        f"Order ID: {order['_id']}",
        f"Total Amount: {order['total_amount']:.2f}",
        f"Payment Method: {order['payment_method']}",
        "",
        "You can also view this order anytime by logging in to your RunMate account.",
    ])


class Notifier:
    def __init__(self, mailer: Mailer, renderer: ReceiptRenderer):
        self.mailer = mailer
        self.renderer = renderer

    def order_status_changed(self, to: str, order: dict):
        try:
            self.mailer.send(to, f"Your RunMate order {order['_id']} is now {order['status']}",
                             order_status_body(order))
        except Exception:
            logger.exception("Failed to send order update email for order %s", order.get("_id"))

    def send_receipt(self, to: str, order: dict, customer: dict):
        try:
            pdf_bytes = self.renderer.render(order, customer)
            self.mailer.send(
                to,
                f"Your RunMate receipt - Order {order['_id']}",
                receipt_body(order),
                attachments=[(f"runmate-receipt-{order['_id']}.pdf", pdf_bytes)],
            )
        except Exception:
            logger.exception("Failed to send receipt email for order %s", order.get("_id"))
