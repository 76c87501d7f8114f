"""Transactional email: templates and delivery backends."""

import html
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from typing import Any, Callable

import aiosmtplib

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger

log = get_logger(__name__)


def _layout(heading: str, body: str) -> str:
    settings = get_settings()
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h1>{settings.email_from_name}</h1>"
        f"<h2>{heading}</h2>"
        f"{body}"
        f'<p><a href="{settings.frontend_url}/orders">Open {settings.email_from_name}</a></p>'
        "</div>"
    )


def _otp_body(d: dict[str, Any], action: str) -> str:
    return (
        f"<p>Hi {d.get('userName', '')},</p>"
        f"<p>Your one-time code to {action} of <strong>{d['amount']}</strong> via {d['method']} is:</p>"
        f"<p style=\"font-size: 28px; letter-spacing: 6px;\"><strong>{d['otp']}</strong></p>"
        "<p>The code expires in 10 minutes. If you did not make this request, contact support.</p>"
    )


TEMPLATES: dict[str, Callable[[dict[str, Any]], tuple[str, str]]] = {
    "order_placed": lambda d: (
        f"New Order Received - {d['title']}",
        _layout("New Order Received!", f"<p>You have a new order for <strong>{d['title']}</strong> "
                f"worth {d['price']}. Please confirm it.</p>"),
    ),
    "order_activated": lambda d: (
        "Order Activated - Payment Required",
        _layout("Order Activated", f"<p>The order <strong>{d['title']}</strong> is active. "
                f"Payment is due by {d['paymentDeadline']}.</p>"),
    ),
    "payment_completed": lambda d: (
        "Payment Received - Start Working",
        _layout("Payment Received!", f"<p>Payment for <strong>{d['title']}</strong> is complete. "
                f"You will earn {d['sellerAmount']}.</p>"),
    ),
    "order_delivered": lambda d: (
        "Order Delivered - Review Required",
        _layout("Your order was delivered", f"<p>The seller delivered <strong>{d['title']}</strong>. "
                "Please accept or request a revision.</p>"),
    ),
    "delivery_accepted": lambda d: (
        "Delivery Accepted - Leave a Review",
        _layout("Delivery accepted", f"<p>The buyer accepted your delivery for <strong>{d['title']}</strong>.</p>"),
    ),
    "delivery_rejected": lambda d: (
        "Delivery Rejected - Revision Required",
        _layout("Revision requested", f"<p>The buyer asked for changes to <strong>{d['title']}</strong>: "
                f"{d['reason']}. Please redeliver by {d['redeliveryDeadline']}.</p>"),
    ),
    "order_cancelled": lambda d: (
        f"Order Cancelled - {d['title']}",
        _layout("Order cancelled", f"<p>The order <strong>{d['title']}</strong> was cancelled. "
                f"Reason: {d.get('reason') or 'not given'}.</p>"),
    ),
    "order_expired": lambda d: (
        f"Order Expired - {d['title']}",
        _layout("Payment deadline passed", f"<p>The order <strong>{d['title']}</strong> was cancelled because "
                "payment was not completed before the deadline.</p>"),
    ),
    "withdrawal_otp": lambda d: (f"Withdrawal OTP - {d['otp']}", _layout("Confirm your withdrawal", _otp_body(d, "withdraw"))),
    "deposit_otp": lambda d: (f"Add Money OTP - {d['otp']}", _layout("Confirm your deposit", _otp_body(d, "add money"))),
    "payment_otp": lambda d: (
        f"Order Payment OTP - {d['otp']}",
        _layout("Confirm your payment", _otp_body(d, f"pay for \"{d.get('orderTitle', '')}\"")),
    ),
}


def render_email(template_id: str, data: dict[str, Any]) -> tuple[str, str]:
    template = TEMPLATES.get(template_id)
    if template is None:
        raise KeyError(f"Unknown email template: {template_id}")
    # Titles, reasons and names are user input; the subject is plain text
    escaped = {k: html.escape(v) if isinstance(v, str) else v for k, v in data.items()}
    subject, _ = template(data)
    _, body = template(escaped)
    return subject, body


class EmailSender(ABC):
    @abstractmethod
    async def send_email(self, address: str, template_id: str, data: dict[str, Any]) -> None:
        ...


class LogEmailSender(EmailSender):
    """Development sender: renders and logs the subject only (bodies may carry OTPs)."""

    async def send_email(self, address: str, template_id: str, data: dict[str, Any]) -> None:
        subject, _ = render_email(template_id, data)
        if template_id.endswith("_otp"):
            subject = subject.rsplit(" - ", 1)[0]
        log.info("email_logged", to=address, template=template_id, subject=subject)


class SmtpEmailSender(EmailSender):
    def __init__(self) -> None:
        self.settings = get_settings()

    async def send_email(self, address: str, template_id: str, data: dict[str, Any]) -> None:
        s = self.settings
        subject, body = render_email(template_id, data)
        message = MIMEText(body, "html")
        message["From"] = f'"{s.email_from_name}" <{s.smtp_user}>'
        message["To"] = address
        message["Subject"] = subject
        await aiosmtplib.send(
            message,
            hostname=s.smtp_host,
            port=s.smtp_port,
            username=s.smtp_user,
            password=s.smtp_password,
            start_tls=True,
            timeout=30,
        )
        log.info("email_sent", to=address, template=template_id)


def get_email_sender() -> EmailSender:
    settings = get_settings()
    if settings.email_backend == "smtp" and settings.smtp_user and settings.smtp_password:
        return SmtpEmailSender()
    return LogEmailSender()
