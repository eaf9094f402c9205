"""SMTP-backed email dispatcher for request, inquiry and password-reset mail."""
import smtplib
import ssl
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Dict, List, Tuple

from flask import current_app, render_template

from models import DocumentRequest
from utils.errors import DependencyError
from utils.markdown_formatter import (
    format_inquiry_reply_markdown,
    format_status_markdown,
    markdown_to_email_html,
    markdown_to_plaintext,
)


class EmailDeliveryError(DependencyError):
    """Raised when email dispatch fails."""

    def __init__(self, message: str) -> None:
        super().__init__(message, dependency="smtp")


def mail_configured() -> bool:
    return bool(current_app.config.get("MAIL_SERVER"))


def _render_email_content(template: str, subject: str, markdown_body: str, context: Dict) -> Tuple[str, str]:
    """Return plaintext and HTML bodies using a shared markdown source."""
    text_body = markdown_to_plaintext(markdown_body)
    ctx = dict(context or {})
    preheader = ctx.pop("preheader", "")
    html_body = render_template(
        template,
        subject=subject,
        content_html=markdown_to_email_html(markdown_body),
        preheader=preheader,
        **ctx,
    )
    return text_body, html_body


def _resolve_sender() -> str:
    return current_app.config.get("MAIL_DEFAULT_SENDER") or current_app.config.get("MAIL_USERNAME") or ""


def _dispatch_email(subject: str, text_body: str, html_body: str, sender: str, recipients: List[str]) -> None:
    if not recipients:
        raise EmailDeliveryError("No recipients resolved for email dispatch")
    if not sender:
        raise EmailDeliveryError("MAIL_DEFAULT_SENDER is not configured")

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    msg.set_content(text_body or markdown_to_plaintext(html_body))
    msg.add_alternative(html_body, subtype="html")

    host = current_app.config.get("MAIL_SERVER")
    port = int(current_app.config.get("MAIL_PORT", 25))
    username = current_app.config.get("MAIL_USERNAME")
    password = current_app.config.get("MAIL_PASSWORD")
    use_tls = bool(current_app.config.get("MAIL_USE_TLS"))
    use_ssl = bool(current_app.config.get("MAIL_USE_SSL"))

    if not host:
        raise EmailDeliveryError("MAIL_SERVER is not configured")

    try:
        if use_ssl:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(host, port, context=context) as server:
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, port) as server:
                server.ehlo()
                if use_tls:
                    server.starttls(context=ssl.create_default_context())
                if username and password:
                    server.login(username, password)
                server.send_message(msg)
    except Exception as exc:  # pragma: no cover - external I/O
        raise EmailDeliveryError(str(exc)) from exc


def send_status_email(doc_request: DocumentRequest) -> None:
    requester = doc_request.requester
    if not requester or not requester.email:
        raise EmailDeliveryError("Requester email missing")
    label = doc_request.document_type.replace("_", " ").title()
    subject = f"Your {label} request was {doc_request.status}"
    markdown_body = format_status_markdown(doc_request)
    context = {
        "preheader": f"Request {doc_request.id} is now {doc_request.status}.",
        "recipient_name": requester.full_name,
    }
    text_body, html_body = _render_email_content("email/notification.html", subject, markdown_body, context)
    _dispatch_email(subject, text_body, html_body, _resolve_sender(), [requester.email])


def send_inquiry_reply_email(recipient: str, recipient_name: str, inquiry, reply_text: str) -> None:
    subject = f"Re: {inquiry.subject}"
    markdown_body = format_inquiry_reply_markdown(inquiry, reply_text)
    context = {"preheader": "A staff member replied to your inquiry.", "recipient_name": recipient_name}
    text_body, html_body = _render_email_content("email/notification.html", subject, markdown_body, context)
    _dispatch_email(subject, text_body, html_body, _resolve_sender(), [recipient])


def send_test_email(recipient: str) -> None:
    subject = "Barangay portal mail check"
    markdown_body = "## Mail check\n\nOutbound email is configured correctly."
    text_body, html_body = _render_email_content(
        "email/notification.html", subject, markdown_body, {"recipient_name": recipient}
    )
    _dispatch_email(subject, text_body, html_body, _resolve_sender(), [recipient])


def send_password_reset_email(user, secret: str, mode: str, expires_at) -> None:
    if not user.email:
        raise EmailDeliveryError("Account has no email address")
    minutes = max(1, round((expires_at - datetime.utcnow()).total_seconds() / 60))
    if mode == "otp":
        subject = "Your barangay portal reset code"
        markdown_body = (
            f"## Password reset code\n\nUse **{secret}** to reset your password. "
            f"The code expires in {minutes} minutes."
        )
    else:
        subject = "Reset your barangay portal password"
        link = f"{current_app.config.get('PUBLIC_BASE_URL', '')}/reset-password/{secret}"
        markdown_body = (
            f"## Password reset\n\n[Choose a new password]({link}). "
            f"The link expires in {minutes} minutes."
        )
    markdown_body += "\n\nIf you did not ask for this, you can ignore this email."
    context = {"preheader": "Password reset requested.", "recipient_name": user.full_name}
    text_body, html_body = _render_email_content("email/notification.html", subject, markdown_body, context)
    _dispatch_email(subject, text_body, html_body, _resolve_sender(), [user.email])
