"""
Outbound HTML email.

An HTTP email API is used when EMAIL_API_URL is set, SMTP otherwise.
"""
import html
import smtplib
from email.message import EmailMessage
from typing import Iterable, Optional

import httpx
import structlog

from ..config import settings


log = structlog.get_logger(__name__)


class MailerNotConfigured(Exception):
    pass


class MailerError(Exception):
    pass


def _send_via_api(to: str, subject: str, body_html: str) -> None:
    headers = {}
    if settings.email_api_key:
        headers["Authorization"] = f"Bearer {settings.email_api_key}"
    payload = {"to": to, "subject": subject, "html": body_html}
    if settings.mail_from:
        payload["from"] = settings.mail_from
    try:
        with httpx.Client(timeout=settings.http_timeout_s) as client:
            response = client.post(settings.email_api_url, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise MailerError(f"Email API request failed: {e}") from e


def _send_via_smtp(to: str, subject: str, body_html: str) -> None:
    msg = EmailMessage()
    try:
        msg["Subject"] = subject
        msg["From"] = settings.mail_from or settings.smtp_username or "no-reply@localhost"
        msg["To"] = to
    except ValueError as e:
        # header injection (CR/LF) is refused by the email package
        raise MailerError(f"Invalid email header: {e}") from e
    msg.set_content("This message contains an HTML table. Open it in an HTML-capable mail client.")
    msg.add_alternative(body_html, subtype="html")
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.http_timeout_s) as s:
            if settings.smtp_tls:
                s.starttls()
            if settings.smtp_username and settings.smtp_password:
                s.login(settings.smtp_username, settings.smtp_password)
            s.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise MailerError(f"SMTP delivery failed: {e}") from e


def send_html_email(to: str, subject: str, body_html: str) -> str:
    """Send one HTML message. Returns the transport used ("api" or "smtp")."""
    if settings.email_api_url:
        transport, send = "api", _send_via_api
    elif settings.smtp_host:
        transport, send = "smtp", _send_via_smtp
    else:
        raise MailerNotConfigured("No email transport configured")
    try:
        send(to, subject, body_html)
    except MailerError as e:
        log.warning("email_failed", to=to, transport=transport, error=str(e))
        raise
    log.info("email_sent", to=to, transport=transport)
    return transport


def render_inventory_html(title: str, groups: Iterable[dict], generated_at: Optional[str] = None) -> str:
    """HTML table of grouped inventory lines (name, site, type, quantity)."""
    rows = []
    for g in groups:
        rows.append(
            "<tr>"
            f"<td>{html.escape(str(g['name']))}</td>"
            f"<td>{html.escape(str(g.get('site_name') or ''))}</td>"
            f"<td>{'Rental' if g.get('is_rental') else 'Owned'}</td>"
            f"<td style=\"text-align:right\">{int(g.get('total_quantity') or 0)}</td>"
            "</tr>"
        )
    if not rows:
        rows.append('<tr><td colspan="4">No equipment</td></tr>')
    footer = f"<p>Generated {html.escape(generated_at)}</p>" if generated_at else ""
    return (
        "<html><body>"
        f"<h2>{html.escape(title)}</h2>"
        '<table border="1" cellpadding="4" cellspacing="0">'
        "<thead><tr><th>Equipment</th><th>Site</th><th>Type</th><th>Quantity</th></tr></thead>"
        f"<tbody>{''.join(rows)}</tbody>"
        "</table>"
        f"{footer}"
        "</body></html>"
    )
