import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from datetime import datetime

from app.core.config import settings
from app.models.booking import Booking
from app.models.booking_page import BookingPage
from app.services.intervals import as_aware_utc
from app.services.slot_generator import page_zone

logger = logging.getLogger(__name__)


def _send_email_sync(to_email: str, subject: str, html_body: str) -> bool:
    """Send email via SMTP (blocking). Run off the event loop. Returns True if sent."""
    if not settings.email_enabled:
        logger.debug("Email disabled (SMTP not configured), skipping send")
        return False
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.from_name} <{settings.from_email}>"
    msg["To"] = to_email
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.from_email, [to_email], msg.as_string())
        logger.info("Email sent to %s", to_email)
        return True
    except Exception as e:
        logger.exception("Failed to send email to %s: %s", to_email, e)
        return False


def _html_escape(s: str) -> str:
    return (
        s.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def format_booking_time(page: BookingPage, start: datetime, end: datetime) -> tuple[str, str]:
    """(date, time range) in the business's timezone, e.g. ("Monday, March 03, 2025", "09:00 AM – 10:00 AM")."""
    tz = page_zone(page)
    local_start = as_aware_utc(start).astimezone(tz)
    local_end = as_aware_utc(end).astimezone(tz)
    date_str = local_start.strftime("%A, %B %d, %Y")
    time_str = f"{local_start.strftime('%I:%M %p')} – {local_end.strftime('%I:%M %p')} ({page.timezone})"
    return date_str, time_str


def _booking_details_table(page: BookingPage, booking: Booking) -> str:
    date_str, time_str = format_booking_time(page, booking.start_time, booking.end_time)
    return f"""
<table role="presentation" width="100%" cellspacing="0" cellpadding="0" style="background:#f9fafb;border-radius:8px;margin-bottom:24px;">
  <tr>
    <td style="padding:20px 24px;">
      <p style="margin:0 0 8px 0;font-size:12px;text-transform:uppercase;color:#6b7280;">Date</p>
      <p style="margin:0;font-size:16px;font-weight:600;color:#111827;">{date_str}</p>
      <p style="margin:12px 0 0 0;font-size:12px;text-transform:uppercase;color:#6b7280;">Time</p>
      <p style="margin:0;font-size:16px;font-weight:600;color:#111827;">{time_str}</p>
    </td>
  </tr>
</table>
"""


def _wrap(title: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body style="margin:0;padding:24px;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;background-color:#f3f4f6;">
  <div style="max-width:560px;margin:0 auto;background:#ffffff;border-radius:12px;padding:32px;">
    {body}
  </div>
</body>
</html>
"""


def build_customer_confirmation_html(page: BookingPage, booking: Booking) -> str:
    business = _html_escape(page.business_name)
    heading = "Booking Confirmed" if booking.status == "confirmed" else "Booking Received"
    lead = (
        "your appointment is booked."
        if booking.status == "confirmed"
        else f"{business} will confirm your appointment shortly."
    )
    contact = ""
    if page.business_phone or page.business_email:
        parts = [_html_escape(p) for p in (page.business_phone, page.business_email) if p]
        contact = f'<p style="margin:0;font-size:14px;color:#374151;">Need to change it? Contact {business}: {" · ".join(parts)}</p>'
    body = f"""
    <h1 style="margin:0 0 8px 0;font-size:22px;color:#111827;">{heading}</h1>
    <p style="margin:0 0 24px 0;font-size:15px;color:#6b7280;">Hi {_html_escape(booking.customer_name)}, {lead}</p>
    {_booking_details_table(page, booking)}
    {contact}
    """
    return _wrap(heading, body)


def build_business_notification_html(page: BookingPage, booking: Booking) -> str:
    rows = [("Name", booking.customer_name), ("Phone", booking.customer_phone)]
    if booking.customer_email:
        rows.append(("Email", booking.customer_email))
    if booking.service_type:
        rows.append(("Service", booking.service_type))
    if booking.notes:
        rows.append(("Notes", booking.notes))
    for question, answer in (booking.custom_responses or {}).items():
        rows.append((str(question), str(answer)))
    details = "".join(
        f'<p style="margin:0 0 6px 0;font-size:14px;color:#374151;"><strong>{_html_escape(k)}:</strong> {_html_escape(v)}</p>'
        for k, v in rows
    )
    body = f"""
    <h1 style="margin:0 0 8px 0;font-size:22px;color:#111827;">New booking ({_html_escape(booking.status)})</h1>
    {_booking_details_table(page, booking)}
    {details}
    """
    return _wrap("New booking", body)


def send_customer_confirmation_email(page: BookingPage, booking: Booking) -> bool:
    if not booking.customer_email:
        return False
    subject = f"{page.business_name} – Booking {'Confirmed' if booking.status == 'confirmed' else 'Received'}"
    return _send_email_sync(booking.customer_email, subject, build_customer_confirmation_html(page, booking))


def send_business_notification_email(page: BookingPage, booking: Booking) -> bool:
    if not page.business_email:
        logger.debug("Page %s has no business email, skipping notification", page.id)
        return False
    date_str, _ = format_booking_time(page, booking.start_time, booking.end_time)
    subject = f"New booking: {booking.customer_name} on {date_str}"
    return _send_email_sync(page.business_email, subject, build_business_notification_html(page, booking))
