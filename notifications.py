"""
Website inquiry email, sent through Resend.

Delivery is fire-and-forget: the route stores the inquiry and schedules
``send_inquiry_email`` as a background task. Failures are logged, never
raised back to the visitor.
"""

import html
import logging
import os
from typing import Optional

import resend

from schemas import WebsiteInquiry

logger = logging.getLogger(__name__)

RESEND_API_KEY = os.getenv("RESEND_API_KEY")
INQUIRY_TO_EMAIL = os.getenv("INQUIRY_TO_EMAIL", "")
INQUIRY_FROM_EMAIL = os.getenv("INQUIRY_FROM_EMAIL", "Website Inquiry <noreply@example.com>")


def build_inquiry_email(inquiry: WebsiteInquiry, to_email: str = INQUIRY_TO_EMAIL, from_email: str = INQUIRY_FROM_EMAIL) -> dict:
    company = f"- Company: {inquiry.company_name}\n" if inquiry.company_name else ""
    text = (
        "Hello,\n\n"
        "You have received a new website inquiry from your restaurant ordering system.\n\n"
        "Contact Details:\n"
        f"- Name: {inquiry.name}\n"
        f"- Email: {inquiry.email}\n"
        f"{company}\n"
        f"Subject: {inquiry.subject}\n\n"
        f"Message:\n{inquiry.message}\n\n"
        "---\n"
        f"You can reply directly to {inquiry.email} to respond."
    )
    e = html.escape
    company_html = f"<p><strong>Company:</strong> {e(inquiry.company_name)}</p>" if inquiry.company_name else ""
    body_html = (
        "<h2>New Website Inquiry</h2>"
        f"<p><strong>Name:</strong> {e(inquiry.name)}</p>"
        f"<p><strong>Email:</strong> {e(inquiry.email)}</p>"
        f"{company_html}"
        f"<h3>Subject</h3><p>{e(inquiry.subject)}</p>"
        f'<h3>Message</h3><p style="white-space: pre-wrap;">{e(inquiry.message)}</p>'
    )
    return {
        "from": from_email,
        "to": [to_email],
        "reply_to": inquiry.email,
        "subject": f"Website Inquiry: {inquiry.subject}",
        "text": text,
        "html": body_html,
    }


def send_inquiry_email(inquiry: WebsiteInquiry, api_key: Optional[str] = None) -> bool:
    api_key = api_key or RESEND_API_KEY
    if not api_key or not INQUIRY_TO_EMAIL:
        logger.warning("Inquiry email not sent: RESEND_API_KEY or INQUIRY_TO_EMAIL is not set")
        return False
    try:
        resend.api_key = api_key
        result = resend.Emails.send(build_inquiry_email(inquiry, INQUIRY_TO_EMAIL, INQUIRY_FROM_EMAIL))
    except Exception as e:
        logger.error(f"Failed to send inquiry email from {inquiry.email}: {str(e)[:200]}")
        return False
    logger.info(f"Inquiry email sent: {result.get('id') if isinstance(result, dict) else result}")
    return True
