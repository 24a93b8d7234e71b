"""
Transactional email over SMTP.

Templates are plain ``str.format`` strings. ``notify`` is the entry point
for callers: it never raises, so a mail outage cannot fail the request that
triggered the email.
"""
import logging
import smtplib
from email.message import EmailMessage

from settings import settings

logger = logging.getLogger(__name__)

SHOP_NAME = "PC Shop"

TEMPLATES = {
    "activation": (
        "Activate your account at {shop}",
        "Hi {name},\n\nYour activation code is {code}.\n"
        "It expires in {minutes} minutes.\n\n{shop}",
    ),
    "change-password": (
        "Change your password at {shop}",
        "Hi {name},\n\nUse the code {code} to change your password.\n\n{shop}",
    ),
    "redeem": (
        "You redeemed {product} at {shop}",
        "Hi {name},\n\nYou exchanged {points} points for {product}.\n"
        "Remaining points: {remaining}.\n\n{shop}",
    ),
    "refund-approved": (
        "Your refund request has been approved",
        "Hi {name},\n\nYour refund request {refund_id} for order {order_id} was approved.\n"
        "Reason: {reason}\n{notes}\n{shop}",
    ),
    "refund-rejected": (
        "Your refund request has been rejected",
        "Hi {name},\n\nYour refund request {refund_id} for order {order_id} was rejected.\n"
        "Reason: {reason}\n{notes}\n{shop}",
    ),
}


def render(template: str, **context) -> tuple:
    subject, body = TEMPLATES[template]
    context.setdefault("shop", SHOP_NAME)
    return subject.format(**context), body.format(**context)


def send_mail(to: str, subject: str, body: str) -> None:
    msg = EmailMessage()
    msg["From"] = settings.EMAIL_FROM or settings.EMAIL_USER
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)
    with smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        smtp.login(settings.EMAIL_USER, settings.EMAIL_PASSWORD)
        smtp.send_message(msg)


def notify(to: str, template: str, **context) -> bool:
    """Render and send a template. Returns False when nothing was sent."""
    if not settings.EMAIL_USER:
        logger.warning("SMTP not configured, skipping '%s' email to %s", template, to)
        return False
    subject, body = render(template, **context)
    try:
        send_mail(to, subject, body)
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to send '%s' email to %s", template, to)
        return False
    logger.info("Sent '%s' email to %s", template, to)
    return True
