"""
Outgoing email over SMTP with STARTTLS.
"""

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

import config

logger = logging.getLogger("bookstore.mailer")


def send_email(to: str, subject: str, text: str, html: Optional[str] = None) -> None:
    message = EmailMessage()
    message["From"] = config.EMAIL_USER or "no-reply@localhost"
    message["To"] = to
    message["Subject"] = subject
    message.set_content(text)
    if html:
        message.add_alternative(html, subtype="html")

    with smtplib.SMTP(config.EMAIL_HOST, config.EMAIL_PORT, timeout=config.REQUEST_TIMEOUT_SECONDS) as smtp:
        smtp.starttls()
        if config.EMAIL_USER and config.EMAIL_PASS:
            smtp.login(config.EMAIL_USER, config.EMAIL_PASS)
        smtp.send_message(message)
    logger.info("Sent '%s' to %s", subject, to)
