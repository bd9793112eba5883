# Copyright (C) 2024 Tessera Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Email sending service. Logs to console when SMTP not configured."""

import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import urlencode

from starlette.concurrency import run_in_threadpool

from tessera_server.config import settings

logger = logging.getLogger(__name__)


def invitation_link(token: str) -> str:
    base = (settings.app_base_url or "http://localhost:8080").rstrip("/")
    return f"{base}/accept-invitation?{urlencode({'token': token})}"


def wrap_body_html(plain_body: str) -> str:
    """Wrap plain text body in minimal HTML."""
    body_escaped = html.escape(plain_body).replace("\n", "<br>\n")
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: system-ui, sans-serif; color: #333; max-width: 560px;">
<div style="white-space: pre-wrap;">{body_escaped}</div>
</body>
</html>"""


def _send_smtp(to: str, subject: str, body: str) -> None:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.mail_from
    msg["To"] = to
    msg.attach(MIMEText(body, "plain"))
    msg.attach(MIMEText(wrap_body_html(body), "html"))
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password or "")
        server.sendmail(settings.mail_from, [to], msg.as_string())


async def send_email(to: str, subject: str, body: str) -> bool:
    """Send an email (plain and HTML). Returns False if it was not delivered; never raises."""
    if not (settings.smtp_host and settings.smtp_user):
        logger.info("Email (SMTP not configured): To=%s Subject=%s", to, subject)
        return False
    try:
        await run_in_threadpool(_send_smtp, to, subject, body)
    except Exception as e:
        logger.exception("Failed to send email: %s", e)
        return False
    return True


async def send_invitation_email(to: str, token: str, expires_in_days: int) -> bool:
    """Hand the activation link to the mailer. The invitation exists whether or not this succeeds."""
    link = invitation_link(token)
    body = (
        "You have been invited to the Tessera back office.\n\n"
        f"Accept the invitation here: {link}\n\n"
        f"This link expires in {expires_in_days} days."
    )
    return await send_email(to, "Invitation to Tessera", body)
