import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr


def _resolve_from_email(smtp_settings):
    configured = (getattr(smtp_settings, "from_email", "") or "").strip()
    username = (getattr(smtp_settings, "username", "") or "").strip()
    host = (getattr(smtp_settings, "host", "") or "").strip().lower()

    _, configured_addr = parseaddr(configured)
    configured_addr = configured_addr.strip().lower()
    username_addr = username.strip().lower()

    if not configured_addr:
        return username_addr or configured or username

    # Gmail SMTP rejects or filters a From that differs from the login.
    if "gmail" in host and username_addr and configured_addr != username_addr:
        return username_addr

    return configured_addr or configured


def send_email_smtp(smtp_settings, to_email, subject, body_html, body_text=None):
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    effective_from = _resolve_from_email(smtp_settings)
    msg["From"] = effective_from
    msg["To"] = to_email

    if body_text:
        msg.attach(MIMEText(body_text, "plain", "utf-8"))
    msg.attach(MIMEText(body_html, "html", "utf-8"))

    server = smtplib.SMTP(smtp_settings.host, smtp_settings.port, timeout=15)
    try:
        if smtp_settings.use_tls:
            server.starttls()
        if smtp_settings.username:
            server.login(smtp_settings.username, smtp_settings.password)
        server.sendmail(effective_from, [to_email], msg.as_string())
    finally:
        server.quit()
