import logging
import smtplib
from email.mime.text import MIMEText

SMTP_TIMEOUT_SECONDS = 30


def _auth_guidance(smtp_server: str) -> str:
    guidance = "Check SMTP_USER and SMTP_PASS."
    if "gmail" in (smtp_server or "").lower():
        guidance += " Gmail needs 2FA enabled and an App Password, not the account password."
    return guidance


def send_notification(cfg, subject: str, message: str) -> bool:
    """Send one plain-text mail to NOTIFY_EMAIL. Never raises; returns whether it was sent."""
    if not cfg.is_smtp_configured():
        logging.info("Skipping email notification - SMTP not fully configured.")
        return False

    mail = MIMEText(message, "plain", "utf-8")
    mail["Subject"] = subject
    mail["From"] = cfg.smtp_user
    mail["To"] = cfg.notify_email

    try:
        with smtplib.SMTP(cfg.smtp_server, cfg.smtp_port, timeout=SMTP_TIMEOUT_SECONDS) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_pass)
            server.sendmail(cfg.smtp_user, [cfg.notify_email], mail.as_string())
    except smtplib.SMTPAuthenticationError as exc:
        logging.error("SMTP login rejected (%s). %s", exc, _auth_guidance(cfg.smtp_server))
        return False
    except Exception as exc:  # noqa: BLE001
        logging.exception("Could not send notification '%s': %s", subject, exc)
        return False

    logging.info("Email notification sent: %s", subject)
    return True


class EmailNotifier:
    """Callable handed to job instances; formats booking and failure messages."""

    def __init__(self, cfg) -> None:
        self.cfg = cfg

    def __call__(self, subject: str, message: str) -> bool:
        return send_notification(self.cfg, subject, message)

    def booking_confirmed(self, job_name: str, facility: str, date: str, time: str) -> bool:
        return self(
            f"Visa appointment booked: {date} {time}",
            f"Job: {job_name}\nLocation: {facility}\nDate: {date}\nTime: {time}\n\n"
            "Log in to the AIS portal to confirm and print the appointment letter.",
        )

    def job_failed(self, job_name: str, reason: str) -> bool:
        return self(f"Visa scheduler job failed: {job_name}", f"The job could not start.\n\nReason: {reason}")
