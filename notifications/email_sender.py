"""
SMTP email sender for fleetwatch alert channels.

Handles:
  - SMTP connection with TLS
  - MIME multipart construction (HTML + plaintext fallback)
  - Credential management (env vars > config file)

No external dependencies beyond Python stdlib (email, smtplib, ssl).
"""
import os
import ssl
import smtplib
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate

logger = logging.getLogger("fleetwatch.notifications.email_sender")


class EmailDeliveryError(Exception):
    """The SMTP server could not be reached or refused the message."""


class EmailSender:
    """
    SMTP email sender. The recipient comes from the alert channel's target.

    Credential resolution order:
      1. Environment variables: FLEETWATCH_SMTP_USER, FLEETWATCH_SMTP_PASS
      2. Config file: config.email.smtp_username, config.email.smtp_password
    """

    def __init__(self, config: dict):
        email_config = config.get("email", {})
        self.smtp_host = email_config.get("smtp_host", "localhost")
        self.smtp_port = email_config.get("smtp_port", 587)
        self.use_tls = email_config.get("use_tls", True)
        self.timeout = email_config.get("timeout_seconds", 30)
        self.from_address = email_config.get("from_address", "")
        self.from_name = email_config.get("from_name", "fleetwatch")

        # Credential resolution: env vars take priority
        self.username = os.environ.get(
            "FLEETWATCH_SMTP_USER",
            email_config.get("smtp_username", ""),
        )
        self.password = os.environ.get(
            "FLEETWATCH_SMTP_PASS",
            email_config.get("smtp_password", ""),
        )

    def is_configured(self) -> bool:
        """Check if all required SMTP fields are present."""
        return all([self.smtp_host, self.from_address])

    def build_message(self, to_address: str, subject: str, text: str, html: str = None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = to_address
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg.attach(MIMEText(text, "plain", "utf-8"))
        if html:
            msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def deliver(self, to_address: str, subject: str, text: str, html: str = None):
        """Send one message, raising EmailDeliveryError on any failure."""
        if not self.is_configured():
            raise EmailDeliveryError("SMTP is not configured (smtp_host/from_address)")
        if not to_address:
            raise EmailDeliveryError("No recipient address")
        self._send(self.build_message(to_address, subject, text, html))

    def send_alert(self, to_address: str, subject: str, text: str, html: str = None) -> bool:
        """Send a single alert email. Returns False instead of raising."""
        try:
            self.deliver(to_address, subject, text, html)
            return True
        except EmailDeliveryError as e:
            logger.error(f"Email send failed: {e}")
            return False

    def test_connection(self) -> dict:
        """Test SMTP connectivity without sending an email."""
        try:
            with self._connect(timeout=10) as server:
                return {"status": "ok", "message": "SMTP connection successful",
                        "server_response": str(server.noop())}
        except smtplib.SMTPAuthenticationError as e:
            return {"status": "error", "message": f"Authentication failed: {e}"}
        except smtplib.SMTPConnectError as e:
            return {"status": "error", "message": f"Connection failed: {e}"}
        except (smtplib.SMTPException, OSError) as e:
            return {"status": "error", "message": str(e)}

    def _connect(self, timeout):
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout)
        server.ehlo()
        if self.use_tls:
            server.starttls(context=ssl.create_default_context())
            server.ehlo()
        if self.username and self.password:
            server.login(self.username, self.password)
        return server

    def _send(self, msg: MIMEMultipart):
        """Internal: send a constructed MIME message via SMTP."""
        try:
            with self._connect(timeout=self.timeout) as server:
                server.send_message(msg)
            logger.info(f"Email sent to {msg['To']}: {msg['Subject']}")
        except smtplib.SMTPAuthenticationError as e:
            raise EmailDeliveryError("SMTP authentication failed. Check username/password.") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise EmailDeliveryError(f"Recipient refused: {msg['To']}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(f"Email send failed: {e}") from e
