"""
Email SMTP notifier.
"""

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

from smartalerts.database.models import TriggerEvent
from .base import Notifier, NotificationMessage, NotificationResult


class EmailNotifier(Notifier):
    """Sends notifications via email SMTP."""

    channel = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
        app_url: str = "http://localhost:3000",
        timeout: float = 10.0,
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username
            smtp_password: SMTP password
            from_address: Sender email address
            app_url: Base URL of the web app, used for links
            timeout: Socket timeout for the SMTP session
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.app_url = app_url.rstrip("/")
        self.timeout = timeout

    def send(self, message: NotificationMessage) -> NotificationResult:
        """Send a notification via email."""
        if not message.recipient.email:
            return NotificationResult(
                success=False, channel="email", error="No email address on file"
            )

        try:
            mime = self._create_message(message)

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                if self.smtp_user:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(mime)

            return NotificationResult(success=True, channel="email")

        except smtplib.SMTPAuthenticationError as e:
            return NotificationResult(
                success=False,
                channel="email",
                error=f"Authentication failed: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(
                success=False,
                channel="email",
                error=f"SMTP error: {str(e)}",
            )

    def _create_message(self, message: NotificationMessage) -> MIMEMultipart:
        """Create email message."""
        mime = MIMEMultipart("alternative")
        mime["Subject"] = self._create_subject(message)
        mime["From"] = self.from_address
        mime["To"] = message.recipient.email

        # Plain text version
        mime.attach(MIMEText(self._create_text_body(message), "plain"))

        # HTML version
        mime.attach(MIMEText(self._create_body(message), "html"))

        return mime

    def _create_subject(self, message: NotificationMessage) -> str:
        """Create email subject."""
        if message.kind == "test":
            return f"[Test] {message.headline}"
        return message.headline

    def _create_text_body(self, message: NotificationMessage) -> str:
        """Create plain text email body."""
        name = message.recipient.name or "Trader"
        lines = [f"Hello {name}!", ""]

        if message.is_digest:
            lines.append(f"{len(message.events)} of your alerts triggered:")
            lines.append("")
            for event in message.events:
                lines.append(
                    f"- {event.triggered_at.strftime('%Y-%m-%d %H:%M')} UTC  {event.message}"
                )
        else:
            event = message.events[0]
            lines.append(f"Alert Triggered: {event.message}")
            lines.append("")
            lines.extend(self._detail_lines(event))

        lines += ["", f"Manage alerts: {self.app_url}/smart-alerts"]
        return "\n".join(lines) + "\n"

    def _detail_lines(self, event: TriggerEvent) -> list[str]:
        alert = event.alert
        return [
            f"Cryptocurrency: {alert.cryptocurrency.upper()}",
            f"Alert: {alert.type.title()} {alert.condition.replace('_', ' ')}",
            f"Threshold: {alert.threshold:,g}",
            f"Time: {event.triggered_at.strftime('%Y-%m-%d %H:%M:%S')} UTC",
        ]

    def _create_body(self, message: NotificationMessage) -> str:
        """Create HTML email body."""
        name = escape(message.recipient.name or "Trader")

        if message.is_digest:
            items = "\n".join(
                f"<li><span class=\"meta\">"
                f"{event.triggered_at.strftime('%Y-%m-%d %H:%M')} UTC</span> "
                f"{escape(event.message)}</li>"
                for event in message.events
            )
            content = f"""
        <p>{len(message.events)} of your alerts triggered:</p>
        <ul class="digest">
{items}
        </ul>"""
        else:
            event = message.events[0]
            details = "<br>\n".join(escape(line) for line in self._detail_lines(event))
            content = f"""
        <div class="alert-box">
            <strong>Alert Triggered:</strong> {escape(event.message)}
        </div>
        <div class="meta">{details}</div>"""

        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: #667eea; color: white; padding: 20px; text-align: center; }}
        .alert-box {{
            border-left: 4px solid #2196f3;
            padding: 15px;
            background-color: #e3f2fd;
            margin: 15px 0;
        }}
        .meta {{ color: #888; font-size: 12px; }}
        .button {{ color: #667eea; text-decoration: none; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{escape(self._create_subject(message))}</h1></div>
        <h2>Hello {name}!</h2>{content}
        <p><a class="button" href="{self.app_url}/smart-alerts">Manage Alerts</a></p>
        <p class="meta"><a href="{self.app_url}/profile">Notification Settings</a></p>
    </div>
</body>
</html>
"""
