"""
Notification delivery for pause, resume and cycle alerts.
"""
import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Dict, List, Optional, Protocol
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class EmailConfig:
    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""
    to_addresses: List[str] = field(default_factory=list)
    use_tls: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EmailConfig":
        """Build from the ``email`` section of the bot config."""
        return cls(**(data or {}))


class Notifier(Protocol):
    """Alert delivery used by the pause mechanism and the trading engine."""

    def send_pause_alert(self, bot_id: str, pause_type: str, reason: str, details: Dict[str, Any]) -> bool:
        ...

    def send_resume_failed_alert(self, bot_id: str, errors: List[str]) -> bool:
        ...

    def send_resume_success_alert(self, bot_id: str, forced: bool, status: str) -> bool:
        ...

    def send_cycle_alert(self, bot_id: str, summary: Dict[str, Any]) -> bool:
        ...


class NullNotifier:
    """Notifier that only logs."""

    def send_pause_alert(self, bot_id: str, pause_type: str, reason: str, details: Dict[str, Any]) -> bool:
        logger.info(f"Bot {bot_id}: Pause alert ({pause_type}): {reason}")
        return False

    def send_resume_failed_alert(self, bot_id: str, errors: List[str]) -> bool:
        logger.info(f"Bot {bot_id}: Resume failed alert: {errors}")
        return False

    def send_resume_success_alert(self, bot_id: str, forced: bool, status: str) -> bool:
        logger.info(f"Bot {bot_id}: Resume alert (forced={forced}, status={status})")
        return False

    def send_cycle_alert(self, bot_id: str, summary: Dict[str, Any]) -> bool:
        logger.info(f"Bot {bot_id}: Cycle alert: {summary}")
        return False


def _render_html(title: str, color: str, headline: str, rows: Dict[str, Any]) -> str:
    row_html = "".join(
        f"""
                <div class="info-row">
                    <span class="label">{label}:</span>
                    <span class="value">{value}</span>
                </div>"""
        for label, value in rows.items()
    )
    return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <style>
                body {{ font-family: Arial, sans-serif; background-color: #1f2937; color: #f3f4f6; padding: 20px; }}
                .container {{ max-width: 600px; margin: 0 auto; background-color: #374151; border-radius: 8px; padding: 20px; }}
                .header {{ font-size: 24px; font-weight: bold; color: {color}; margin-bottom: 20px; }}
                .alert-box {{ background-color: #111827; border-left: 4px solid {color}; padding: 15px; margin: 15px 0; border-radius: 4px; }}
                .info-row {{ display: flex; margin: 10px 0; }}
                .label {{ color: #9ca3af; width: 160px; }}
                .value {{ color: #f3f4f6; font-weight: bold; font-family: monospace; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div class="header">{title}</div>
                <div class="alert-box">{headline}</div>
                {row_html}
            </div>
        </body>
        </html>
        """


def _render_text(title: str, headline: str, rows: Dict[str, Any]) -> str:
    lines = [title, "", headline, ""]
    lines.extend(f"{label}: {value}" for label, value in rows.items())
    return "\n".join(lines)


class EmailNotifier:
    """SMTP notifier."""

    def __init__(self, config: Optional[EmailConfig] = None):
        self.config = config
        self._is_enabled = config is not None and config.enabled

    @property
    def is_enabled(self) -> bool:
        return self._is_enabled

    def send_email(self, subject: str, body_html: str, body_text: Optional[str] = None) -> bool:
        """
        Send an email notification.

        Args:
            subject: Email subject
            body_html: HTML body content
            body_text: Plain text body (optional)

        Returns:
            True if email was sent successfully, False otherwise
        """
        if not self._is_enabled or not self.config:
            logger.info(f"Email not enabled. Would send: {subject}")
            logger.debug(f"Email body: {body_text or body_html}")
            return False

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self.config.from_address
            msg["To"] = ", ".join(self.config.to_addresses)

            if body_text:
                msg.attach(MIMEText(body_text, "plain"))
            msg.attach(MIMEText(body_html, "html"))

            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port) as server:
                if self.config.use_tls:
                    server.starttls()
                if self.config.smtp_user:
                    server.login(self.config.smtp_user, self.config.smtp_password)
                server.sendmail(
                    self.config.from_address,
                    self.config.to_addresses,
                    msg.as_string()
                )

            logger.info(f"Email sent successfully: {subject}")
            return True

        except Exception as e:
            logger.error(f"Failed to send email: {e}")
            return False

    def _send(self, subject: str, title: str, color: str, headline: str, rows: Dict[str, Any]) -> bool:
        return self.send_email(
            subject,
            _render_html(title, color, headline, rows),
            _render_text(title, headline, rows),
        )

    def send_pause_alert(self, bot_id: str, pause_type: str, reason: str, details: Dict[str, Any]) -> bool:
        """Alert that trading stopped and needs attention."""
        rows = {"Bot ID": bot_id, "Pause Type": pause_type}
        rows.update({key: value for key, value in details.items() if not isinstance(value, (dict, list))})
        return self._send(
            f"[CycleBot Alert] Strategy Paused: {bot_id}",
            "Strategy Paused",
            "#ef4444",
            f"<strong>Reason:</strong> {reason}",
            rows,
        )

    def send_resume_failed_alert(self, bot_id: str, errors: List[str]) -> bool:
        return self._send(
            f"[CycleBot Alert] Resume Failed: {bot_id}",
            "Resume Failed",
            "#f59e0b",
            "<strong>Resume validation failed.</strong> The strategy remains paused.",
            {"Bot ID": bot_id, **{f"Error {i + 1}": error for i, error in enumerate(errors)}},
        )

    def send_resume_success_alert(self, bot_id: str, forced: bool, status: str) -> bool:
        headline = "Strategy was force-resumed without validation." if forced else "Strategy resumed after validation."
        return self._send(
            f"[CycleBot] Strategy Resumed: {bot_id}",
            "Strategy Resumed",
            "#22c55e",
            headline,
            {"Bot ID": bot_id, "Status": status, "Forced": forced},
        )

    def send_cycle_alert(self, bot_id: str, summary: Dict[str, Any]) -> bool:
        return self._send(
            f"[CycleBot] Cycle Complete: {bot_id}",
            "Cycle Complete",
            "#22c55e",
            "The accumulated position was sold and a new cycle started.",
            {"Bot ID": bot_id, **summary},
        )
