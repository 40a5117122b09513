"""
Telegram notifications for backup runs.

Delivery is fire-and-forget: a failed message is logged as a warning and
never reaches the pipeline as an error.
"""

import html
import logging
from typing import Optional

import requests

from vpsbackup.errors import NotifyWarning
from vpsbackup.models import format_size

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org/bot{token}/sendMessage'
REQUEST_TIMEOUT = 10  # seconds


class TelegramNotifier:
    """Sends HTML formatted messages to one Telegram chat."""

    def __init__(self, bot_token: Optional[str] = None, chat_id: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.bot_token = bot_token or ''
        self.chat_id = chat_id or ''
        self.session = session or requests.Session()
        self.last_error: Optional[NotifyWarning] = None

    def __repr__(self):
        return f"TelegramNotifier(chat_id={self.chat_id!r}, enabled={self.enabled})"

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def send(self, message: str) -> bool:
        """
        Send a message.

        Returns:
            True if Telegram accepted the message, False otherwise (including
            when notifications are disabled). A delivery failure is logged and
            kept in `last_error`; it is never raised.
        """
        if not self.enabled:
            return False

        try:
            response = self.session.post(
                TELEGRAM_API_URL.format(token=self.bot_token),
                data={
                    'chat_id': self.chat_id,
                    'text': message,
                    'parse_mode': 'HTML',
                },
                timeout=REQUEST_TIMEOUT
            )
            response.raise_for_status()
            self.last_error = None
            return True
        except requests.RequestException as e:
            # The URL embeds the bot token; log only the exception type and status
            status = getattr(getattr(e, 'response', None), 'status_code', None)
            detail = f"HTTP {status}" if status else e.__class__.__name__
            logger.warning(f"Warning: Failed to send Telegram notification ({detail})")
            self.last_error = NotifyWarning(f"Telegram notification failed ({detail})")
            return False

    def notify_start(self, hostname: str, timestamp: str) -> bool:
        return self.send(
            f"🖥️ <b>{html.escape(hostname)}</b>\n"
            f"🚀 Backup started - {html.escape(timestamp)}"
        )

    def notify_failure(self, hostname: str, reason: str) -> bool:
        return self.send(
            f"🖥️ <b>{html.escape(hostname)}</b>\n"
            f"❌ <b>Backup error</b>\n"
            f"{html.escape(reason)}"
        )

    def notify_success(self, hostname: str, artifact_name: str, size_bytes: Optional[int],
                       snapshots_kept: Optional[int] = None) -> bool:
        lines = [
            f"🖥️ <b>{html.escape(hostname)} backup completed</b>",
            "✅ Backup succeeded",
            f"📦 File size: {format_size(size_bytes)}",
        ]
        if snapshots_kept is not None:
            lines.append(f"🔢 Backups kept: {snapshots_kept}")
        lines.append(f"📅 Backup file: {html.escape(artifact_name)}")
        lines.append("✓ SHA256 checksum generated")
        return self.send('\n'.join(lines))

    def notify_test(self, hostname: str) -> bool:
        return self.send(
            f"🖥️ <b>{html.escape(hostname)} - test message</b>\n"
            f"✅ Telegram notifications are configured correctly"
        )
