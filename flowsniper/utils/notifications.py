# flowsniper/utils/notifications.py
"""
Notification system for the FlowSniper engine.

Supports two notification channels:
- Discord webhooks
- Telegram bot messages

Alerts are rate limited per type; delivery failures are logged and never
raised into the engine loop.

Usage:
    from flowsniper.utils.notifications import NotificationManager

    notifier = NotificationManager.from_monitoring(settings.monitoring)
    await notifier.send_trade_alert("WMATIC/USDT", Decimal("0.21"), "0xabc...")
"""

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import aiohttp

from .logger import get_logger

logger = get_logger(__name__)


@dataclass
class NotificationConfig:
    """Configuration for notification channels."""

    discord_webhook_url: Optional[str] = None
    discord_username: str = "FlowSniper"
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    enabled: bool = True

    @classmethod
    def from_env(cls):
        """Load configuration from environment variables."""
        return cls(
            discord_webhook_url=os.getenv('DISCORD_WEBHOOK_URL'),
            discord_username=os.getenv('DISCORD_USERNAME', 'FlowSniper'),
            telegram_bot_token=os.getenv('TELEGRAM_BOT_TOKEN'),
            telegram_chat_id=os.getenv('TELEGRAM_CHAT_ID'),
            enabled=os.getenv('ENABLE_NOTIFICATIONS', 'true').lower() == 'true',
        )


class AlertRateLimiter:
    """Per-type minimum interval between alerts plus webhook back-off."""

    def __init__(self):
        self.last_alert_times = {}
        self.rate_limited_until = 0.0

        # Minimum intervals between same type of alerts (seconds)
        self.min_intervals = {
            'trade': 5,
            'error': 10,
            'status': 30,
            'circuit_breaker': 0,
            'general': 15
        }

    def can_send_alert(self, alert_type: str = "general") -> bool:
        """Record and allow the alert unless it arrives too soon."""
        current_time = datetime.now().timestamp()

        if current_time < self.rate_limited_until and alert_type != 'circuit_breaker':
            logger.debug(f"Skipping {alert_type} alert - webhook rate limited")
            return False

        min_interval = self.min_intervals.get(alert_type, 15)
        last_alert_time = self.last_alert_times.get(alert_type, 0)

        if current_time - last_alert_time < min_interval:
            logger.debug(f"Skipping {alert_type} alert - too frequent")
            return False

        self.last_alert_times[alert_type] = current_time
        return True

    def set_rate_limited(self, retry_after: float = 60):
        """Set rate limit status."""
        self.rate_limited_until = datetime.now().timestamp() + retry_after
        logger.warning(f"Rate limited for {retry_after} seconds")

    def is_rate_limited(self) -> bool:
        """Check if currently rate limited."""
        return datetime.now().timestamp() < self.rate_limited_until


class NotificationManager:
    """Sends engine events to Discord and Telegram."""

    def __init__(self, config: Optional[NotificationConfig] = None):
        self.config = config or NotificationConfig.from_env()
        self.rate_limiter = AlertRateLimiter()
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_monitoring(cls, monitoring_config) -> "NotificationManager":
        """Build a manager from the MonitoringConfig settings section."""
        return cls(NotificationConfig(
            discord_webhook_url=monitoring_config.discord_webhook_url,
            discord_username=monitoring_config.discord_username,
            telegram_bot_token=monitoring_config.telegram_bot_token,
            telegram_chat_id=monitoring_config.telegram_chat_id,
            enabled=monitoring_config.enable_notifications,
        ))

    @property
    def has_channels(self) -> bool:
        return bool(
            self.config.enabled and (
                self.config.discord_webhook_url
                or (self.config.telegram_bot_token and self.config.telegram_chat_id)
            )
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None:
            self.session = aiohttp.ClientSession()
        return self.session

    async def close(self):
        """Close aiohttp session."""
        if self.session:
            await self.session.close()
            self.session = None

    async def send_trade_alert(self, pair: str, profit: Decimal, tx_hash: Optional[str] = None, mode: str = "REAL"):
        """Send executed round-trip alert."""
        if not self.has_channels or not self.rate_limiter.can_send_alert("trade"):
            return

        title = "Arbitrage Executed" if profit >= 0 else "Arbitrage Loss"
        message = (
            f"**Pair:** {pair}\n"
            f"**PnL:** {profit:+.4f} USDT\n"
            f"**Mode:** {mode}"
        )
        if tx_hash:
            message += f"\n**Transaction:** `{tx_hash}`"

        await self._send_to_all_channels(title, message, color=0x00FF00 if profit >= 0 else 0xFFA500)

    async def send_error_alert(self, error_message: str, tx_hash: Optional[str] = None,
                               additional_info: Optional[str] = None):
        """Send error alert."""
        if not self.has_channels or not self.rate_limiter.can_send_alert("error"):
            return

        title = "Engine Error"
        message = f"**Error:** {error_message}"

        if tx_hash:
            message += f"\n**Transaction:** `{tx_hash}`"

        if additional_info:
            message += f"\n**Details:** {additional_info}"

        await self._send_to_all_channels(title, message, color=0xFF0000)

    async def send_status_alert(self, status: str, details: Optional[str] = None):
        """Send engine status update."""
        if not self.has_channels or not self.rate_limiter.can_send_alert("status"):
            return

        title = "Engine Status"
        message = f"**Status:** {status}"

        if details:
            message += f"\n**Details:** {details}"

        await self._send_to_all_channels(title, message, color=0x0000FF)

    async def send_circuit_breaker_alert(self, reason: str, daily_pnl: Decimal):
        """Circuit breaker trips are never throttled."""
        if not self.has_channels or not self.rate_limiter.can_send_alert("circuit_breaker"):
            return

        title = "Circuit Breaker Tripped"
        message = (
            f"**Reason:** {reason}\n"
            f"**Session PnL:** {daily_pnl:+.4f} USDT\n"
            f"Engine stopped; restart required."
        )
        await self._send_to_all_channels(title, message, color=0x8B0000)

    async def _send_to_all_channels(self, title: str, message: str, color: int = 0x0080FF):
        """Send message to all enabled notification channels."""
        tasks = []

        if self.config.discord_webhook_url:
            tasks.append(self._send_discord(title, message, color))

        if self.config.telegram_bot_token and self.config.telegram_chat_id:
            tasks.append(self._send_telegram(title, message))

        if tasks:
            return await asyncio.gather(*tasks, return_exceptions=True)

        return []

    async def _send_discord(self, title: str, message: str, color: int) -> bool:
        """Send Discord webhook notification."""
        try:
            if self.rate_limiter.is_rate_limited():
                logger.debug("Discord rate limited - skipping notification")
                return False

            payload = {
                "username": self.config.discord_username,
                "embeds": [{
                    "title": title,
                    "description": message,
                    "color": color,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "footer": {"text": "FlowSniper"}
                }]
            }

            session = await self._get_session()
            async with session.post(
                    self.config.discord_webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=10)
            ) as response:

                if response.status == 204:
                    logger.debug("Discord notification sent successfully")
                    return True
                elif response.status == 429:
                    try:
                        retry_after = (await response.json()).get('retry_after', 60)
                    except (aiohttp.ContentTypeError, ValueError):
                        retry_after = 60

                    self.rate_limiter.set_rate_limited(retry_after)
                    return False
                else:
                    response_text = await response.text()
                    logger.error(f"Discord notification failed: {response.status} - {response_text}")
                    return False

        except Exception as e:
            logger.error(f"Discord notification error: {e}")
            return False

    async def _send_telegram(self, title: str, message: str) -> bool:
        """Send Telegram bot message."""
        try:
            url = f"https://api.telegram.org/bot{self.config.telegram_bot_token}/sendMessage"
            payload = {
                "chat_id": self.config.telegram_chat_id,
                "text": f"*{title}*\n\n{message}",
                "parse_mode": "Markdown"
            }

            session = await self._get_session()
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as response:
                if response.status == 200:
                    logger.debug("Telegram notification sent successfully")
                    return True

                response_text = await response.text()
                logger.error(f"Telegram notification failed: {response.status} - {response_text}")
                return False

        except Exception as e:
            logger.error(f"Telegram notification error: {e}")
            return False
