import asyncio
import logging
import time

import requests

import keeper_db

logger = logging.getLogger("Alerts")

ERROR_COOLDOWN_SEC = 300


class Alerter:
    """
    Operator notifications (Telegram + Discord) plus the journal log line.
    Delivery failures are logged and dropped; alerts never change control flow.
    """

    def __init__(self, title, telegram_bot_token=None, telegram_chat_id=None, discord_webhook=None,
                 clock=time.time, post=None):
        self.title = title
        self.telegram_bot_token = telegram_bot_token
        self.telegram_chat_id = telegram_chat_id
        self.discord_webhook = discord_webhook
        self.clock = clock
        self.post = post or requests.post
        self._last_errors = {}

    @classmethod
    def from_config(cls, title, config):
        return cls(
            title,
            telegram_bot_token=config.telegram_bot_token,
            telegram_chat_id=config.telegram_chat_id,
            discord_webhook=config.discord_webhook,
        )

    async def log_system(self, msg, level="info"):
        if level == "error":
            logger.error(msg)
        elif level == "warning":
            logger.warning(msg)
        else:
            logger.info(msg)

        if keeper_db.is_enabled():
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, keeper_db.log_event, level, msg)

        if level == "error" and self._in_cooldown(msg):
            return
        if level in ("success", "error"):
            await self.send_discord_alert(msg, level)
            await self.send_telegram_alert(msg)

    def _in_cooldown(self, msg):
        # Anti-spam: skip duplicate error alerts within the cooldown window
        error_key = msg[:100]
        now = self.clock()
        self._last_errors = {k: ts for k, ts in self._last_errors.items() if now - ts < ERROR_COOLDOWN_SEC}
        if error_key in self._last_errors:
            return True
        self._last_errors[error_key] = now
        return False

    async def _post(self, url, payload):
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: self.post(url, json=payload, timeout=10))
            return True
        except requests.RequestException as e:
            logger.warning(f"⚠️ Alert delivery failed: {e}")
            return False

    async def send_discord_alert(self, msg, level):
        if not self.discord_webhook:
            return False
        color = 0x00ff00 if level == "success" else 0xff0000
        payload = {"embeds": [{"title": self.title, "description": msg, "color": color}]}
        return await self._post(self.discord_webhook, payload)

    async def send_telegram_alert(self, msg):
        if not self.telegram_bot_token or not self.telegram_chat_id:
            return False
        url = f"https://api.telegram.org/bot{self.telegram_bot_token}/sendMessage"
        payload = {"chat_id": self.telegram_chat_id, "text": msg, "parse_mode": "HTML"}
        return await self._post(url, payload)
