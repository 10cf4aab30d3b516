"""
Telegram Bot Service
Safety alerts and trade notifications for the trading engine
"""

import logging
import os
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

SEVERITY_EMOJI = {
    "critical": "🚨",
    "warning": "⚠️",
    "info": "ℹ️",
}

CATEGORY_TITLES = {
    "kill_switch": "KILL SWITCH ACTIVATED",
    "daily_loss": "DAILY LOSS LIMIT HIT",
    "drawdown": "MAX DRAWDOWN HIT",
    "recovery": "TRADING RESUMED",
    "resume": "TRADING RESUMED",
    "dca": "DCA ORDER PAUSED",
}


class TelegramBot:
    def __init__(self, bot_token: Optional[str] = None, timeout_sec: float = 10.0):
        self.bot_token = bot_token if bot_token is not None else os.getenv("TELEGRAM_BOT_TOKEN", "")
        self.enabled = bool(self.bot_token)
        self.timeout_sec = timeout_sec

        if not self.enabled:
            logger.info("[TELEGRAM] Bot token not configured - notifications disabled")

    def send_message(self, chat_id: str, text: str, parse_mode: str = "HTML",
                     disable_preview: bool = True) -> bool:
        """
        Send Telegram message. Returns False instead of raising on delivery errors.
        """
        if not self.enabled:
            logger.debug(f"[TELEGRAM] Would send: {text[:100]}...")
            return False

        url = f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
            "disable_web_page_preview": disable_preview,
        }

        try:
            response = requests.post(url, json=payload, timeout=self.timeout_sec)
        except requests.RequestException as e:
            logger.warning(f"[TELEGRAM] Error sending message: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"[TELEGRAM] Error: {response.status_code} - {response.text[:200]}")
            return False
        return True

    def format_safety_alert(self, alert: Dict[str, Any], account_id: str = "") -> str:
        severity = alert.get("severity", "warning")
        category = alert.get("category", "")
        emoji = SEVERITY_EMOJI.get(severity, "📊")
        title = CATEGORY_TITLES.get(category, category.replace("_", " ").upper() or "ALERT")

        message = f"{emoji} <b>{title}</b>\n\n"
        if account_id:
            message += f"<b>Account:</b> <code>{account_id}</code>\n"
        message += f"<b>Details:</b> {alert.get('message', '')}\n"
        if severity == "critical" and category not in ("recovery", "resume"):
            message += "\n⚠️ <i>Manual intervention may be required.</i>"
        return message

    def format_trade(self, record: Dict[str, Any]) -> str:
        """Format a trade record (success or failure)."""
        mint = record.get("mint") or ""
        source = str(record.get("source", "")).upper()
        action = str(record.get("action", "")).upper()

        if record.get("signature") and not record.get("error"):
            message = f"✅ <b>{source} {action}</b>\n\n"
        else:
            message = f"❌ <b>{source} {action} FAILED</b>\n\n"
        message += f"<b>Token:</b> <code>{mint[:8]}...{mint[-6:]}</code>\n"
        if record.get("amount_in") is not None:
            message += f"<b>In:</b> {record['amount_in']}\n"
        if record.get("amount_out") is not None:
            message += f"<b>Out:</b> {record['amount_out']}\n"
        if record.get("error"):
            message += f"<b>Error:</b> {str(record['error'])[:100]}\n"
        if record.get("signature"):
            message += f"<b>TX:</b> <a href='https://solscan.io/tx/{record['signature']}'>View on Solscan</a>"
        return message

    def send_safety_alert(self, chat_id: str, alert: Dict[str, Any], account_id: str = "") -> bool:
        return self.send_message(chat_id, self.format_safety_alert(alert, account_id))

    def send_trade(self, chat_id: str, record: Dict[str, Any]) -> bool:
        return self.send_message(chat_id, self.format_trade(record))
