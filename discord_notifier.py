import logging
from datetime import datetime, timezone

import requests

BOT_USERNAME = "MyPortal Auto-Register"
EMPTY_WEBHOOK_PREFIX = "https://discord.com/api/webhooks/"

DESCRIPTION_LIMIT = 4096
TITLE_LIMIT = 256


def webhook_configured(webhook_url: str) -> bool:
    """A webhook is usable only if it has something after the bare Discord prefix."""
    return bool(webhook_url) and webhook_url.startswith(EMPTY_WEBHOOK_PREFIX) and \
        len(webhook_url) > len(EMPTY_WEBHOOK_PREFIX)


def build_embed(title: str, message: str, footer: str = None) -> dict:
    embed = {
        "title": title[:TITLE_LIMIT],
        "description": message[:DESCRIPTION_LIMIT],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if footer:
        embed["footer"] = {"text": footer}
    return embed


def send_discord_notification(
    content: str = None,
    embeds: list = None,
    webhook_url: str = None
) -> bool:
    """
    Sends a notification message (content and/or embeds) to a Discord webhook.

    Args:
        content: The plain text message content (max 2000 chars).
        embeds: A list of embed objects (dicts) for rich formatting (max 10 embeds).
        webhook_url: The Discord webhook URL.

    Returns:
        True if the message was sent successfully, False otherwise.
    """
    if not webhook_url:
        logging.error("Discord webhook URL is not configured.")
        return False

    payload = {"username": BOT_USERNAME}
    if content:
        payload["content"] = content[:2000]  # Enforce Discord's limit
    if embeds:
        payload["embeds"] = embeds[:10]  # Enforce Discord's limit

    try:
        response = requests.post(webhook_url, json=payload, timeout=30)
        response.raise_for_status()  # Raise an exception for HTTP errors (4xx or 5xx)
        logging.debug("Successfully sent Discord notification.")
        return True
    except requests.exceptions.RequestException as e:
        logging.error(f"Error sending Discord notification: {e}")
        if getattr(e, 'response', None) is not None:
            logging.error(f"Discord API response: Status {e.response.status_code} - {e.response.text}")
        return False


class TaskNotifier:
    """
    Best-effort notifications for one task. Failures are logged by
    send_discord_notification() and never reach the registration flow.
    """

    def __init__(self, webhook_url=None, enabled=False, notify_failures=True, footer=None):
        self.webhook_url = webhook_url
        self.enabled = enabled and webhook_configured(webhook_url)
        self.notify_failures = notify_failures
        self.footer = footer

    def send(self, title: str, message: str) -> bool:
        if not self.enabled:
            return False
        return send_discord_notification(embeds=[build_embed(title, message, self.footer)],
                                         webhook_url=self.webhook_url)

    def send_failure(self, title: str, message: str) -> bool:
        if not self.notify_failures:
            return False
        return self.send(title, message)
