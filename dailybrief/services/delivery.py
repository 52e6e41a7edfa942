"""
Webhook delivery of finished briefs.

The chat bot that owns the user-facing integration exposes a webhook; we
POST ``{userId, message}`` and treat HTTP 200 with ``success: true`` as
delivered. There is no retry here: a failed delivery is recorded and the
next firing is the retry.
"""

from typing import Any

import httpx

from dailybrief.config import get_config
from dailybrief.core.logging import get_logger

logger = get_logger(__name__)


async def send_message(
    recipient_id: str,
    message: str,
    *,
    webhook_url: str | None = None,
    timeout_seconds: float | None = None,
    extra: dict[str, Any] | None = None,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """
    POST a message to the delivery webhook.

    Args:
        recipient_id: External chat user id
        message: Message body
        webhook_url: Override for the configured webhook URL
        timeout_seconds: Override for the configured timeout
        extra: Optional extra payload fields (channel, blocks, ...)
        client: Optional shared httpx client

    Returns:
        True on HTTP 200 with a truthy ``success`` flag, False otherwise
    """
    config = get_config().delivery
    url = webhook_url or config.webhook_url
    timeout = timeout_seconds or config.timeout_seconds

    if not url:
        logger.warning("delivery_webhook_url_not_set")
        return False

    payload: dict[str, Any] = {"userId": recipient_id, "message": message}
    if extra:
        payload.update(extra)

    log = logger.bind(recipient_id=recipient_id, message_preview=message[:100])

    try:
        if client is not None:
            response = await client.post(url, json=payload, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as http:
                response = await http.post(url, json=payload)
    except httpx.HTTPError as e:
        log.bind(error=str(e), url=url).error("delivery_request_failed")
        return False

    try:
        body = response.json()
    except ValueError:
        body = None

    if response.status_code == 200 and isinstance(body, dict) and body.get("success"):
        log.info("delivery_webhook_succeeded")
        return True

    log.bind(status=response.status_code, body=str(body)[:200]).error("delivery_webhook_failed")
    return False


async def deliver(recipient_id: str, content: str, **kwargs: Any) -> bool:
    """Deliver a finished brief to its recipient."""
    return await send_message(recipient_id, content, **kwargs)


async def send_test_message(recipient_id: str, **kwargs: Any) -> bool:
    """Send the configured test message, used to verify the webhook wiring."""
    success = await send_message(recipient_id, get_config().delivery.test_message, **kwargs)
    logger.bind(recipient_id=recipient_id, success=success).info("delivery_test_message_sent")
    return success
