"""
User Sync Notifications

Pushes segment membership changes to external integrations via webhooks.
Delivery is best-effort: membership in the database is the source of truth,
so a failed delivery is logged and never retried or raised.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Sequence

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

MEMBERSHIP_CHANGED_EVENT = "segment.membership_changed"
SIGNATURE_HEADER = "X-Signature-256"

Notifier = Callable[[str, list[str], list[str]], Awaitable[object]]

# Strong references to in-flight notification tasks; the event loop only
# keeps weak ones.
_pending_tasks: set[asyncio.Task] = set()


def is_configured() -> bool:
    return bool(settings.USER_SYNC_WEBHOOK_URLS)


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature in the "sha256=<hex>" form."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_payload(segment_name: str, added_ids: Sequence[str], removed_ids: Sequence[str]) -> dict:
    return {
        "event": MEMBERSHIP_CHANGED_EVENT,
        "segment": segment_name,
        "added": list(added_ids),
        "removed": list(removed_ids),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def notify_user_sync_integrations(
    segment_name: str,
    added_ids: Sequence[str],
    removed_ids: Sequence[str],
) -> int:
    """Send a membership change to every configured webhook.

    Args:
        segment_name: Name of the segment that changed
        added_ids: Principal IDs that entered the segment
        removed_ids: Principal IDs that left the segment

    Returns:
        Number of webhooks that accepted the delivery
    """
    if not is_configured():
        logger.debug("User sync webhooks not configured, skipping")
        return 0

    body = json.dumps(build_payload(segment_name, added_ids, removed_ids)).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if settings.USER_SYNC_WEBHOOK_SECRET:
        headers[SIGNATURE_HEADER] = sign_payload(body, settings.USER_SYNC_WEBHOOK_SECRET)

    delivered = 0
    async with httpx.AsyncClient(timeout=settings.USER_SYNC_TIMEOUT_SECONDS) as client:
        for url in settings.USER_SYNC_WEBHOOK_URLS:
            try:
                resp = await client.post(url, content=body, headers=headers)
                resp.raise_for_status()
                delivered += 1
            except httpx.HTTPError as e:
                logger.error("User sync webhook %s failed: %s", url, e)

    logger.info(
        "User sync for segment '%s' delivered to %d/%d webhooks (added=%d, removed=%d)",
        segment_name,
        delivered,
        len(settings.USER_SYNC_WEBHOOK_URLS),
        len(added_ids),
        len(removed_ids),
    )
    return delivered


def dispatch_notification(
    notifier: Notifier,
    segment_name: str,
    added_ids: Sequence[str],
    removed_ids: Sequence[str],
) -> asyncio.Task:
    """Run the notifier as a detached task that logs its own failures."""

    async def _deliver():
        try:
            await notifier(segment_name, list(added_ids), list(removed_ids))
        except Exception:
            logger.exception("User sync notification failed for segment '%s'", segment_name)

    task = asyncio.get_running_loop().create_task(_deliver())
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task


async def wait_for_pending_notifications(timeout: Optional[float] = None) -> None:
    """Wait for in-flight notifications (shutdown, tests)."""
    if not _pending_tasks:
        return
    await asyncio.wait(list(_pending_tasks), timeout=timeout)
