"""
Discord webhook notifications for new tournament registrations.

Delivery is fire-and-forget: one attempt per registration, run as a detached
task. Whatever happens to it is only visible in the logs.
"""
import asyncio
import logging
from typing import Optional, Set

import httpx

from database import Record

logger = logging.getLogger(__name__)

EMBED_COLOR = 0x5865F2


def registration_embed(record: Record) -> dict:
    members = record.get("teamMembers") or []
    fields = [
        {"name": "Team", "value": record.get("teamName") or "-", "inline": True},
        {"name": "Captain", "value": record.get("captainDiscord") or "-", "inline": True},
        {"name": "Region", "value": record.get("region") or "-", "inline": True},
        {"name": f"Members ({len(members)})", "value": "\n".join(members) or "-", "inline": False},
    ]
    if record.get("contactEmail"):
        fields.append({"name": "Contact", "value": record["contactEmail"], "inline": True})
    if record.get("experience"):
        fields.append({"name": "Experience", "value": record["experience"], "inline": True})
    return {
        "title": "New tournament registration",
        "description": record.get("tournamentTitle") or record.get("tournamentId") or "",
        "color": EMBED_COLOR,
        "fields": fields,
        "footer": {"text": f"Registration {record.get('id', '')}"},
        "timestamp": record.get("registeredAt"),
    }


class WebhookNotifier:
    def __init__(self, url: str = "", timeout: float = 10, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify_registration(self, record: Record) -> None:
        """Schedule delivery and return immediately. No-op without a URL."""
        if not self.enabled:
            return
        task = asyncio.create_task(self._deliver(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, record: Record) -> None:
        payload = {"username": "VMNC Registrations", "embeds": [registration_embed(record)]}
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Registration webhook failed for {record.get('id')}: {e}")
            return
        logger.info(f"Registration webhook sent for {record.get('id')}")

    async def drain(self) -> None:
        """Wait for deliveries still in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self._client.aclose()
