"""
Telegram alert service for TTL cleanup notifications.

Subscribes to engine events and forwards the ones an operator cares about:
cleanup errors, coordinator changes and (optionally) scans that expired
records.

Usage:
    alerts = AlertService(bot_token="123:ABC", chat_id="-100123", worker_id="pod-a")
    alerts.attach(engine)
    await alerts.send("🧹 TTL cleanup online")
"""

from typing import Any

import httpx
from loguru import logger

from cohort_ttl.events import CleanupError, CoordinatorElected, CoordinatorLost, ScanCompleted


class AlertService:
    """Sends cleanup alerts via Telegram Bot API.

    Disabled (every send is a logged no-op) when the token or chat id is
    missing.

    Usage:
        alerts = AlertService(bot_token="123:ABC", chat_id="-100123")
        await alerts.send("⚠️ Cleanup error")
    """

    TELEGRAM_API = "https://api.telegram.org"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        worker_id: str = "",
        notify_scan_expired: bool = False,
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._worker_id = worker_id
        self._notify_scan_expired = notify_scan_expired
        self._enabled = bool(bot_token and chat_id)

        if not self._enabled:
            logger.warning("AlertService: Telegram not configured (missing bot_token or chat_id)")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def attach(self, engine: Any) -> None:
        """Subscribe to the engine's events."""
        engine.on("cleanup-error", self.cleanup_error)
        engine.on("coordinator-elected", self.coordinator_elected)
        engine.on("coordinator-lost", self.coordinator_lost)
        if self._notify_scan_expired:
            engine.on("scan-completed", self.scan_completed)

    # ── Core Send ───────────────────────────────────────────────────────

    async def send(self, message: str) -> bool:
        """Send a text message via Telegram.

        Returns True if sent successfully, False otherwise.
        """
        if not self._enabled:
            logger.debug("AlertService: skipping (not configured): {}", message[:80])
            return False

        url = f"{self.TELEGRAM_API}/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": message,
            "parse_mode": "HTML",
        }

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(url, json=payload)
                if response.status_code == 200:
                    return True
                logger.error(
                    "AlertService: Telegram API error {}: {}",
                    response.status_code,
                    response.text[:200],
                )
                return False
        except httpx.HTTPError as e:
            logger.error("AlertService: failed to send Telegram message: {}", e)
            return False

    # ── Event Notifications ─────────────────────────────────────────────

    async def cleanup_error(self, event: CleanupError) -> bool:
        lines = [f"⚠️ {self._worker_header()}<b>Cleanup Error</b>"]
        if event.resource:
            lines.append(f"• Resource: {event.resource}")
        if event.granularity:
            lines.append(f"• Granularity: {event.granularity}")
        if event.record_id:
            lines.append(f"• Record: {event.record_id}")
        lines.append(f"<code>{event.error[:500]}</code>")
        return await self.send("\n".join(lines))

    async def coordinator_elected(self, event: CoordinatorElected) -> bool:
        return await self.send(f"👑 <b>Coordinator Elected</b>\n• Worker: {event.worker_id}")

    async def coordinator_lost(self, event: CoordinatorLost) -> bool:
        return await self.send(f"🔻 <b>Coordinator Lost</b>\n• Worker: {event.worker_id}")

    async def scan_completed(self, event: ScanCompleted) -> bool:
        """Report scans that expired records. Empty scans are not sent."""
        if event.total_expired == 0:
            return False
        cohorts = event.cohorts
        cohort_range = f"{cohorts[0]} → {cohorts[-1]}" if cohorts else "—"
        lines = [
            f"🧹 {self._worker_header()}<b>Scan Completed ({event.granularity})</b>",
            f"• Expired: {event.total_expired}/{event.total_processed}",
            f"• Cohorts: {cohort_range}",
            f"• Duration: {event.duration_ms:.0f} ms",
        ]
        if event.resources:
            lines.append(f"• Resources: {', '.join(event.resources)}")
        return await self.send("\n".join(lines))

    # ── Helpers ─────────────────────────────────────────────────────────

    def _worker_header(self) -> str:
        """Return '[worker_id] ' prefix if worker_id is set, else ''."""
        if self._worker_id:
            return f"[{self._worker_id}] "
        return ""
