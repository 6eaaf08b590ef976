"""Telegram notifications for update checks and batch updates."""

import logging

from aiogram import Bot

from modsync.core.update_orchestrator import UpdateOrchestrator
from modsync.storage.models import BatchUpdateResult, UpdateCheckResult
from modsync.utils.config import Config

logger = logging.getLogger(__name__)

# Telegram messages are capped at 4096 characters
MAX_LISTED_MODS = 20


def format_updates_found(result: UpdateCheckResult) -> str:
    """Build the message for a check that found updates."""
    lines = [f"🔄 {result.updates_found} mod update(s) available ({result.checked_count} checked):"]
    for update in result.updates[:MAX_LISTED_MODS]:
        current = update.current_version_name or update.current_version_id
        latest = update.latest_version_name or update.latest_version_id
        lines.append(f"• {update.mod_name}: {current} → {latest}")
    if result.updates_found > MAX_LISTED_MODS:
        lines.append(f"…and {result.updates_found - MAX_LISTED_MODS} more")
    return "\n".join(lines)


def format_batch_complete(result: BatchUpdateResult) -> str:
    """Build the summary message for a finished batch update."""
    total = result.successful + result.failed
    if result.failed == 0:
        header = f"✅ Successfully updated {result.successful} mod(s)"
    elif result.successful > 0:
        header = f"⚠️ Updated {result.successful}/{total} mods. {result.failed} failed."
    else:
        header = f"❌ Failed to update {result.failed} mod(s)"

    lines = [header]
    failures = [r for r in result.results if not r.success]
    for failure in failures[:MAX_LISTED_MODS]:
        lines.append(f"• {failure.mod_name}: {failure.error}")
    return "\n".join(lines)


class UpdateNotifier:
    """
    Sends update summaries to admin users.

    Hooks into UpdateOrchestrator events and sends Telegram messages.
    """

    def __init__(
        self,
        bot: Bot,
        config: Config,
        orchestrator: UpdateOrchestrator,
    ):
        self.bot = bot
        self.config = config
        self.orchestrator = orchestrator
        self._setup_callbacks()

    def _setup_callbacks(self) -> None:
        """Register callbacks with the orchestrator."""
        if self.config.notifications.updates_found:
            self.orchestrator.on_updates_found(self._on_updates_found)

        if self.config.notifications.batch_complete:
            self.orchestrator.on_batch_complete(self._on_batch_complete)

    async def _notify_admins(self, message: str) -> None:
        """Send message to all admin users."""
        for admin_id in self.config.telegram.admin_ids:
            try:
                await self.bot.send_message(admin_id, message)
            except Exception as e:
                logger.warning(f"Failed to notify admin {admin_id}: {e}")

    async def _on_updates_found(self, result: UpdateCheckResult) -> None:
        await self._notify_admins(format_updates_found(result))

    async def _on_batch_complete(self, result: BatchUpdateResult) -> None:
        await self._notify_admins(format_batch_complete(result))

    async def close(self) -> None:
        """Close the bot session."""
        await self.bot.session.close()
