import logging
from typing import List, Tuple

import aiosqlite
import discord

from services.bindings import BindingStore, MessageBinding
from services.errors import StaleReferenceError
from services.resolve import (
    DEFAULT_TIMEOUT,
    ensure_marker,
    resolve_channel,
    resolve_message,
    resolve_role,
)
from services.rules import find_option


def prune_roles(guild: discord.Guild, role_ids: List[str]) -> List[str]:
    """Keep only roles that still exist, in their original order."""
    return [rid for rid in role_ids if resolve_role(guild, rid) is not None]


class ReconciliationEngine:
    """
    Startup pass over every stored binding. Drops bindings whose channel, guild or
    message is gone, prunes deleted roles, and puts back missing marker reactions.
    """

    def __init__(self, bot: discord.Client, store: BindingStore, timeout: float = DEFAULT_TIMEOUT):
        self.bot = bot
        self.store = store
        self.timeout = timeout

    async def run(self) -> int:
        bindings = await self.store.fetch_all()
        logging.info("ReactionRoles: fetching %d messages.", len(bindings))
        for message_id, binding in bindings.items():
            try:
                await self.reconcile_binding(message_id, binding)
            except aiosqlite.Error:
                raise
            except Exception:
                logging.exception("ReactionRoles: reconciling %s failed", message_id)
        remaining = await self.store.get_all()
        logging.info("ReactionRoles: fetched %d messages.", len(remaining))
        return len(remaining)

    async def reconcile_binding(self, message_id: str, binding: MessageBinding):
        try:
            channel = await resolve_channel(self.bot, binding.channel_id, self.timeout)
            if channel is None:
                logging.warning("ReactionRoles: channel %s unavailable, keeping %s for now",
                                binding.channel_id, message_id)
                return
            guild = getattr(channel, "guild", None)
            if guild is None:
                raise StaleReferenceError("guild", binding.channel_id)
            message = await resolve_message(self.bot, channel, message_id, self.timeout)
            if message is None:
                logging.warning("ReactionRoles: message %s unavailable, keeping it for now", message_id)
                return
        except StaleReferenceError as e:
            logging.info("ReactionRoles: dropping binding %s (%s)", message_id, e)
            await self.store.delete(message_id)
            return

        for option in binding.options:
            add_roles = prune_roles(guild, option.add_roles)
            remove_roles = prune_roles(guild, option.remove_roles)
            if len(add_roles) != len(option.add_roles) or len(remove_roles) != len(option.remove_roles):
                await self._write_pruned(message_id, option.emoji, (add_roles, remove_roles))
            await ensure_marker(self.bot, message, option.emoji, self.timeout)

    async def _write_pruned(self, message_id: str, emoji: str, pruned: Tuple[List[str], List[str]]):
        add_roles, remove_roles = pruned

        def apply(latest: MessageBinding):
            opt = find_option(latest, emoji)
            if opt is not None:
                opt.add_roles = add_roles
                opt.remove_roles = remove_roles
            return latest

        await self.store.update(message_id, apply)
        logging.info("ReactionRoles: pruned deleted roles from %s on message %s", emoji, message_id)
