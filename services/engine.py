import asyncio
import logging
from enum import Enum
from typing import Optional, Union

import discord

from services.bindings import BindingStore
from services.events import Applied, EventProcessor, Ignore, IgnoreReason, ReactionNotification
from services.reconcile import ReconciliationEngine
from services.resolve import DEFAULT_TIMEOUT


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    RECONCILING = "reconciling"
    READY = "ready"


class ReactionRoleEngine:
    """
    Owns the binding store, the startup reconciliation pass and the event processor.
    Reaction events are only acted on once the current gateway session has been
    reconciled; anything arriving earlier is dropped.
    """

    def __init__(self, bot: discord.Client, store: BindingStore, timeout: float = DEFAULT_TIMEOUT):
        self.bot = bot
        self.store = store
        self.state = SessionState.INITIALIZING
        self.reconciler = ReconciliationEngine(bot, store, timeout)
        self.processor = EventProcessor(bot, store, self.is_ready, timeout)
        self._session_lock = asyncio.Lock()
        self.last_count: Optional[int] = None

    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    async def start_session(self) -> int:
        async with self._session_lock:
            self.state = SessionState.RECONCILING
            try:
                count = await self.reconciler.run()
            except Exception:
                self.state = SessionState.INITIALIZING
                raise
            self.last_count = count
            self.state = SessionState.READY
            user = self.bot.user
            logging.info("ReactionRoles: ready as %s (%s) with %d messages",
                         user, getattr(user, "id", "?"), count)
            return count

    async def reinitialize(self) -> int:
        self.state = SessionState.INITIALIZING
        return await self.start_session()

    async def handle(self, notification: ReactionNotification) -> Union[Applied, Ignore]:
        if not self.is_ready():
            return Ignore(IgnoreReason.NOT_READY)
        return await self.processor.process(notification)
