"""
Turns raw reaction add/remove notifications into role changes.

Each notification runs through a fixed list of guards. A guard either hands the
(partly resolved) context on with Proceed, or stops with Ignore and a reason;
only a notification that clears every guard touches roles or sends a DM.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

import discord

from services.bindings import BindingStore, MessageBinding, RoleOption
from services.errors import StaleReferenceError, StaleRoleError
from services.locks import KeyedLocks
from services.resolve import (
    DEFAULT_TIMEOUT,
    bounded,
    ensure_marker,
    resolve_channel,
    resolve_member,
    require_roles,
    resolve_message,
    resolve_role,
)
from services.rules import match_notification, referenced_roles

REACTION_ADD = "MESSAGE_REACTION_ADD"
REACTION_REMOVE = "MESSAGE_REACTION_REMOVE"

# discord.py drops the MESSAGE_ prefix on RawReactionActionEvent.event_type
_PAYLOAD_KINDS = {"REACTION_ADD": REACTION_ADD, "REACTION_REMOVE": REACTION_REMOVE}


@dataclass(frozen=True)
class ReactionNotification:
    kind: str
    message_id: str
    channel_id: str
    guild_id: Optional[str]
    user_id: str
    emoji_name: Optional[str] = None
    emoji_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: discord.RawReactionActionEvent) -> "ReactionNotification":
        emoji = payload.emoji
        return cls(
            kind=_PAYLOAD_KINDS.get(payload.event_type, payload.event_type),
            message_id=str(payload.message_id),
            channel_id=str(payload.channel_id),
            guild_id=str(payload.guild_id) if payload.guild_id else None,
            user_id=str(payload.user_id),
            emoji_name=emoji.name,
            emoji_id=str(emoji.id) if emoji.id else None,
        )


class IgnoreReason(str, Enum):
    NOT_READY = "not_ready"
    UNSUPPORTED_TYPE = "unsupported_type"
    UNMANAGED_MESSAGE = "unmanaged_message"
    UNKNOWN_GUILD = "unknown_guild"
    STALE_ROLE = "stale_role"
    SELF_REACTION = "self_reaction"
    UNKNOWN_MEMBER = "unknown_member"
    BOT_MEMBER = "bot_member"
    MISSING_PERMISSION = "missing_permission"
    UNKNOWN_CHANNEL = "unknown_channel"
    UNKNOWN_MESSAGE = "unknown_message"
    NO_MATCHING_OPTION = "no_matching_option"
    LIMIT_EXCEEDED = "limit_exceeded"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Ignore:
    reason: IgnoreReason
    detail: str = ""


@dataclass
class ReactionContext:
    notification: ReactionNotification
    binding: Optional[MessageBinding] = None
    guild: Optional[discord.Guild] = None
    member: Optional[discord.Member] = None
    channel: Optional[discord.abc.Messageable] = None
    message: Optional[discord.Message] = None
    option: Optional[RoleOption] = None


@dataclass(frozen=True)
class Proceed:
    ctx: ReactionContext


@dataclass
class Applied:
    direction: str
    emoji: str
    granted: List[str] = field(default_factory=list)
    revoked: List[str] = field(default_factory=list)
    dm_sent: bool = False


Outcome = Union[Proceed, Ignore]


def has_permissions(member: discord.Member, names: List[str]) -> bool:
    """Accepts MANAGE_ROLES or manage_roles; an unknown permission name is never held."""
    perms = member.guild_permissions
    for name in names:
        flag = name.strip().lower()
        if flag not in discord.Permissions.VALID_FLAGS or not getattr(perms, flag):
            return False
    return True


async def count_member_reactions(message: discord.Message, user_id: int) -> int:
    """How many of the message's reaction entries include this user."""
    count = 0
    for reaction in message.reactions:
        async for user in reaction.users():
            if user.id == user_id:
                count += 1
                break
    return count


class EventProcessor:
    def __init__(
        self,
        bot: discord.Client,
        store: BindingStore,
        is_ready: Callable[[], bool],
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.bot = bot
        self.store = store
        self.is_ready = is_ready
        self.timeout = timeout
        self._locks = KeyedLocks()
        self.guards = (
            self.check_ready,
            self.check_type,
            self.load_binding,
            self.load_guild,
            self.check_roles,
            self.load_member,
            self.check_restrictions,
            self.load_message,
            self.select_option,
            self.heal_marker,
        )

    async def process(self, notification: ReactionNotification) -> Union[Applied, Ignore]:
        # add/remove from the same user on the same message must not interleave
        async with self._locks.hold((notification.message_id, notification.user_id)):
            ctx = ReactionContext(notification)
            for guard in self.guards:
                outcome = await guard(ctx)
                if isinstance(outcome, Ignore):
                    logging.debug("ReactionRoles: ignored %s on %s from %s: %s %s",
                                  notification.kind, notification.message_id, notification.user_id,
                                  outcome.reason.value, outcome.detail)
                    return outcome
                ctx = outcome.ctx
            if notification.kind == REACTION_ADD:
                return await self.apply_add(ctx)
            return await self.apply_remove(ctx)

    # ---------- guards ----------
    async def check_ready(self, ctx: ReactionContext) -> Outcome:
        if not self.is_ready():
            return Ignore(IgnoreReason.NOT_READY)
        return Proceed(ctx)

    async def check_type(self, ctx: ReactionContext) -> Outcome:
        if ctx.notification.kind not in (REACTION_ADD, REACTION_REMOVE):
            return Ignore(IgnoreReason.UNSUPPORTED_TYPE, ctx.notification.kind)
        return Proceed(ctx)

    async def load_binding(self, ctx: ReactionContext) -> Outcome:
        ctx.binding = await self.store.get(ctx.notification.message_id)
        if ctx.binding is None:
            return Ignore(IgnoreReason.UNMANAGED_MESSAGE)
        return Proceed(ctx)

    async def load_guild(self, ctx: ReactionContext) -> Outcome:
        gid = ctx.notification.guild_id
        ctx.guild = self.bot.get_guild(int(gid)) if gid and gid.isdigit() else None
        if ctx.guild is None:
            return Ignore(IgnoreReason.UNKNOWN_GUILD)
        return Proceed(ctx)

    async def check_roles(self, ctx: ReactionContext) -> Outcome:
        # fail closed: a half-stale binding is left for reconciliation to prune
        try:
            require_roles(ctx.guild, referenced_roles(ctx.binding))
        except StaleRoleError as e:
            logging.info("ReactionRoles: not acting on %s: %s", ctx.notification.message_id, e)
            return Ignore(IgnoreReason.STALE_ROLE, ",".join(e.missing))
        return Proceed(ctx)

    async def load_member(self, ctx: ReactionContext) -> Outcome:
        me = self.bot.user
        if me is not None and str(me.id) == ctx.notification.user_id:
            return Ignore(IgnoreReason.SELF_REACTION)
        ctx.member = await resolve_member(ctx.guild, ctx.notification.user_id, self.timeout)
        if ctx.member is None:
            return Ignore(IgnoreReason.UNKNOWN_MEMBER)
        if ctx.member.bot:
            return Ignore(IgnoreReason.BOT_MEMBER)
        return Proceed(ctx)

    async def check_restrictions(self, ctx: ReactionContext) -> Outcome:
        restrictions = ctx.binding.restrictions
        if restrictions and not has_permissions(ctx.member, restrictions):
            return Ignore(IgnoreReason.MISSING_PERMISSION)
        return Proceed(ctx)

    async def load_message(self, ctx: ReactionContext) -> Outcome:
        n = ctx.notification
        try:
            ctx.channel = await resolve_channel(self.bot, n.channel_id, self.timeout)
            if ctx.channel is None:
                return Ignore(IgnoreReason.UNKNOWN_CHANNEL)
            ctx.message = await resolve_message(self.bot, ctx.channel, n.message_id, self.timeout)
            if ctx.message is None:
                return Ignore(IgnoreReason.UNKNOWN_MESSAGE)
        except StaleReferenceError as e:
            logging.info("ReactionRoles: dropping binding %s (%s)", n.message_id, e)
            await self.store.delete(n.message_id)
            reason = IgnoreReason.UNKNOWN_CHANNEL if e.what == "channel" else IgnoreReason.UNKNOWN_MESSAGE
            return Ignore(reason, str(e))
        return Proceed(ctx)

    async def select_option(self, ctx: ReactionContext) -> Outcome:
        n = ctx.notification
        ctx.option = match_notification(ctx.binding, n.emoji_name, n.emoji_id)
        if ctx.option is None:
            return Ignore(IgnoreReason.NO_MATCHING_OPTION)
        return Proceed(ctx)

    async def heal_marker(self, ctx: ReactionContext) -> Outcome:
        await ensure_marker(self.bot, ctx.message, ctx.option.emoji, self.timeout)
        return Proceed(ctx)

    # ---------- effects ----------
    async def apply_add(self, ctx: ReactionContext) -> Union[Applied, Ignore]:
        count = await bounded(count_member_reactions(ctx.message, ctx.member.id), self.timeout)
        if count is None:
            return Ignore(IgnoreReason.TIMED_OUT, "counting reactions")
        if count > ctx.binding.limit:
            return Ignore(IgnoreReason.LIMIT_EXCEEDED, f"{count} > {ctx.binding.limit}")
        option = ctx.option
        result = Applied(REACTION_ADD, option.emoji)
        result.granted = await self._change_roles(ctx, option.add_roles, grant=True)
        result.revoked = await self._change_roles(ctx, option.remove_roles, grant=False)
        if option.add_message:
            result.dm_sent = await self._send_dm(ctx.member, option.add_message)
        return result

    async def apply_remove(self, ctx: ReactionContext) -> Applied:
        option = ctx.option
        result = Applied(REACTION_REMOVE, option.emoji)
        result.revoked = await self._change_roles(ctx, option.add_roles, grant=False)
        if option.remove_message:
            result.dm_sent = await self._send_dm(ctx.member, option.remove_message)
        return result

    async def _change_roles(self, ctx: ReactionContext, role_ids: List[str], grant: bool) -> List[str]:
        """One call per role so a single refusal does not block the rest."""
        changed: List[str] = []
        for rid in role_ids:
            role = resolve_role(ctx.guild, rid)
            if role is None:
                continue
            try:
                if grant:
                    await asyncio.wait_for(ctx.member.add_roles(role, reason="Reaction role add"), self.timeout)
                else:
                    await asyncio.wait_for(ctx.member.remove_roles(role, reason="Reaction role remove"), self.timeout)
                changed.append(rid)
            except (discord.HTTPException, asyncio.TimeoutError) as e:
                logging.warning("ReactionRoles: could not %s role %s for %s: %s",
                                "add" if grant else "remove", rid, ctx.member.id, e)
        return changed

    async def _send_dm(self, member: discord.Member, text: str) -> bool:
        try:
            await asyncio.wait_for(member.send(text), self.timeout)
            return True
        except (discord.HTTPException, asyncio.TimeoutError):
            # DMs closed or bot blocked
            return False
