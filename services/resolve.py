"""
Lookups against the Discord cache with a REST fallback.

Every network call is bounded: a stalled request counts as "absent" so one slow
lookup cannot hold up later reaction events. Definitive answers from Discord
(Unknown Channel / Unknown Message / Missing Access) raise StaleReferenceError so
callers can drop the binding.
"""
import asyncio
import logging
from typing import Awaitable, List, Optional, TypeVar

import discord

from services.errors import StaleReferenceError, StaleRoleError
from services.rules import emoji_key

T = TypeVar("T")

DEFAULT_TIMEOUT = 10.0


async def bounded(aw: Awaitable[T], timeout: float) -> Optional[T]:
    try:
        return await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError:
        logging.warning("ReactionRoles: gave up waiting after %.1fs", timeout)
        return None


def _snowflake(ident: str) -> Optional[int]:
    ident = str(ident or "").strip()
    return int(ident) if ident.isdigit() else None


async def resolve_channel(bot: discord.Client, channel_id: str, timeout: float = DEFAULT_TIMEOUT):
    cid = _snowflake(channel_id)
    if cid is None:
        raise StaleReferenceError("channel", str(channel_id))
    channel = bot.get_channel(cid)
    if channel is not None:
        return channel
    try:
        return await bounded(bot.fetch_channel(cid), timeout)
    except (discord.NotFound, discord.Forbidden):
        raise StaleReferenceError("channel", str(channel_id))
    except discord.HTTPException as e:
        logging.warning("ReactionRoles: channel %s lookup failed: %s", channel_id, e)
        return None


async def resolve_message(
    bot: discord.Client, channel, message_id: str, timeout: float = DEFAULT_TIMEOUT
) -> Optional[discord.Message]:
    mid = _snowflake(message_id)
    if mid is None:
        raise StaleReferenceError("message", str(message_id))
    cached = discord.utils.get(bot.cached_messages, id=mid)
    if cached is not None:
        return cached
    try:
        return await bounded(channel.fetch_message(mid), timeout)
    except (discord.NotFound, discord.Forbidden):
        raise StaleReferenceError("message", str(message_id))
    except discord.HTTPException as e:
        logging.warning("ReactionRoles: message %s lookup failed: %s", message_id, e)
        return None


async def resolve_member(
    guild: discord.Guild, user_id: str, timeout: float = DEFAULT_TIMEOUT
) -> Optional[discord.Member]:
    uid = _snowflake(user_id)
    if uid is None:
        return None
    member = guild.get_member(uid)
    if member is not None:
        return member
    try:
        return await bounded(guild.fetch_member(uid), timeout)
    except discord.HTTPException:
        # left the guild, or Discord refused; either way there is nobody to act on
        return None


def resolve_role(guild: discord.Guild, role_id: str) -> Optional[discord.Role]:
    rid = _snowflake(role_id)
    return guild.get_role(rid) if rid is not None else None


def has_reaction(message: discord.Message, token: str) -> bool:
    return any(emoji_key(r.emoji) == token for r in message.reactions)


def reaction_emoji(bot: discord.Client, token: str):
    """What to pass to add_reaction for a stored emoji token."""
    eid = _snowflake(token)
    if eid is None:
        return token
    return bot.get_emoji(eid) or discord.PartialEmoji(name="_", id=eid)


async def ensure_marker(
    bot: discord.Client, message: discord.Message, token: str, timeout: float = DEFAULT_TIMEOUT
) -> bool:
    """React with `token` unless the message already shows it. True if a reaction was added."""
    if has_reaction(message, token):
        return False
    try:
        await bounded(message.add_reaction(reaction_emoji(bot, token)), timeout)
    except discord.HTTPException as e:
        logging.warning("ReactionRoles: could not react %s on message %s: %s", token, message.id, e)
        return False
    return True


def require_roles(guild: discord.Guild, role_ids: List[str]):
    missing = [rid for rid in role_ids if resolve_role(guild, rid) is None]
    if missing:
        raise StaleRoleError(missing)
