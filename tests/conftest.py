"""Pytest configuration and fakes for the Discord objects the engine touches."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
import pytest_asyncio

from services.bindings import BindingStore, MessageBinding, RoleOption

BOT_ID = 999
GUILD_ID = 100
CHANNEL_ID = 200
MESSAGE_ID = 300
USER_ID = 400


def not_found(text: str = "Unknown Message") -> discord.NotFound:
    return discord.NotFound(MagicMock(status=404, reason="Not Found"), text)


def forbidden(text: str = "Missing Access") -> discord.Forbidden:
    return discord.Forbidden(MagicMock(status=403, reason="Forbidden"), text)


class FakeRole:
    def __init__(self, role_id: int):
        self.id = role_id

    def __repr__(self):
        return f"<FakeRole {self.id}>"


class FakeUser:
    def __init__(self, user_id: int):
        self.id = user_id


class FakeReaction:
    def __init__(self, emoji, user_ids):
        self.emoji = emoji
        self.user_ids = list(user_ids)

    async def _iter_users(self):
        for uid in self.user_ids:
            yield FakeUser(uid)

    def users(self):
        return self._iter_users()


class FakeMessage:
    def __init__(self, message_id: int = MESSAGE_ID, reactions=None):
        self.id = message_id
        self.reactions = list(reactions or [])
        self.reacted = []

    async def add_reaction(self, emoji):
        self.reacted.append(emoji)
        self.reactions.append(FakeReaction(emoji, [BOT_ID]))


class FakeGuild:
    def __init__(self, guild_id: int = GUILD_ID, role_ids=(), members=()):
        self.id = guild_id
        self.roles = {rid: FakeRole(rid) for rid in role_ids}
        self.members = {m.id: m for m in members}
        self.fetch_member = AsyncMock(side_effect=not_found("Unknown Member"))

    def get_role(self, role_id: int):
        return self.roles.get(role_id)

    def get_member(self, user_id: int):
        return self.members.get(user_id)


class FakeChannel:
    def __init__(self, guild, channel_id: int = CHANNEL_ID, messages=()):
        self.id = channel_id
        self.guild = guild
        self.messages = {m.id: m for m in messages}

    async def fetch_message(self, message_id: int):
        if message_id not in self.messages:
            raise not_found()
        return self.messages[message_id]


class FakeMember:
    def __init__(self, user_id: int = USER_ID, bot: bool = False, **perms):
        self.id = user_id
        self.bot = bot
        self.guild_permissions = discord.Permissions(**perms)
        self.add_roles = AsyncMock()
        self.remove_roles = AsyncMock()
        self.send = AsyncMock()

    def granted(self):
        return [c.args[0].id for c in self.add_roles.await_args_list]

    def revoked(self):
        return [c.args[0].id for c in self.remove_roles.await_args_list]


class FakeBot:
    def __init__(self, channels=(), guilds=()):
        self.user = FakeUser(BOT_ID)
        self.channels = {c.id: c for c in channels}
        self.guilds = {g.id: g for g in guilds}
        self.cached_messages = []
        self.fetch_channel = AsyncMock(side_effect=not_found("Unknown Channel"))

    def get_channel(self, channel_id: int):
        return self.channels.get(channel_id)

    def get_guild(self, guild_id: int):
        return self.guilds.get(guild_id)

    def get_emoji(self, emoji_id: int):
        return None


async def hang(*args, **kwargs):
    await asyncio.sleep(30)


@pytest_asyncio.fixture
async def store(tmp_path) -> BindingStore:
    s = BindingStore(str(tmp_path / "rr.sqlite"))
    await s.init()
    return s


@pytest.fixture
def welcome_binding() -> MessageBinding:
    """Single ✅ option granting role 1 with a welcome DM."""
    return MessageBinding(
        message_id=str(MESSAGE_ID),
        channel_id=str(CHANNEL_ID),
        limit=1,
        options=[RoleOption(emoji="✅", add_roles=["1"], remove_roles=[], add_message="Welcome")],
    )
