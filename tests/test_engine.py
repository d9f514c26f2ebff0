"""Tests for session state and readiness gating."""

import asyncio

import pytest

from services.engine import ReactionRoleEngine, SessionState
from services.events import REACTION_ADD, Applied, IgnoreReason, ReactionNotification

from conftest import (
    BOT_ID,
    CHANNEL_ID,
    GUILD_ID,
    MESSAGE_ID,
    USER_ID,
    FakeBot,
    FakeChannel,
    FakeGuild,
    FakeMember,
    FakeMessage,
    FakeReaction,
)

NOTE = ReactionNotification(REACTION_ADD, str(MESSAGE_ID), str(CHANNEL_ID), str(GUILD_ID), str(USER_ID), "✅")


def _engine(store):
    member = FakeMember()
    guild = FakeGuild(role_ids=(1,), members=[member])
    message = FakeMessage(reactions=[FakeReaction("✅", [BOT_ID, USER_ID])])
    channel = FakeChannel(guild, messages=[message])
    bot = FakeBot(channels=[channel], guilds=[guild])
    return ReactionRoleEngine(bot, store), member


@pytest.mark.asyncio
async def test_events_ignored_until_reconciled(store, welcome_binding):
    await store.set("300", welcome_binding)
    engine, member = _engine(store)
    assert engine.state is SessionState.INITIALIZING
    assert (await engine.handle(NOTE)).reason is IgnoreReason.NOT_READY

    assert await engine.start_session() == 1
    assert engine.state is SessionState.READY
    assert isinstance(await engine.handle(NOTE), Applied)
    assert member.granted() == [1]


@pytest.mark.asyncio
async def test_events_ignored_while_reconciling(store, welcome_binding, monkeypatch):
    await store.set("300", welcome_binding)
    engine, member = _engine(store)
    gate = asyncio.Event()
    original_run = engine.reconciler.run

    async def slow_run():
        await gate.wait()
        return await original_run()

    monkeypatch.setattr(engine.reconciler, "run", slow_run)
    session = asyncio.create_task(engine.start_session())
    await asyncio.sleep(0)
    assert engine.state is SessionState.RECONCILING
    assert (await engine.handle(NOTE)).reason is IgnoreReason.NOT_READY
    gate.set()
    await session
    assert engine.is_ready()
    member.add_roles.assert_not_awaited()


@pytest.mark.asyncio
async def test_store_failure_surfaces(store, monkeypatch):
    engine, _ = _engine(store)

    async def broken():
        raise RuntimeError("disk gone")

    monkeypatch.setattr(engine.reconciler, "run", broken)
    with pytest.raises(RuntimeError):
        await engine.start_session()
    assert engine.state is SessionState.INITIALIZING


@pytest.mark.asyncio
async def test_reinitialize_reruns_reconciliation(store, welcome_binding):
    await store.set("300", welcome_binding)
    engine, _ = _engine(store)
    await engine.start_session()
    await store.delete("300")
    assert await engine.reinitialize() == 0
    assert engine.is_ready()
    assert engine.last_count == 0
