"""Tests for the reaction roles cog wiring."""

import json
import logging
from types import SimpleNamespace

import discord
import pytest

import cogs.reaction_roles as rr
from services.bindings import BindingStore
from services.engine import SessionState

from conftest import BOT_ID, CHANNEL_ID, GUILD_ID, MESSAGE_ID, USER_ID, FakeBot


@pytest.mark.asyncio
async def test_cog_load_imports_config_file(tmp_path, welcome_binding, monkeypatch):
    path = tmp_path / "roles.json"
    path.write_text(json.dumps({"300": welcome_binding.to_dict()}), encoding="utf-8")
    monkeypatch.setattr(rr, "IMPORT_PATH", str(path))

    store = BindingStore(str(tmp_path / "rr.sqlite"))
    cog = rr.ReactionRoles(FakeBot(), store)
    await cog.cog_load()
    assert await store.get("300") == welcome_binding


def test_config_file_must_be_mapping(tmp_path):
    path = tmp_path / "roles.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        rr.load_config_file(str(path))


@pytest.mark.asyncio
async def test_ready_then_reactions(tmp_path):
    store = BindingStore(str(tmp_path / "rr.sqlite"))
    cog = rr.ReactionRoles(FakeBot(), store)
    await cog.cog_load()
    await cog.on_ready()
    assert cog.engine.state is SessionState.READY

    payload = SimpleNamespace(
        event_type="REACTION_ADD",
        message_id=MESSAGE_ID,
        channel_id=CHANNEL_ID,
        guild_id=GUILD_ID,
        user_id=USER_ID,
        emoji=discord.PartialEmoji(name="✅"),
    )
    # no bindings: the event is simply not ours
    await cog.on_raw_reaction_add(payload)
    payload.user_id = BOT_ID
    await cog.on_raw_reaction_remove(payload)


@pytest.mark.asyncio
async def test_malformed_import_file_does_not_block_loading(tmp_path, monkeypatch, caplog):
    path = tmp_path / "roles.json"
    path.write_text("{not json", encoding="utf-8")
    monkeypatch.setattr(rr, "IMPORT_PATH", str(path))

    store = BindingStore(str(tmp_path / "rr.sqlite"))
    cog = rr.ReactionRoles(FakeBot(), store)
    with caplog.at_level(logging.ERROR):
        await cog.cog_load()
    assert await store.get_all() == {}
    assert any("could not import" in r.getMessage() for r in caplog.records)
