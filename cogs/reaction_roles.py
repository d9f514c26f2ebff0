# cogs/reaction_roles.py
import io
import json
import logging
import os

import discord
from discord import app_commands
from discord.ext import commands

from services.bindings import BindingStore
from services.engine import ReactionRoleEngine
from services.events import Applied, ReactionNotification

_GUILD_ID_RAW = os.getenv("GUILD_ID") or ""
GUILD_ID = int(_GUILD_ID_RAW) if _GUILD_ID_RAW.isdigit() else None
GUILD_DEC = app_commands.guilds(GUILD_ID) if GUILD_ID else (lambda f: f)

DB_PATH = os.getenv("DB_PATH", "reaction_roles.sqlite")
IMPORT_PATH = (os.getenv("REACTION_ROLES_IMPORT") or "").strip()
TIMEOUT = float(os.getenv("REACTION_ROLES_TIMEOUT", "10") or 10)


def needs_manage_server():
    async def predicate(interaction: discord.Interaction) -> bool:
        return interaction.user.guild_permissions.manage_guild
    return app_commands.check(predicate)


def load_config_file(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected an object keyed by message id")
    return data


class ReactionRoles(commands.Cog):
    def __init__(self, bot: commands.Bot, store: BindingStore | None = None):
        self.bot = bot
        self.store = store or BindingStore(DB_PATH)
        self.engine = ReactionRoleEngine(bot, self.store, TIMEOUT)

    async def cog_load(self):
        await self.store.init()
        if IMPORT_PATH:
            try:
                config = load_config_file(IMPORT_PATH)
                await self.store.import_config(config)
            except (OSError, ValueError, KeyError, TypeError) as e:
                logging.error("ReactionRoles: could not import %s: %s", IMPORT_PATH, e)
                return
            logging.info("ReactionRoles: imported %d bindings from %s", len(config), IMPORT_PATH)

    # ---------- gateway ----------
    @commands.Cog.listener()
    async def on_ready(self):
        await self.engine.start_session()

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent):
        await self._dispatch(payload)

    @commands.Cog.listener()
    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent):
        await self._dispatch(payload)

    async def _dispatch(self, payload: discord.RawReactionActionEvent):
        result = await self.engine.handle(ReactionNotification.from_payload(payload))
        if isinstance(result, Applied):
            logging.info("ReactionRoles: %s %s by %s on %s (+%s -%s)",
                         result.direction, result.emoji, payload.user_id, payload.message_id,
                         ",".join(result.granted) or "none", ",".join(result.revoked) or "none")

    # ---------- slash commands ----------
    @GUILD_DEC
    @needs_manage_server()
    @app_commands.command(name="rr_status", description="Show reaction role status (Manage Server).")
    async def rr_status(self, inter: discord.Interaction):
        bindings = await self.store.get_all()
        await inter.response.send_message(
            f"ℹ️ State: **{self.engine.state.value}** · managed messages: **{len(bindings)}**",
            ephemeral=True,
        )

    @GUILD_DEC
    @needs_manage_server()
    @app_commands.command(name="rr_export", description="Export reaction role bindings as JSON (Manage Server).")
    async def rr_export(self, inter: discord.Interaction):
        config = await self.store.export_config()
        buf = io.BytesIO(json.dumps(config, indent=2, ensure_ascii=False).encode("utf-8"))
        await inter.response.send_message(
            f"📦 {len(config)} bindings.",
            file=discord.File(buf, filename="reaction_roles.json"),
            ephemeral=True,
        )

    @GUILD_DEC
    @needs_manage_server()
    @app_commands.command(name="rr_reload", description="Re-check every binding against the server (Manage Server).")
    async def rr_reload(self, inter: discord.Interaction):
        await inter.response.defer(ephemeral=True, thinking=True)
        count = await self.engine.reinitialize()
        await inter.followup.send(f"✅ Reconciled. {count} messages managed.", ephemeral=True)


async def setup(bot: commands.Bot):
    await bot.add_cog(ReactionRoles(bot))
