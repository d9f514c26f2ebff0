# bot.py
import os
import logging
from dotenv import load_dotenv
import discord
from discord.ext import commands
from discord import app_commands

# ---------- Env & setup ----------
load_dotenv()
TOKEN = (os.getenv("DISCORD_TOKEN") or "").strip()

GUILD_ID_STR = (os.getenv("GUILD_ID") or "").strip()
GUILD_ID = int(GUILD_ID_STR) if GUILD_ID_STR.isdigit() else None
GUILD = discord.Object(id=GUILD_ID) if GUILD_ID else None

# Intents: reactions arrive as raw events; members lets us resolve who reacted
intents = discord.Intents.default()
intents.members = True
intents.guild_reactions = True

# Bot
bot = commands.Bot(command_prefix="!", intents=intents)

# ---------- Global app command error handler ----------
@bot.tree.error
async def on_app_command_error(inter: discord.Interaction, error: app_commands.AppCommandError):
    try:
        if isinstance(error, app_commands.CheckFailure):
            return await inter.response.send_message("🚫 You need **Manage Server** for that.", ephemeral=True)
        # Fallback
        logging.exception("Slash command error", exc_info=error)
        if inter.response.is_done():
            await inter.followup.send("⚠️ Something went wrong.", ephemeral=True)
        else:
            await inter.response.send_message("⚠️ Something went wrong.", ephemeral=True)
    except Exception:
        logging.exception("Error while handling app command error")

# ---------- Cog loading ----------
COGS = [
    "cogs.reaction_roles",   # reconciliation on ready + raw reaction listeners, /rr_status /rr_export /rr_reload
]

async def load_all_cogs():
    for ext in COGS:
        try:
            await bot.load_extension(ext)
            logging.info("Loaded cog: %s", ext)
        except Exception as e:
            logging.warning("Could not load cog %s: %s", ext, e)

@bot.event
async def setup_hook():
    await load_all_cogs()

# ---------- Sync on ready with graceful fallback ----------
@bot.event
async def on_ready():
    try:
        if GUILD:
            await bot.tree.sync(guild=GUILD)
            logging.info("Slash commands synced to guild %s.", GUILD_ID)
        else:
            await bot.tree.sync()
            logging.info("Slash commands synced globally.")
    except discord.Forbidden:
        logging.warning("Guild sync forbidden/missing access. Falling back to GLOBAL sync.")
        try:
            await bot.tree.sync()
            logging.info("Slash commands synced globally (fallback).")
        except Exception as e:
            logging.exception("Global sync failed as well.", exc_info=e)
    except Exception as e:
        logging.exception("Slash sync failed", exc_info=e)

    logging.info("Logged in as %s (ID: %s)", bot.user, bot.user.id)

# ---------- Entrypoint ----------
def main():
    if not TOKEN:
        raise SystemExit("Missing DISCORD_TOKEN (check .env)")
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)-7s %(name)s %(message)s")
    bot.run(TOKEN, log_handler=None)

if __name__ == "__main__":
    main()
