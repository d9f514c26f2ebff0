from typing import List, Optional, Union

import discord

from services.bindings import MessageBinding, RoleOption

EmojiLike = Union[str, discord.PartialEmoji, discord.Emoji]


def emoji_key(emoji: EmojiLike) -> str:
    """Stable token for an emoji: the character itself, or the id for custom emoji."""
    if isinstance(emoji, str):
        return emoji
    if getattr(emoji, "id", None):
        return str(emoji.id)
    return emoji.name or ""


def find_option(binding: MessageBinding, token: str) -> Optional[RoleOption]:
    for option in binding.options:
        if option.emoji == token:
            return option
    return None


def match_notification(
    binding: MessageBinding, name: Optional[str], emoji_id: Optional[str]
) -> Optional[RoleOption]:
    # a reaction payload carries both a name and (for custom emoji) an id
    for option in binding.options:
        if (name and option.emoji == name) or (emoji_id and option.emoji == emoji_id):
            return option
    return None


def referenced_roles(binding: MessageBinding) -> List[str]:
    roles: List[str] = []
    for option in binding.options:
        roles.extend(option.add_roles)
        roles.extend(option.remove_roles)
    return roles
