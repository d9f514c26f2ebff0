import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import aiosqlite

from services.locks import KeyedLocks

DB_PATH = "reaction_roles.sqlite"

CREATE_SQL = """
CREATE TABLE IF NOT EXISTS reaction_role_bindings(
    message_id TEXT PRIMARY KEY,
    payload    TEXT NOT NULL
)
"""


@dataclass
class RoleOption:
    emoji: str
    add_roles: List[str] = field(default_factory=list)
    remove_roles: List[str] = field(default_factory=list)
    add_message: str = ""
    remove_message: str = ""

    def to_dict(self) -> dict:
        return {
            "emoji": self.emoji,
            "addRoles": list(self.add_roles),
            "removeRoles": list(self.remove_roles),
            "addMessage": self.add_message,
            "removeMessage": self.remove_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RoleOption":
        # "add"/"remove" are the key names older exports used
        add = data.get("addRoles", data.get("add")) or []
        remove = data.get("removeRoles", data.get("remove")) or []
        return cls(
            emoji=str(data["emoji"]),
            add_roles=[str(r) for r in add],
            remove_roles=[str(r) for r in remove],
            add_message=data.get("addMessage") or "",
            remove_message=data.get("removeMessage") or "",
        )


@dataclass
class MessageBinding:
    message_id: str
    channel_id: str
    limit: int
    restrictions: Optional[List[str]] = None
    options: List[RoleOption] = field(default_factory=list)

    def __post_init__(self):
        seen = set()
        for opt in self.options:
            if opt.emoji in seen:
                raise ValueError(f"duplicate emoji {opt.emoji!r} on message {self.message_id}")
            seen.add(opt.emoji)

    def copy(self) -> "MessageBinding":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "messageID": self.message_id,
            "channelID": self.channel_id,
            "limit": self.limit,
            "restrictions": list(self.restrictions) if self.restrictions is not None else None,
            "options": [o.to_dict() for o in self.options],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MessageBinding":
        if not data.get("messageID") or not data.get("channelID"):
            raise ValueError("binding needs messageID and channelID")
        options = data.get("options", data.get("reactions")) or []
        restrictions = data.get("restrictions")
        return cls(
            message_id=str(data["messageID"]),
            channel_id=str(data["channelID"]),
            limit=int(data.get("limit", 1)),
            restrictions=[str(p) for p in restrictions] if restrictions else None,
            options=[RoleOption.from_dict(o) for o in options],
        )


class BindingStore:
    """
    Durable message_id -> MessageBinding mapping.
    Reads are served from a cache that init()/fetch_all() fill from SQLite;
    every write goes straight through to the database.
    """

    def __init__(self, path: str = DB_PATH):
        self.path = path
        self._cache: Dict[str, MessageBinding] = {}
        self._locks = KeyedLocks()

    async def init(self):
        async with aiosqlite.connect(self.path) as db:
            await db.execute(CREATE_SQL)
            await db.commit()
        await self.fetch_all()
        logging.info("ReactionRoles: store initialized (%d bindings)", len(self._cache))

    # ---------- point operations ----------
    async def get(self, message_id: str) -> Optional[MessageBinding]:
        binding = self._cache.get(str(message_id))
        return binding.copy() if binding else None

    async def set(self, message_id: str, binding: MessageBinding):
        message_id = str(message_id)
        payload = json.dumps(binding.to_dict(), ensure_ascii=False)
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO reaction_role_bindings(message_id, payload) VALUES(?, ?) "
                "ON CONFLICT(message_id) DO UPDATE SET payload=excluded.payload",
                (message_id, payload),
            )
            await db.commit()
        self._cache[message_id] = binding.copy()

    async def delete(self, message_id: str):
        message_id = str(message_id)
        async with self._locks.hold(message_id):
            async with aiosqlite.connect(self.path) as db:
                await db.execute("DELETE FROM reaction_role_bindings WHERE message_id=?", (message_id,))
                await db.commit()
            self._cache.pop(message_id, None)

    async def update(
        self, message_id: str, mutate: Callable[[MessageBinding], MessageBinding | None]
    ) -> Optional[MessageBinding]:
        """Read the latest binding, let `mutate` change a copy, write the whole record back."""
        message_id = str(message_id)
        async with self._locks.hold(message_id):
            current = await self.get(message_id)
            if current is None:
                return None
            result = mutate(current)
            updated = result if result is not None else current
            await self.set(message_id, updated)
            return updated

    # ---------- enumeration ----------
    async def get_all(self) -> Dict[str, MessageBinding]:
        return {mid: b.copy() for mid, b in self._cache.items()}

    async def fetch_all(self) -> Dict[str, MessageBinding]:
        fresh: Dict[str, MessageBinding] = {}
        async with aiosqlite.connect(self.path) as db:
            async with db.execute(
                "SELECT message_id, payload FROM reaction_role_bindings ORDER BY rowid"
            ) as cursor:
                rows = await cursor.fetchall()
        for message_id, payload in rows:
            try:
                fresh[message_id] = MessageBinding.from_dict(json.loads(payload))
            except (ValueError, KeyError, TypeError) as e:
                logging.error("ReactionRoles: unreadable binding %s left in the database: %s", message_id, e)
        self._cache = fresh
        return {mid: b.copy() for mid, b in fresh.items()}

    # ---------- config-level operations ----------
    async def create(
        self,
        message_id: str,
        channel_id: str,
        limit: int,
        restrictions: Optional[List[str]],
        *options: RoleOption,
    ) -> MessageBinding:
        binding = MessageBinding(
            message_id=str(message_id),
            channel_id=str(channel_id),
            limit=limit,
            restrictions=list(restrictions) if restrictions else None,
            options=list(options),
        )
        await self.set(binding.message_id, binding)
        return binding

    async def remove(self, message_id: str) -> Dict[str, dict]:
        await self.delete(message_id)
        return await self.export_config()

    async def import_config(self, config: Dict[str, dict]) -> Dict[str, dict]:
        """Write every record under its own messageID; the outer keys are ignored."""
        for data in config.values():
            binding = MessageBinding.from_dict(data)
            await self.set(binding.message_id, binding)
        return await self.export_config()

    async def export_config(self) -> Dict[str, dict]:
        return {mid: b.to_dict() for mid, b in self._cache.items()}
