from __future__ import annotations

from typing import Dict, Sequence


class ChatMembership:
    """Resolves the other participant of a 1:1 chat."""

    async def remote_participant(self, chat_id: str, local_id: str) -> str:
        raise NotImplementedError


class StaticMembership(ChatMembership):
    def __init__(self, chats: Dict[str, Sequence[str]]):
        self._chats = {chat_id: tuple(members) for chat_id, members in chats.items()}

    async def remote_participant(self, chat_id: str, local_id: str) -> str:
        members = self._chats.get(chat_id)
        if not members or local_id not in members:
            raise LookupError(f"{local_id} is not a member of chat {chat_id}")
        others = [m for m in members if m != local_id]
        if len(others) != 1:
            raise LookupError(f"chat {chat_id} is not a 1:1 chat")
        return others[0]
