from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

try:
    TYPING_TIMEOUT_SECONDS = float(os.getenv("CHAT_TYPING_TIMEOUT_SECONDS", "3.0"))
except ValueError:
    TYPING_TIMEOUT_SECONDS = 3.0

Broadcast = Callable[[str, str, dict[str, Any]], Awaitable[Any]]


class TypingIndicator:
    """
    Typing state for one connection.

    `broadcast(chat_id, event, data)` delivers to the chat room minus the
    typist. Each (user, chat) pair has at most one pending expiry timer;
    a repeated start re-arms it.
    """

    def __init__(
        self,
        broadcast: Broadcast,
        *,
        user_id: str,
        username: str,
        avatar_url: str | None = None,
        timeout: float = TYPING_TIMEOUT_SECONDS,
    ) -> None:
        self._broadcast = broadcast
        self.user_id = user_id
        self.username = username
        self.avatar_url = avatar_url
        self.timeout = timeout
        self._timers: dict[tuple[str, str], asyncio.Task] = {}

    def _payload(self, chat_id: str, is_typing: bool) -> dict[str, Any]:
        data = {
            "userId": self.user_id,
            "username": self.username,
            "chatId": chat_id,
            "isTyping": is_typing,
        }
        if is_typing:
            data["avatarURL"] = self.avatar_url
        return data

    def _cancel(self, chat_id: str) -> bool:
        task = self._timers.pop((self.user_id, chat_id), None)
        if task is None:
            return False
        task.cancel()
        return True

    async def _expire(self, chat_id: str) -> None:
        await asyncio.sleep(self.timeout)
        key = (self.user_id, chat_id)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        logger.debug("Typing expired", extra={"user_id": self.user_id, "chat_id": chat_id})
        await self._broadcast(chat_id, "user_stopped_typing", self._payload(chat_id, False))

    async def start(self, chat_id: str) -> None:
        self._cancel(chat_id)
        await self._broadcast(chat_id, "user_typing", self._payload(chat_id, True))
        self._timers[(self.user_id, chat_id)] = asyncio.create_task(self._expire(chat_id))

    async def stop(self, chat_id: str) -> None:
        self._cancel(chat_id)
        await self._broadcast(chat_id, "user_stopped_typing", self._payload(chat_id, False))

    def is_typing(self, chat_id: str) -> bool:
        return (self.user_id, chat_id) in self._timers

    def clear(self) -> None:
        """Drop every pending timer without broadcasting."""
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()
