import asyncio

from carechat.apps.chat.typing_indicator import TypingIndicator


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, chat_id, event, data):
        self.calls.append((chat_id, event, data))

    def events(self):
        return [event for _, event, _ in self.calls]


def _indicator(recorder, timeout=0.05):
    return TypingIndicator(recorder, user_id="u1", username="alice", avatar_url="https://a/x.png", timeout=timeout)


def test_typing_stops_by_itself_after_the_timeout():
    recorder = Recorder()

    async def scenario():
        typing = _indicator(recorder)
        await typing.start("chat-1")
        assert typing.is_typing("chat-1")
        await asyncio.sleep(0.15)
        assert not typing.is_typing("chat-1")

    asyncio.run(scenario())

    assert recorder.events() == ["user_typing", "user_stopped_typing"]
    started, stopped = recorder.calls[0][2], recorder.calls[1][2]
    assert started == {
        "userId": "u1",
        "username": "alice",
        "chatId": "chat-1",
        "isTyping": True,
        "avatarURL": "https://a/x.png",
    }
    assert stopped["isTyping"] is False
    assert "avatarURL" not in stopped


def test_repeated_start_rearms_the_timer():
    recorder = Recorder()

    async def scenario():
        typing = _indicator(recorder, timeout=0.2)
        await typing.start("chat-1")
        await asyncio.sleep(0.12)
        await typing.start("chat-1")
        await asyncio.sleep(0.12)
        assert recorder.events() == ["user_typing", "user_typing"]
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    assert recorder.events() == ["user_typing", "user_typing", "user_stopped_typing"]


def test_explicit_stop_cancels_the_pending_expiry():
    recorder = Recorder()

    async def scenario():
        typing = _indicator(recorder)
        await typing.start("chat-1")
        await typing.stop("chat-1")
        await asyncio.sleep(0.15)

    asyncio.run(scenario())

    assert recorder.events() == ["user_typing", "user_stopped_typing"]


def test_timers_are_independent_per_chat():
    recorder = Recorder()

    async def scenario():
        typing = _indicator(recorder)
        await typing.start("chat-1")
        await typing.start("chat-2")
        await typing.stop("chat-1")
        assert typing.is_typing("chat-2")
        await asyncio.sleep(0.15)

    asyncio.run(scenario())

    stops = [chat_id for chat_id, event, _ in recorder.calls if event == "user_stopped_typing"]
    assert stops == ["chat-1", "chat-2"]


def test_clear_drops_timers_silently():
    recorder = Recorder()

    async def scenario():
        typing = _indicator(recorder)
        await typing.start("chat-1")
        typing.clear()
        assert not typing.is_typing("chat-1")
        await asyncio.sleep(0.15)

    asyncio.run(scenario())

    assert recorder.events() == ["user_typing"]
