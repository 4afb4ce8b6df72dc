"""
Shared fixtures for the gbbsd test suite.

Stores use a temporary directory and a low bcrypt cost so the tests stay
fast. ScriptedIO and FakeRelay stand in for a live client and IRC network
when driving the session engine.
"""

import asyncio
from typing import List, Optional

import pytest

from gbbsd import CredentialStore, LineIO, MessageBoard


@pytest.fixture
def users(tmp_path):
    """Credential store backed by a temporary SQLite file."""
    store = CredentialStore(str(tmp_path / "bbs.db"), rounds=4)
    yield store
    store.close()


@pytest.fixture
def board(tmp_path):
    """Message board backed by a temporary guestbook file."""
    return MessageBoard(str(tmp_path / "guestbook.txt"))


class ScriptedIO(LineIO):
    """LineIO fed from a queue of input lines; records everything written.

    A queued ``None`` behaves like the client closing the connection.
    """

    def __init__(self, lines=(), eof: bool = True) -> None:
        super().__init__()
        self.peer = "test-client"
        self.output: List[str] = []
        self.masked_prompts: List[str] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False
        for line in lines:
            self.feed(line)
        if eof:
            self.feed(None)

    def feed(self, line: Optional[str]) -> None:
        self.inbox.put_nowait(line)

    async def write(self, text: str) -> None:
        self.output.append(text)

    async def _readline(self, masked: bool) -> Optional[str]:
        if masked:
            self.masked_prompts.append(self.prompt)
        return await self.inbox.get()

    async def close(self) -> None:
        self.closed = True

    @property
    def text(self) -> str:
        return "".join(self.output)


class FakeRelay:
    """In-memory relay with the interface the session engine uses."""

    def __init__(self, history=(), connected: bool = True) -> None:
        self.connected = connected
        self.channels = ["#test", "#other"]
        self.history = list(history)
        self.sent = []
        self.subscribers: List[asyncio.Queue] = []
        self.skipped = {}
        # threading.Event that holds recent_messages until set
        self.replay_gate = None

    def recent_messages(self, count):
        if self.replay_gate is not None:
            self.replay_gate.wait(5)
        return self.history[-count:]

    def subscribe(self):
        queue = asyncio.Queue()
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue):
        self.subscribers.remove(queue)

    def take_skipped(self, queue):
        return self.skipped.pop(id(queue), 0)

    async def send_message(self, channel, sender, text):
        self.sent.append((channel, sender, text))


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll until predicate() is true or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
