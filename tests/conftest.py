"""テスト用の fake (minicap プロセス / ストリーム / WebSocket)."""

import asyncio
import struct

import pytest

from web_minicap_stream.geometry import Size
from web_minicap_stream.supervisor import CaptureSupervisor

INITIAL_SIZE = Size(1080, 1920)


class FakeStream:
    """キューに積んだチャンク (または例外) を read() で返すストリーム."""

    def __init__(self, *chunks: bytes):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        for chunk in chunks:
            self.push(chunk)

    def push(self, item: bytes | BaseException) -> None:
        self._queue.put_nowait(item)

    def end(self) -> None:
        self.push(b"")

    async def read(self, n: int) -> bytes:
        if self.closed:
            return b""
        item = await self._queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(b"")


class FakeProcess:
    """MinicapProcess の代わり. 通知はテストから手動で発行する."""

    def __init__(self, *, auto_stop: bool = False):
        self.start_calls: list[tuple[Size, Size, int]] = []
        self.stop_calls = 0
        self.listeners: list = []
        self._auto_stop = auto_stop

    def subscribe(self, listener):
        self.listeners.append(listener)

        def unsubscribe():
            if listener in self.listeners:
                self.listeners.remove(listener)

        return unsubscribe

    def start(self, initial_size: Size, target_size: Size, rotation: int) -> None:
        self.start_calls.append((initial_size, target_size, rotation))

    def stop(self) -> None:
        self.stop_calls += 1
        if self._auto_stop:
            self.emit_stopping()

    def emit_started(self, stream) -> None:
        for listener in list(self.listeners):
            listener.on_started(stream)

    def emit_stopping(self) -> None:
        for listener in list(self.listeners):
            listener.on_stopping()


class FakeProcessFactory:
    def __init__(self, *, auto_stop: bool = False):
        self.processes: list[FakeProcess] = []
        self._auto_stop = auto_stop

    def __call__(self) -> FakeProcess:
        process = FakeProcess(auto_stop=self._auto_stop)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


class FakeWebSocket:
    """Starlette WebSocket の送受信部分だけを持つ fake."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str | bytes] = []
        self.closed: tuple[int, str] | None = None

    def client_send(self, text: str) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def client_send_bytes(self, data: bytes) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def client_disconnect(self) -> None:
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self) -> dict:
        return await self.incoming.get()

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason)


def make_banner(
    *,
    version: int = 1,
    length: int = 24,
    pid: int = 4242,
    real: tuple[int, int] = (1080, 1920),
    virtual: tuple[int, int] = (540, 960),
    orientation: int = 0,
    quirks: int = 2,
) -> bytes:
    """banner バイト列を生成 (length > 24 の場合は 0 で埋める)."""
    banner = struct.pack(
        "<BBIIIIIBB",
        version,
        length,
        pid,
        real[0],
        real[1],
        virtual[0],
        virtual[1],
        orientation,
        quirks,
    )
    if length > len(banner):
        banner += bytes(length - len(banner))
    return banner[: max(length, 2)]


def make_jpeg(size: int = 16, seed: int = 0) -> bytes:
    """JPEG SOI で始まるダミーのフレーム本体."""
    return b"\xff\xd8" + bytes((seed + i) % 256 for i in range(size - 2))


def make_frame(body: bytes) -> bytes:
    """4-byte little-endian 長 + 本体."""
    return struct.pack("<I", len(body)) + body


async def settle(rounds: int = 20) -> None:
    """イベントループを数周回して pending タスクを進める."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture
def supervisor(process_factory: FakeProcessFactory) -> CaptureSupervisor:
    return CaptureSupervisor(INITIAL_SIZE, process_factory)
