"""viewer (WebSocket) とキャプチャストリームの橋渡し.

送信: BannerReady → info テキストメッセージ, FrameReady → JPEG バイナリ。
受信: "on" / "off" / "size WxH" のテキストコマンド。
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from web_minicap_stream.geometry import GeometryController, Size
from web_minicap_stream.minicap_decoder import (
    Banner,
    BannerReady,
    DecoderEvent,
    FrameReady,
    StreamError,
)
from web_minicap_stream.supervisor import CaptureSupervisor

logger = logging.getLogger(__name__)

# 送信キューが満杯の場合はフレームをドロップ（遅いクライアントを待たない）
DEFAULT_QUEUE_SIZE = 200

CLOSE_SUPERSEDED = 4000
CLOSE_STREAM_CORRUPTED = 1011


# ============================================================
# viewer コマンド
# ============================================================


@dataclass(frozen=True)
class StreamOn:
    pass


@dataclass(frozen=True)
class StreamOff:
    pass


@dataclass(frozen=True)
class Resize:
    width: int
    height: int


ViewerCommand = StreamOn | StreamOff | Resize


def _parse_dimension(text: str) -> int | None:
    if not text or not text.isascii() or not text.isdigit():
        return None
    value = int(text)
    return value if value > 0 else None


def parse_command(message: str) -> ViewerCommand | None:
    """viewer のテキストメッセージをコマンドに変換する.

    文法に完全一致しないメッセージは None。
    """
    if message == "on":
        return StreamOn()
    if message == "off":
        return StreamOff()

    keyword, sep, size = message.partition(" ")
    if keyword != "size" or not sep:
        return None
    width, sep, height = size.partition("x")
    w, h = _parse_dimension(width), _parse_dimension(height)
    if not sep or w is None or h is None:
        return None
    return Resize(w, h)


def info_message(banner: Banner) -> str:
    """banner の info メッセージ (JSON テキスト)."""
    return json.dumps({"event": "info", "data": banner.info()})


# ============================================================
# ViewerBridge
# ============================================================


@dataclass(frozen=True)
class _Close:
    code: int
    reason: str


class ViewerBridge:
    """1つの viewer 接続.

    Usage:
        bridge = ViewerBridge(supervisor, controller)
        await bridge.serve(websocket)
    """

    def __init__(
        self,
        supervisor: CaptureSupervisor,
        controller: GeometryController,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._supervisor = supervisor
        self._controller = controller
        self._queue: asyncio.Queue[str | bytes | _Close] = asyncio.Queue(
            maxsize=queue_size
        )
        self._connected = False
        self._close_request: _Close | None = None
        self._dropped_frames = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def dropped_frames(self) -> int:
        return self._dropped_frames

    @property
    def close_request(self) -> tuple[int, str] | None:
        if self._close_request is None:
            return None
        return self._close_request.code, self._close_request.reason

    def connect(self) -> None:
        """ストリームに接続する.

        ストリーミング中なら現在の banner を先に送る
        (セッションは banner を再送しないため)。
        """
        banner = self._supervisor.banner
        if self._supervisor.is_streaming and banner is not None:
            self._enqueue_essential(info_message(banner))
        self._supervisor.attach(self.on_event)
        self._connected = True
        logger.info("Viewer connected (capture=%s)", self._supervisor.state.value)

    def disconnect(self) -> None:
        """ストリームから切断する. キャプチャセッションは停止しない."""
        if not self._connected:
            return
        self._connected = False
        if self._supervisor.detach(self.on_event):
            self._controller.reset()
        logger.info("Viewer disconnected (dropped_frames=%d)", self._dropped_frames)

    def close(self, code: int = 1000, reason: str = "") -> None:
        """送信ループを終了し、WebSocket を閉じるよう要求する."""
        self._enqueue_essential(_Close(code, reason))

    def on_event(self, event: DecoderEvent) -> None:
        """supervisor からのデコードイベント."""
        if isinstance(event, BannerReady):
            logger.debug("Sending banner info: %s", event.banner)
            self._enqueue_essential(info_message(event.banner))
        elif isinstance(event, FrameReady):
            try:
                self._queue.put_nowait(event.body)
            except asyncio.QueueFull:
                self._dropped_frames += 1
                if self._dropped_frames == 1 or self._dropped_frames % 100 == 0:
                    logger.warning(
                        "Viewer queue full, dropped %d frames", self._dropped_frames
                    )
        elif isinstance(event, StreamError) and event.fatal:
            self.close(CLOSE_STREAM_CORRUPTED, "capture stream corrupted")

    def handle_message(self, message: str) -> None:
        """viewer からのテキストメッセージ."""
        logger.debug("Received message: %r", message[:64])
        command = parse_command(message)
        if command is None:
            return
        if isinstance(command, Resize):
            self._controller.request(size=Size(command.width, command.height))
        else:
            # TODO: on/off で minicap の停止/再開を制御する
            logger.debug("Stream toggle %s ignored", type(command).__name__)

    def _enqueue_essential(self, item: str | _Close) -> None:
        # 未送信フレームを捨ててでも banner / close は必ず積む
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                if not self._drop_oldest():
                    logger.warning("Viewer queue holds only close requests, dropping")
                    return

    def _drop_oldest(self) -> bool:
        """close 要求以外で最も古い項目を1つ捨てる (フレーム優先)."""
        items: list[str | bytes | _Close] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())

        victim = next((i for i, item in enumerate(items) if isinstance(item, bytes)), None)
        if victim is None:
            victim = next(
                (i for i, item in enumerate(items) if not isinstance(item, _Close)), None
            )
        if victim is not None:
            if isinstance(items[victim], bytes):
                self._dropped_frames += 1
            del items[victim]

        for item in items:
            self._queue.put_nowait(item)
        return victim is not None

    async def messages(self) -> AsyncIterator[str | bytes]:
        """送信メッセージを順に生成する. close 要求で終了.

        Yields:
            info メッセージ (str) または JPEG フレーム (bytes)
        """
        while True:
            item = await self._queue.get()
            if isinstance(item, _Close):
                self._close_request = item
                return
            yield item

    async def serve(self, websocket: Any) -> None:
        """受理済み WebSocket の送受信を行う.

        viewer の切断、または close 要求で戻る。
        """
        self.connect()
        sender = asyncio.create_task(self._send_loop(websocket), name="viewer-send")
        receiver = asyncio.create_task(
            self._receive_loop(websocket), name="viewer-receive"
        )
        try:
            done, pending = await asyncio.wait(
                {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
            for task in done:
                task.result()
        finally:
            sender.cancel()
            receiver.cancel()
            self.disconnect()

        if sender in done and self._close_request is not None:
            logger.info(
                "Closing viewer socket (code=%d, reason=%s)",
                self._close_request.code,
                self._close_request.reason,
            )
            await websocket.close(
                code=self._close_request.code, reason=self._close_request.reason
            )

    async def _send_loop(self, websocket: Any) -> None:
        async for payload in self.messages():
            if isinstance(payload, bytes):
                await websocket.send_bytes(payload)
            else:
                await websocket.send_text(payload)

    async def _receive_loop(self, websocket: Any) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            text = message.get("text")
            if text is not None:
                self.handle_message(text)
