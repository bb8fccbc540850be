"""minicap ストリームデコーダ.

minicap のソケット出力 (banner + length-prefixed JPEG フレーム列) を
任意のチャンク境界で受け取り、BannerReady / FrameReady イベントに組み立てる。

Wire format (multi-byte はすべて little-endian, unsigned):

    0       version
    1       banner length
    2-5     pid
    6-9     real width
    10-13   real height
    14-17   virtual width
    18-21   virtual height
    22      orientation (x 90 = degrees)
    23      quirks
    ...     frames: 4-byte body length + JPEG body
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

# ストリーム読み取りチャンクサイズ
READ_CHUNK_SIZE = 32 * 1024  # 32KB

JPEG_SOI = b"\xff\xd8"

# banner 長が判明するまでの仮の長さ (version + length)
INITIAL_BANNER_LENGTH = 2

FRAME_LENGTH_BYTES = 4

# offset 2-21 の u32 フィールド (4 byte ずつ)
_U32_FIELDS = ("pid", "real_width", "real_height", "virtual_width", "virtual_height")


class Quirks(enum.IntFlag):
    """minicap の quirks ビットマスク."""

    DUMB = 1
    ALWAYS_UPRIGHT = 2
    TEAR = 4


@dataclass(frozen=True)
class Banner:
    """キャプチャセッションのメタデータ."""

    version: int = 0
    length: int = 0
    pid: int = 0
    real_width: int = 0
    real_height: int = 0
    virtual_width: int = 0
    virtual_height: int = 0
    orientation: int = 0
    quirks: int = 0

    def info(self) -> dict[str, int]:
        """viewer へ送る info メッセージの data 部."""
        return {
            "realWidth": self.real_width,
            "realHeight": self.real_height,
            "virtualWidth": self.virtual_width,
            "virtualHeight": self.virtual_height,
        }


@dataclass(frozen=True)
class BannerReady:
    banner: Banner


@dataclass(frozen=True)
class FrameReady:
    body: bytes


@dataclass(frozen=True)
class StreamError:
    """ストリーム読み取り失敗. fatal はプロトコル破損を示す."""

    reason: str
    fatal: bool = False


DecoderEvent = BannerReady | FrameReady | StreamError


class FrameProtocolError(Exception):
    """ストリーム破損 (再同期不可).

    Attributes:
        decoded: 破損検出前に同じチャンクから完成したイベント
    """

    def __init__(self, message: str, decoded: list[DecoderEvent] | None = None):
        super().__init__(message)
        self.decoded = decoded or []


class ByteStream(Protocol):
    async def read(self, n: int) -> bytes: ...


class FrameDecoder:
    """minicap ストリームのステートフルパーサ.

    banner → (frame length → frame body)* の順に進み、後戻りしない。
    feed() は任意の位置で切れたチャンクを受け付け、次回呼び出しで続きから再開する。
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        """パーサ状態を初期化する (新しいストリーム接続時)."""
        self._banner_fields: dict[str, int] = dict.fromkeys(
            ("version", "length", *_U32_FIELDS, "orientation", "quirks"), 0
        )
        self._banner_bytes_read = 0
        self._banner_length = INITIAL_BANNER_LENGTH
        self._frame_length_bytes_read = 0
        self._frame_length = 0
        self._frame_buf = bytearray()
        self._banner: Banner | None = None

    @property
    def banner(self) -> Banner | None:
        """完成済みの banner (未完成なら None)."""
        return self._banner

    def _read_banner_byte(self, value: int) -> None:
        offset = self._banner_bytes_read
        fields = self._banner_fields
        if offset == 0:
            fields["version"] = value
        elif offset == 1:
            if value < INITIAL_BANNER_LENGTH:
                raise FrameProtocolError(f"Banner length {value} is too short")
            fields["length"] = self._banner_length = value
        elif offset < 22:
            name = _U32_FIELDS[(offset - 2) // 4]
            fields[name] |= value << (((offset - 2) % 4) * 8)
        elif offset == 22:
            fields["orientation"] = value * 90
        elif offset == 23:
            fields["quirks"] = value
        self._banner_bytes_read += 1

    def feed(self, chunk: bytes) -> list[DecoderEvent]:
        """チャンクを入力し、完成したイベントのリストを返す.

        Raises:
            FrameProtocolError: banner 長が不正、またはフレームが JPEG で始まらない場合
        """
        events: list[DecoderEvent] = []
        cursor = 0
        n = len(chunk)

        try:
            while cursor < n:
                if self._banner_bytes_read < self._banner_length:
                    self._read_banner_byte(chunk[cursor])
                    cursor += 1
                    if self._banner_bytes_read == self._banner_length:
                        self._banner = Banner(**self._banner_fields)
                        events.append(BannerReady(self._banner))

                elif self._frame_length_bytes_read < FRAME_LENGTH_BYTES:
                    self._frame_length |= chunk[cursor] << (
                        self._frame_length_bytes_read * 8
                    )
                    cursor += 1
                    self._frame_length_bytes_read += 1

                else:
                    take = min(self._frame_length - len(self._frame_buf), n - cursor)
                    self._frame_buf += chunk[cursor : cursor + take]
                    cursor += take
                    if len(self._frame_buf) == self._frame_length:
                        events.append(FrameReady(self._take_frame()))
        except FrameProtocolError as e:
            e.decoded = events
            raise

        return events

    def _take_frame(self) -> bytes:
        body = bytes(self._frame_buf)
        if body[:2] != JPEG_SOI:
            raise FrameProtocolError(
                f"Frame body does not start with JPEG header "
                f"(length={len(body)}, head={body[:4].hex()})"
            )
        self._frame_buf = bytearray()
        self._frame_length = 0
        self._frame_length_bytes_read = 0
        return body

    async def drain(
        self, stream: ByteStream, chunk_size: int = READ_CHUNK_SIZE
    ) -> AsyncIterator[DecoderEvent]:
        """ストリームを読み切るまでイベントを生成する.

        例外は外に出さず、読み取り失敗は StreamError(fatal=False)、
        プロトコル破損は StreamError(fatal=True) として通知して終了する。
        end-of-data ではイベントなしで終了する。

        Yields:
            BannerReady / FrameReady / StreamError
        """
        while True:
            try:
                chunk = await stream.read(chunk_size)
            except (OSError, asyncio.IncompleteReadError) as e:
                logger.warning("Read() returned an error: %s", e)
                yield StreamError(f"read failed: {e}")
                return

            if not chunk:
                logger.info("Capture stream reached end of data")
                return

            try:
                events = self.feed(chunk)
            except FrameProtocolError as e:
                logger.error("Capture stream corrupted: %s", e)
                for event in e.decoded:
                    yield event
                yield StreamError(str(e), fatal=True)
                return

            for event in events:
                yield event
