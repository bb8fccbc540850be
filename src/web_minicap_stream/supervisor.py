"""minicap キャプチャセッションの管理.

常に最大1つの CaptureSession を保持し、ジオメトリ変更要求に応じて
minicap を起動・停止・再起動する。状態遷移:

    IDLE ──start_or_restart──▶ STARTING ──on_started──▶ STREAMING
      ▲                           │                        │
      │                           └──── stop / 変更要求 ────┤
      │                                                    ▼
      └──────────── on_stopping (再起動なし) ─────────── STOPPING
                    on_stopping (再起動あり) → STARTING

再起動は旧プロセスの on_stopping を受け取ってから行う。停止中に届いた
変更要求は pending ジオメトリを上書きするだけで、再起動は1回に集約される。
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from web_minicap_stream.geometry import Geometry, Size
from web_minicap_stream.minicap_decoder import (
    Banner,
    BannerReady,
    DecoderEvent,
    FrameDecoder,
    StreamError,
)
from web_minicap_stream.minicap_process import CaptureProcess, CaptureStream

logger = logging.getLogger(__name__)

EventListener = Callable[[DecoderEvent], None]


class CaptureState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"


@dataclass(eq=False)
class CaptureSession:
    """1つの minicap プロセスとそのストリーム."""

    process: CaptureProcess
    initial_size: Size
    geometry: Geometry
    state: CaptureState = CaptureState.STARTING
    stream: CaptureStream | None = None
    decoder: FrameDecoder = field(default_factory=FrameDecoder)
    banner: Banner | None = None
    # プロセス終了前にストリームが途絶えた (読み取り失敗・終端・配信エラー)
    stream_lost: bool = False
    unsubscribe: Callable[[], None] | None = None
    pump_task: asyncio.Task | None = None


class _SessionListener:
    """プロセスの通知を発行元セッションに紐付けて supervisor へ転送する."""

    def __init__(self, supervisor: CaptureSupervisor, session: CaptureSession):
        self._supervisor = supervisor
        self._session = session

    def on_started(self, stream: CaptureStream) -> None:
        self._supervisor._on_started(self._session, stream)

    def on_stopping(self) -> None:
        self._supervisor._on_stopping(self._session)


class CaptureSupervisor:
    """minicap プロセスのライフサイクル管理.

    デコード済みイベントは attach() した1つの listener にのみ配信する
    (最後に接続した viewer が有効)。
    """

    def __init__(
        self,
        initial_size: Size,
        process_factory: Callable[[], CaptureProcess],
    ):
        # 初回起動時に固定され、プロセスの寿命を通じて変わらない
        self._initial_size = initial_size
        self._process_factory = process_factory
        self._session: CaptureSession | None = None
        self._restart_pending = False
        self._pending_geometry: Geometry | None = None
        self._listener: EventListener | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def state(self) -> CaptureState:
        return self._session.state if self._session else CaptureState.IDLE

    @property
    def is_streaming(self) -> bool:
        """ストリームが生きている STREAMING セッションがあるか."""
        session = self._session
        return (
            session is not None
            and session.state is CaptureState.STREAMING
            and not session.stream_lost
        )

    @property
    def stream_lost(self) -> bool:
        return self._session.stream_lost if self._session else False

    @property
    def geometry(self) -> Geometry | None:
        return self._session.geometry if self._session else None

    @property
    def banner(self) -> Banner | None:
        """ストリーミング中のセッションの完成済み banner."""
        if self.is_streaming:
            return self._session.banner
        return None

    @property
    def initial_size(self) -> Size:
        return self._initial_size

    def set_initial_size(self, size: Size) -> None:
        """初期ディスプレイサイズを更新する.

        Raises:
            RuntimeError: セッションが存在する場合
        """
        if self._session is not None:
            raise RuntimeError("Cannot change initial size while minicap is running")
        self._initial_size = size

    @property
    def restart_pending(self) -> bool:
        return self._restart_pending

    @property
    def pending_geometry(self) -> Geometry | None:
        return self._pending_geometry if self._restart_pending else None

    def snapshot(self) -> dict[str, Any]:
        """API 向けの状態スナップショット."""
        geometry = self.geometry
        pending = self.pending_geometry
        banner = self.banner
        return {
            "state": self.state.value,
            "stream_lost": self.stream_lost,
            "geometry": asdict(geometry) if geometry else None,
            "restart_pending": self._restart_pending,
            "pending_geometry": asdict(pending) if pending else None,
            "banner": asdict(banner) if banner else None,
        }

    # ------------------------------------------------------------
    # イベント listener
    # ------------------------------------------------------------

    def attach(self, listener: EventListener) -> None:
        """デコードイベントの配信先を設定する (以前の listener は置き換え)."""
        if self._listener is not None and self._listener != listener:
            logger.info("Replacing active stream listener")
        self._listener = listener

    def detach(self, listener: EventListener) -> bool:
        """listener が現在の配信先なら解除して True を返す."""
        if self._listener is not None and self._listener == listener:
            self._listener = None
            return True
        return False

    def _dispatch(self, event: DecoderEvent) -> None:
        if self._listener is not None:
            self._listener(event)

    # ------------------------------------------------------------
    # ライフサイクル制御
    # ------------------------------------------------------------

    def start_or_restart(self, geometry: Geometry) -> None:
        """指定ジオメトリで minicap を起動、または再起動する.

        同じジオメトリで動作中のセッションがあれば何もしない。
        """
        session = self._session
        if session is None:
            self._start_session(geometry)
            return

        if session.state is CaptureState.STOPPING:
            # 停止中: 再起動先を最新の要求で上書き
            logger.info("Restart target updated while stopping: %s", geometry)
            self._pending_geometry = geometry
            self._restart_pending = True
            return

        if geometry == session.geometry and not session.stream_lost:
            logger.debug("minicap already running with geometry %s", geometry)
            return

        if session.stream_lost:
            logger.info("Restarting minicap after stream loss (%s)", geometry)
        else:
            logger.info("Restarting minicap: %s -> %s", session.geometry, geometry)
        self._pending_geometry = geometry
        self._restart_pending = True
        session.state = CaptureState.STOPPING
        session.process.stop()

    def stop(self) -> None:
        """minicap を停止する (pending の再起動も取り消す)."""
        self._restart_pending = False
        self._pending_geometry = None

        session = self._session
        if session is None or session.state is CaptureState.STOPPING:
            return

        logger.info("Stopping minicap session (%s)", session.geometry)
        session.state = CaptureState.STOPPING
        session.process.stop()

    async def shutdown(self, timeout: float = 10.0) -> None:
        """停止して IDLE になるまで待つ."""
        self.stop()
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("minicap did not report stopping within %.1fs", timeout)

    def _start_session(self, geometry: Geometry) -> None:
        process = self._process_factory()
        session = CaptureSession(
            process=process,
            initial_size=self._initial_size,
            geometry=geometry,
        )
        self._session = session
        self._restart_pending = False
        self._pending_geometry = None
        self._idle.clear()

        session.unsubscribe = process.subscribe(_SessionListener(self, session))
        logger.info("Starting minicap session (%s)", geometry)
        process.start(
            self._initial_size, geometry.size, geometry.rotation
        )

    def _on_started(self, session: CaptureSession, stream: CaptureStream) -> None:
        if session is not self._session:
            logger.debug("Ignoring started notification from a stale process")
            stream.close()
            return

        session.stream = stream
        if session.state is not CaptureState.STARTING:
            # 停止要求済み: on_stopping でストリームを閉じる
            return

        # 新しいストリームはパーサ状態を引き継がない
        session.decoder = FrameDecoder()
        session.banner = None
        session.state = CaptureState.STREAMING
        session.pump_task = asyncio.create_task(
            self._pump(session), name="minicap-pump"
        )
        logger.info("minicap session is now streaming (%s)", session.geometry)

    def _on_stopping(self, session: CaptureSession) -> None:
        if session is not self._session:
            return

        # このプロセスの通知はもう不要
        if session.unsubscribe is not None:
            session.unsubscribe()
            session.unsubscribe = None

        if session.pump_task is not None and not session.pump_task.done():
            session.pump_task.cancel()
        session.pump_task = None
        self._close_stream(session)

        self._session = None
        logger.info("minicap session stopped (%s)", session.geometry)

        if self._restart_pending and self._pending_geometry is not None:
            self._start_session(self._pending_geometry)
        else:
            self._restart_pending = False
            self._pending_geometry = None
            self._idle.set()

    def _close_stream(self, session: CaptureSession) -> None:
        if session.stream is not None:
            session.stream.close()
            session.stream = None

    async def _pump(self, session: CaptureSession) -> None:
        """minicap ストリーム → デコーダ → listener 配信ループ."""
        stream = session.stream
        if stream is None:
            return
        try:
            async for event in session.decoder.drain(stream):
                if isinstance(event, BannerReady):
                    session.banner = event.banner
                    logger.info("Banner received: %s", event.banner)

                self._dispatch(event)

                if isinstance(event, StreamError):
                    logger.warning(
                        "Stream error reading from minicap (fatal=%s): %s",
                        event.fatal,
                        event.reason,
                    )
                    if event.fatal and session is self._session:
                        self.stop()
        except asyncio.CancelledError:
            logger.debug("Capture pump cancelled")
            return
        except Exception:
            logger.exception("Capture pump error")
        # ストリーム終端/エラー: 配線を外し、セッションを dead として扱う
        # (自動リトライはしない。次のジオメトリ要求で再起動する)
        if session.stream is stream:
            self._close_stream(session)
        if session.state is CaptureState.STREAMING:
            session.stream_lost = True
            session.banner = None
            logger.warning("minicap stream lost (%s)", session.geometry)
        logger.info("Capture pump ended (%s)", session.geometry)
