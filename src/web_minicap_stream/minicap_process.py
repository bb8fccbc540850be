"""minicap プロセス管理.

minicap を asyncio subprocess として起動し、abstract UNIX socket に接続して
ストリームを取得する。ライフサイクルは listener に通知する:

    on_started(stream)  接続完了時に最大1回
    on_stopping()       プロセス終了時に必ず1回 (起動失敗・クラッシュを含む)
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable
from typing import Protocol

from web_minicap_stream.config import RelayConfig
from web_minicap_stream.geometry import Size

logger = logging.getLogger(__name__)


class CaptureStream(Protocol):
    async def read(self, n: int) -> bytes: ...

    def close(self) -> None: ...


class CaptureListener(Protocol):
    def on_started(self, stream: CaptureStream) -> None: ...

    def on_stopping(self) -> None: ...


class CaptureProcess(Protocol):
    def start(self, initial_size: Size, target_size: Size, rotation: int) -> None: ...

    def stop(self) -> None: ...

    def subscribe(self, listener: CaptureListener) -> Callable[[], None]: ...


class SocketCaptureStream:
    """minicap socket 接続 (StreamReader/StreamWriter のペア)."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    async def read(self, n: int) -> bytes:
        return await self._reader.read(n)

    def close(self) -> None:
        if not self._writer.is_closing():
            self._writer.close()


class MinicapProcess:
    """1回限りの minicap プロセス.

    Usage:
        process = MinicapProcess(config)
        unsubscribe = process.subscribe(listener)
        process.start(Size(1080, 1920), Size(540, 960), 0)
        ...
        process.stop()   # 即座に戻る。終了は listener.on_stopping() で通知
    """

    def __init__(self, config: RelayConfig):
        self._config = config
        self._process: asyncio.subprocess.Process | None = None
        self._task: asyncio.Task | None = None
        self._listeners: list[CaptureListener] = []
        self._stop_requested = False
        self._started_sent = False
        self._stopping_sent = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def subscribe(self, listener: CaptureListener) -> Callable[[], None]:
        """ライフサイクル通知を購読する. 戻り値を呼ぶと購読解除."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def build_command(
        self, initial_size: Size, target_size: Size, rotation: int
    ) -> list[str]:
        """minicap コマンドを構築する."""
        c = self._config
        projection = (
            f"{initial_size.width}x{initial_size.height}"
            f"@{target_size.width}x{target_size.height}/{rotation}"
        )
        return [c.minicap_path, "-n", c.socket_name, "-P", projection]

    def start(self, initial_size: Size, target_size: Size, rotation: int) -> None:
        """minicap を起動する (非同期. 完了は on_started で通知).

        Raises:
            RuntimeError: 既に起動済みの場合
        """
        if self._task is not None:
            raise RuntimeError("MinicapProcess is already started")

        cmd = self.build_command(initial_size, target_size, rotation)
        logger.info("Starting minicap: %s", " ".join(cmd))
        self._task = asyncio.create_task(self._run(cmd), name="minicap")

    def stop(self) -> None:
        """minicap を停止する. 即座に戻る."""
        if self._stop_requested:
            return
        self._stop_requested = True

        if self._task is None:
            # 起動前の停止
            self._emit_stopping()
            return

        if self._process is not None and self._process.returncode is None:
            asyncio.create_task(self._terminate(), name="minicap-terminate")
        # プロセス生成前なら _run が停止要求を検出する

    async def _run(self, cmd: list[str]) -> None:
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            logger.info("minicap started (PID=%d)", self._process.pid)
            asyncio.create_task(self._log_stderr())

            if self._stop_requested:
                await self._terminate()
                return

            stream = await self._connect()
            if stream is None:
                if not self._stop_requested:
                    await self._terminate()
            elif self._stop_requested:
                stream.close()
            else:
                self._emit_started(stream)

            returncode = await self._process.wait()
            logger.info(
                "minicap exited (PID=%d, returncode=%s)", self._process.pid, returncode
            )
        except Exception:
            logger.exception("minicap failed to run")
        finally:
            self._emit_stopping()

    async def _connect(self) -> SocketCaptureStream | None:
        """minicap socket へ接続する (listen 開始まで待つ)."""
        c = self._config
        address = c.socket_name if c.socket_name.startswith("/") else "\0" + c.socket_name

        for attempt in range(1, c.connect_attempts + 1):
            if self._stop_requested or self._process.returncode is not None:
                return None
            try:
                reader, writer = await asyncio.open_unix_connection(address)
            except OSError as e:
                logger.debug(
                    "minicap socket not ready (attempt %d/%d): %s",
                    attempt,
                    c.connect_attempts,
                    e,
                )
                await asyncio.sleep(c.connect_interval)
                continue
            logger.info("Connected to minicap socket @%s", c.socket_name)
            return SocketCaptureStream(reader, writer)

        logger.error(
            "Could not connect to minicap socket @%s after %d attempts",
            c.socket_name,
            c.connect_attempts,
        )
        return None

    async def _log_stderr(self) -> None:
        """minicap stderr をログに出力する."""
        if not self._process or not self._process.stderr:
            return
        try:
            async for line in self._process.stderr:
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    logger.debug("minicap: %s", text)
        except Exception:
            logger.debug("minicap stderr reader ended", exc_info=True)

    async def _terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return

        pid = process.pid
        logger.info("Stopping minicap (PID=%d)", pid)
        try:
            # SIGTERM で graceful shutdown を試みる
            process.send_signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self._config.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "minicap did not exit in %.1fs, sending SIGKILL (PID=%d)",
                    self._config.stop_timeout,
                    pid,
                )
                process.kill()
                await process.wait()
        except ProcessLookupError:
            logger.debug("minicap already exited (PID=%d)", pid)

    def _emit_started(self, stream: CaptureStream) -> None:
        if self._started_sent or self._stopping_sent:
            return
        self._started_sent = True
        for listener in list(self._listeners):
            listener.on_started(stream)

    def _emit_stopping(self) -> None:
        if self._stopping_sent:
            return
        self._stopping_sent = True
        for listener in list(self._listeners):
            listener.on_stopping()
