"""ViewerBridge / viewer コマンドのテスト."""

import asyncio
import json

import pytest

from conftest import FakeStream, FakeWebSocket, make_banner, make_frame, make_jpeg, settle
from web_minicap_stream.bridge import (
    CLOSE_STREAM_CORRUPTED,
    Resize,
    StreamOff,
    StreamOn,
    ViewerBridge,
    info_message,
    parse_command,
)
from web_minicap_stream.geometry import Geometry, GeometryController, Size
from web_minicap_stream.minicap_decoder import Banner, BannerReady, FrameReady
from web_minicap_stream.supervisor import CaptureState

BASE = Size(1080, 1920)


@pytest.fixture
def controller(supervisor):
    return GeometryController(supervisor, base_size=BASE)


async def _drain_queue(bridge: ViewerBridge) -> list:
    """close されるまでの送信メッセージを取り出す."""
    bridge.close()
    return [message async for message in bridge.messages()]


# ============================================================
# コマンドパース
# ============================================================


@pytest.mark.parametrize(
    "message, expected",
    [
        ("on", StreamOn()),
        ("off", StreamOff()),
        ("size 540x960", Resize(540, 960)),
        ("size 1x1", Resize(1, 1)),
        ("size 540x", None),
        ("size x960", None),
        ("size 540x960 ", None),
        (" on", None),
        ("ON", None),
        ("size 540X960", None),
        ("size -1x960", None),
        ("size 0x960", None),
        ("size ５４０x960", None),
        ("size  540x960", None),
        ("resize 540x960", None),
        ("", None),
    ],
)
def test_parse_command(message, expected):
    assert parse_command(message) == expected


def test_info_message():
    banner = Banner(real_width=1080, real_height=1920, virtual_width=540, virtual_height=960)
    assert json.loads(info_message(banner)) == {
        "event": "info",
        "data": {
            "realWidth": 1080,
            "realHeight": 1920,
            "virtualWidth": 540,
            "virtualHeight": 960,
        },
    }


# ============================================================
# 接続・切断
# ============================================================


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_while_streaming_sends_banner_first(
        self, supervisor, process_factory, controller
    ):
        controller.request(size=Size(540, 960))
        stream = FakeStream(make_banner(pid=5))
        process_factory.last.emit_started(stream)
        await settle()
        assert supervisor.is_streaming

        bridge = ViewerBridge(supervisor, controller)
        bridge.connect()
        body = make_jpeg(32)
        stream.push(make_frame(body))
        await settle()

        messages = await _drain_queue(bridge)
        assert json.loads(messages[0])["event"] == "info"
        assert json.loads(messages[0])["data"]["virtualWidth"] == 540
        assert messages[1] == body

    @pytest.mark.asyncio
    async def test_connect_while_idle_sends_nothing(self, supervisor, controller):
        bridge = ViewerBridge(supervisor, controller)
        bridge.connect()
        assert await _drain_queue(bridge) == []

    @pytest.mark.asyncio
    async def test_disconnect_clears_geometry_but_keeps_capture(
        self, supervisor, process_factory, controller
    ):
        bridge = ViewerBridge(supervisor, controller)
        bridge.connect()
        bridge.handle_message("size 540x960")
        assert controller.geometry == Geometry(540, 960, 0)

        bridge.disconnect()
        assert not bridge.connected
        assert controller.geometry is None
        assert process_factory.last.stop_calls == 0
        assert supervisor.state is CaptureState.STARTING

    @pytest.mark.asyncio
    async def test_reconnect_after_stream_loss_restarts_capture(
        self, supervisor, process_factory, controller
    ):
        first = ViewerBridge(supervisor, controller)
        first.connect()
        first.handle_message("size 540x960")
        stream = FakeStream(make_banner())
        process_factory.last.emit_started(stream)
        await settle()
        stream.push(OSError("broken pipe"))
        await settle()
        first.disconnect()

        second = ViewerBridge(supervisor, controller)
        second.connect()
        # 途絶えたセッションの banner は送らない
        assert second._queue.qsize() == 0

        second.handle_message("size 540x960")
        assert process_factory.processes[0].stop_calls == 1
        process_factory.processes[0].emit_stopping()
        assert len(process_factory.processes) == 2
        assert process_factory.last.start_calls[0][1] == Size(540, 960)

    @pytest.mark.asyncio
    async def test_superseded_viewer_does_not_reset_geometry(
        self, supervisor, controller
    ):
        first = ViewerBridge(supervisor, controller)
        first.connect()
        first.handle_message("size 540x960")

        second = ViewerBridge(supervisor, controller)
        second.connect()
        first.disconnect()

        assert controller.geometry == Geometry(540, 960, 0)
        second.disconnect()
        assert controller.geometry is None


# ============================================================
# メッセージ
# ============================================================


class TestMessages:
    @pytest.mark.asyncio
    async def test_size_message_starts_capture(
        self, supervisor, process_factory, controller
    ):
        bridge = ViewerBridge(supervisor, controller)
        bridge.connect()
        bridge.handle_message("size 720x1280")

        assert process_factory.last.start_calls[0][1] == Size(720, 1280)

    @pytest.mark.asyncio
    async def test_unrecognized_and_toggle_messages_are_ignored(
        self, supervisor, process_factory, controller
    ):
        bridge = ViewerBridge(supervisor, controller)
        bridge.connect()
        for message in ("on", "off", "hello", "size big"):
            bridge.handle_message(message)

        assert process_factory.processes == []
        assert await _drain_queue(bridge) == []

    @pytest.mark.asyncio
    async def test_fatal_error_requests_close(
        self, supervisor, process_factory, controller
    ):
        bridge = ViewerBridge(supervisor, controller)
        bridge.connect()
        bridge.handle_message("size 540x960")
        stream = FakeStream(make_banner() + make_frame(b"corrupt!"))
        process_factory.last.emit_started(stream)
        await settle()

        messages = [message async for message in bridge.messages()]
        assert len(messages) == 1
        assert bridge.close_request == (CLOSE_STREAM_CORRUPTED, "capture stream corrupted")


class TestQueue:
    @pytest.mark.asyncio
    async def test_slow_viewer_drops_frames(self, supervisor, controller):
        bridge = ViewerBridge(supervisor, controller, queue_size=3)
        for i in range(5):
            bridge.on_event(FrameReady(make_jpeg(4, seed=i)))

        assert bridge.dropped_frames == 2

    @pytest.mark.asyncio
    async def test_banner_is_never_dropped(self, supervisor, controller):
        bridge = ViewerBridge(supervisor, controller, queue_size=2)
        frames = [make_jpeg(4, seed=i) for i in range(2)]
        for body in frames:
            bridge.on_event(FrameReady(body))
        bridge.on_event(BannerReady(Banner(virtual_width=1)))

        # 最も古いフレームを捨てて banner を積む
        assert bridge.dropped_frames == 1
        queued = [bridge._queue.get_nowait() for _ in range(bridge._queue.qsize())]
        assert queued[0] == frames[1]
        assert json.loads(queued[1])["data"]["virtualWidth"] == 1


# ============================================================
# serve (WebSocket)
# ============================================================


class TestServe:
    @pytest.mark.asyncio
    async def test_serve_relays_frames(self, supervisor, process_factory, controller):
        ws = FakeWebSocket()
        bridge = ViewerBridge(supervisor, controller)
        task = asyncio.create_task(bridge.serve(ws))

        ws.client_send("size 540x960")
        ws.client_send_bytes(b"ignored")
        await settle()
        assert process_factory.last.start_calls[0][1] == Size(540, 960)

        body = make_jpeg(64)
        stream = FakeStream(make_banner() + make_frame(body))
        process_factory.last.emit_started(stream)
        await settle()

        assert json.loads(ws.sent[0])["event"] == "info"
        assert ws.sent[1] == body

        ws.client_disconnect()
        await asyncio.wait_for(task, timeout=1.0)

        assert not bridge.connected
        assert ws.closed is None
        assert supervisor.is_streaming
        assert process_factory.last.stop_calls == 0

    @pytest.mark.asyncio
    async def test_serve_closes_socket_on_close_request(
        self, supervisor, controller
    ):
        ws = FakeWebSocket()
        bridge = ViewerBridge(supervisor, controller)
        task = asyncio.create_task(bridge.serve(ws))
        await settle()

        bridge.close(4000, "superseded by another viewer")
        await asyncio.wait_for(task, timeout=1.0)

        assert ws.closed == (4000, "superseded by another viewer")
        assert not bridge.connected
