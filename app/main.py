"""FastAPI application for the minicap relay server.

WebSocket エンドポイントで minicap の JPEG フレームを viewer に中継し、
REST API でキャプチャ状態の確認・回転通知・停止を行う。
viewer は常に1つ (最後に接続した viewer が有効)。
"""

import logging
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from web_minicap_stream.bridge import CLOSE_SUPERSEDED, ViewerBridge
from web_minicap_stream.config import RelayConfig
from web_minicap_stream.display import DisplayInfo, query_display_info
from web_minicap_stream.geometry import GeometryController
from web_minicap_stream.minicap_process import MinicapProcess
from web_minicap_stream.supervisor import CaptureSupervisor

logger = logging.getLogger(__name__)

config = RelayConfig.from_env()
display_info = DisplayInfo.from_config(config)

supervisor = CaptureSupervisor(
    display_info.initial_size,
    process_factory=lambda: MinicapProcess(config),
)
controller = GeometryController(
    supervisor,
    base_size=display_info.base_size,
    rotation=display_info.rotation,
)

# 現在ストリームを受け取っている viewer
active_bridge: ViewerBridge | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理."""
    global controller

    if config.query_display:
        info = query_display_info(config)
        supervisor.set_initial_size(info.initial_size)
        controller = GeometryController(
            supervisor, base_size=info.base_size, rotation=info.rotation
        )

    logger.info("web-minicap-stream server starting")
    yield
    logger.info("web-minicap-stream server shutting down")
    if active_bridge is not None:
        active_bridge.close(1001, "server shutting down")
    await supervisor.shutdown(timeout=config.stop_timeout * 2)


app = FastAPI(
    title="web-minicap-stream",
    description="minicap screen capture relay via WebSocket",
    version="0.1.0",
    lifespan=lifespan,
)


# ============================================================
# ヘルスチェック
# ============================================================


@app.get("/api/healthz")
async def healthz() -> dict:
    """ヘルスチェック."""
    return {
        "status": "healthy",
        "capture": supervisor.state.value,
        "viewer_connected": active_bridge is not None,
    }


# ============================================================
# REST API: キャプチャ制御
# ============================================================


class RotationRequest(BaseModel):
    """回転通知."""

    rotation: Literal[0, 90, 180, 270]


@app.get("/api/capture")
async def get_capture() -> dict:
    """キャプチャセッション情報取得."""
    return {
        **supervisor.snapshot(),
        "tracked_geometry": (
            str(controller.geometry) if controller.geometry else None
        ),
        "device_rotation": controller.rotation,
    }


@app.post("/api/rotation")
async def rotate(req: RotationRequest) -> dict:
    """デバイス回転通知: 必要なら minicap を再起動."""
    restarting = controller.on_rotation(req.rotation)
    geometry = controller.geometry
    return {
        "restarting": restarting,
        "geometry": str(geometry) if geometry else None,
    }


@app.post("/api/capture/stop")
async def stop_capture() -> dict:
    """minicap 停止."""
    supervisor.stop()
    controller.reset()
    return {"state": supervisor.state.value}


# ============================================================
# WebSocket: minicap フレーム中継
# ============================================================


@app.websocket("/api/ws/display")
async def ws_display(websocket: WebSocket):
    """JPEG フレームを WebSocket binary フレームで配信.

    接続時、ストリーミング中なら現在の banner (info) を先送り。
    """
    global active_bridge

    await websocket.accept()
    logger.info("WebSocket client connected")

    bridge = ViewerBridge(supervisor, controller, queue_size=config.queue_size)
    previous, active_bridge = active_bridge, bridge
    if previous is not None:
        previous.close(CLOSE_SUPERSEDED, "superseded by another viewer")

    try:
        await bridge.serve(websocket)
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    except Exception:
        logger.exception("WebSocket error")
    finally:
        if active_bridge is bridge:
            active_bridge = None
        logger.info("WebSocket client ended")
