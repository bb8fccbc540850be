"""web-minicap-stream: minicap screen capture relay to WebSocket viewers."""

from web_minicap_stream.bridge import ViewerBridge, parse_command
from web_minicap_stream.config import RelayConfig
from web_minicap_stream.display import DisplayInfo, query_display_info
from web_minicap_stream.geometry import Geometry, GeometryController, Size
from web_minicap_stream.minicap_decoder import (
    Banner,
    BannerReady,
    FrameDecoder,
    FrameProtocolError,
    FrameReady,
    StreamError,
)
from web_minicap_stream.minicap_process import MinicapProcess
from web_minicap_stream.supervisor import CaptureState, CaptureSupervisor

__all__ = [
    "Banner",
    "BannerReady",
    "CaptureState",
    "CaptureSupervisor",
    "DisplayInfo",
    "FrameDecoder",
    "FrameProtocolError",
    "FrameReady",
    "Geometry",
    "GeometryController",
    "MinicapProcess",
    "RelayConfig",
    "Size",
    "StreamError",
    "ViewerBridge",
    "parse_command",
    "query_display_info",
]
