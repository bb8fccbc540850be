"""ディスプレイ情報 (初期サイズ・ベースサイズ・回転) の取得."""

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass

from web_minicap_stream.config import RelayConfig
from web_minicap_stream.geometry import Size

logger = logging.getLogger(__name__)

_WM_SIZE_RE = re.compile(r"^(Physical|Override) size:\s*(\d+)x(\d+)\s*$", re.MULTILINE)


@dataclass(frozen=True)
class DisplayInfo:
    """ディスプレイのメタデータ.

    Attributes:
        initial_size: 物理ディスプレイサイズ (minicap の -P 左辺)
        base_size: 現在の論理ディスプレイサイズ (wm size override を反映)
        rotation: 現在の回転 (0/90/180/270)
    """

    initial_size: Size
    base_size: Size
    rotation: int = 0

    @classmethod
    def from_config(cls, config: RelayConfig) -> "DisplayInfo":
        initial = Size(config.display_width, config.display_height)
        if config.base_width and config.base_height:
            base = Size(config.base_width, config.base_height)
        else:
            base = initial
        return cls(initial_size=initial, base_size=base, rotation=config.rotation)


def parse_wm_size(output: str) -> tuple[Size | None, Size | None]:
    """`wm size` の出力をパースする.

    Returns:
        (physical, override) のタプル。見つからない項目は None。
    """
    found: dict[str, Size] = {}
    for kind, width, height in _WM_SIZE_RE.findall(output):
        found[kind] = Size(int(width), int(height))
    return found.get("Physical"), found.get("Override")


def query_display_info(config: RelayConfig) -> DisplayInfo:
    """ディスプレイ情報を取得する.

    config.query_display が True の場合は `wm size` を実行して問い合わせ、
    失敗時は設定値にフォールバックする。
    """
    fallback = DisplayInfo.from_config(config)
    if not config.query_display:
        return fallback

    cmd = [*shlex.split(config.wm_command), "size"]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.warning("Display query failed (%s), using configured size", e)
        return fallback

    if result.returncode != 0:
        logger.warning(
            "Display query exited with %d, using configured size", result.returncode
        )
        return fallback

    physical, override = parse_wm_size(result.stdout)
    if physical is None:
        logger.warning("Unexpected `wm size` output: %r", result.stdout)
        return fallback

    info = DisplayInfo(
        initial_size=physical,
        base_size=override or physical,
        rotation=config.rotation,
    )
    logger.info(
        "Display: initial=%s base=%s rotation=%d",
        info.initial_size,
        info.base_size,
        info.rotation,
    )
    return info
