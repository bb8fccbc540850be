"""キャプチャのジオメトリ (サイズ + 回転) と変更判定."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from web_minicap_stream.supervisor import CaptureSupervisor

logger = logging.getLogger(__name__)

ROTATIONS = (0, 90, 180, 270)


@dataclass(frozen=True)
class Size:
    """幅 x 高さ (px)."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid size {self.width}x{self.height}")

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class Geometry:
    """キャプチャセッションの目標ジオメトリ.

    width / height / rotation がすべて等しい場合のみ等価。
    """

    width: int
    height: int
    rotation: int = 0

    def __post_init__(self) -> None:
        # 幅・高さは Size で検証
        Size(self.width, self.height)
        if self.rotation not in ROTATIONS:
            raise ValueError(f"Invalid rotation {self.rotation}")

    @property
    def size(self) -> Size:
        return Size(self.width, self.height)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}/{self.rotation}"


class GeometryController:
    """サイズ変更・回転通知をマージし、必要な場合のみ minicap を再起動する.

    トリガーは2系統:
      - viewer からのリサイズ要求 (サイズのみ)
      - 外部からの回転通知 (回転のみ、サイズは維持)
    """

    def __init__(
        self,
        supervisor: CaptureSupervisor,
        *,
        base_size: Size,
        rotation: int = 0,
    ):
        if rotation not in ROTATIONS:
            raise ValueError(f"Invalid rotation {rotation}")
        self._supervisor = supervisor
        self._base_size = base_size
        # デバイスの現在の回転（viewer の切断ではクリアしない）
        self._rotation = rotation
        self._geometry: Geometry | None = None

    @property
    def geometry(self) -> Geometry | None:
        """現在追跡中のジオメトリ (未設定なら None)."""
        return self._geometry

    @property
    def rotation(self) -> int:
        return self._rotation

    def request(self, size: Size | None = None, rotation: int | None = None) -> bool:
        """新しいサイズ/回転を要求する.

        Args:
            size: 新しいサイズ (None なら現在値を維持)
            rotation: 新しい回転 (None なら現在値を維持)

        Returns:
            minicap の (再) 起動を要求した場合 True
        """
        current = self._geometry
        if size is None:
            size = current.size if current else self._base_size
        if rotation is None:
            rotation = current.rotation if current else self._rotation

        target = Geometry(size.width, size.height, rotation)
        if target == current:
            logger.debug("Current geometry stays active: %s", current)
            return False

        self._geometry = target
        logger.info("New geometry received: %s", target)
        self._supervisor.start_or_restart(target)
        return True

    def on_rotation(self, rotation: int) -> bool:
        """外部の回転通知."""
        if rotation not in ROTATIONS:
            raise ValueError(f"Invalid rotation {rotation}")
        logger.info("Device rotated, restarting minicap (angle: %d)", rotation)
        self._rotation = rotation
        return self.request(rotation=rotation)

    def reset(self) -> None:
        """viewer 切断時にジオメトリ追跡をクリアする."""
        self._geometry = None
