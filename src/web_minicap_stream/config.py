"""リレー設定."""

import os
from collections.abc import Mapping
from dataclasses import dataclass


def parse_size(value: str) -> tuple[int, int]:
    """"1080x1920" 形式のサイズ文字列をパースする.

    Raises:
        ValueError: 形式が不正、または 0 以下の場合
    """
    width, sep, height = value.strip().lower().partition("x")
    if not sep or not width.isdigit() or not height.isdigit():
        raise ValueError(f"Invalid size {value!r}, expected WIDTHxHEIGHT")
    w, h = int(width), int(height)
    if w <= 0 or h <= 0:
        raise ValueError(f"Invalid size {value!r}, dimensions must be positive")
    return w, h


@dataclass
class RelayConfig:
    """minicap リレー設定.

    Attributes:
        minicap_path: minicap 実行ファイルのパス
        socket_name: minicap が listen する abstract socket 名
        display_width: 初期ディスプレイ幅 (px, minicap の -P 左辺)
        display_height: 初期ディスプレイ高さ (px)
        base_width: ベースディスプレイ幅 (None の場合は display_width)
        base_height: ベースディスプレイ高さ (None の場合は display_height)
        rotation: 起動時のディスプレイ回転 (0/90/180/270)
        query_display: True なら `wm size` でサイズを問い合わせる
        wm_command: `wm` コマンド (例: "adb shell wm")
        connect_attempts: minicap socket への接続試行回数
        connect_interval: 接続リトライ間隔 (秒)
        stop_timeout: SIGTERM 後 SIGKILL までの猶予 (秒)
        queue_size: viewer ごとの送信キューサイズ
    """

    minicap_path: str = "minicap"
    socket_name: str = "minicap"
    display_width: int = 1080
    display_height: int = 1920
    base_width: int | None = None
    base_height: int | None = None
    rotation: int = 0
    query_display: bool = False
    wm_command: str = "wm"
    connect_attempts: int = 20
    connect_interval: float = 0.1
    stop_timeout: float = 5.0
    queue_size: int = 200

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RelayConfig":
        """環境変数から設定を読み込む.

        Raises:
            ValueError: 値の形式が不正な場合
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        display_width, display_height = parse_size(
            env.get("DISPLAY_SIZE", f"{defaults.display_width}x{defaults.display_height}")
        )
        base_width = base_height = None
        if env.get("BASE_DISPLAY_SIZE"):
            base_width, base_height = parse_size(env["BASE_DISPLAY_SIZE"])

        rotation = int(env.get("DISPLAY_ROTATION", defaults.rotation))
        if rotation not in (0, 90, 180, 270):
            raise ValueError(f"Invalid DISPLAY_ROTATION {rotation}")

        return cls(
            minicap_path=env.get("MINICAP_PATH", defaults.minicap_path),
            socket_name=env.get("MINICAP_SOCKET", defaults.socket_name),
            display_width=display_width,
            display_height=display_height,
            base_width=base_width,
            base_height=base_height,
            rotation=rotation,
            query_display=env.get("DISPLAY_QUERY", "0") == "1",
            wm_command=env.get("WM_COMMAND", defaults.wm_command),
            connect_attempts=int(
                env.get("MINICAP_CONNECT_ATTEMPTS", defaults.connect_attempts)
            ),
            connect_interval=float(
                env.get("MINICAP_CONNECT_INTERVAL", defaults.connect_interval)
            ),
            stop_timeout=float(env.get("MINICAP_STOP_TIMEOUT", defaults.stop_timeout)),
            queue_size=int(env.get("VIEWER_QUEUE_SIZE", defaults.queue_size)),
        )
