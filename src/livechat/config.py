from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

ENV_PREFIX = "LIVECHAT_"


def _env_float(environ: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    if raw.strip().lower() == "none":
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number") from exc


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ChatConfig:
    base_url: str = "http://127.0.0.1:5000"
    ws_path: str = "/v1/ws"
    typing_idle_s: float = 3.0
    heartbeat_s: Optional[float] = 20.0
    reconnect: bool = True
    reconnect_initial_s: float = 0.5
    reconnect_max_s: float = 5.0
    request_timeout_s: Optional[float] = None

    @property
    def ws_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.ws_path}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ChatConfig":
        """Build a config from ``LIVECHAT_*`` variables, keeping defaults for unset ones."""

        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            base_url=env.get(ENV_PREFIX + "BASE_URL", defaults.base_url),
            ws_path=env.get(ENV_PREFIX + "WS_PATH", defaults.ws_path),
            typing_idle_s=_env_float(env, "TYPING_IDLE_S", defaults.typing_idle_s) or defaults.typing_idle_s,
            heartbeat_s=_env_float(env, "HEARTBEAT_S", defaults.heartbeat_s),
            reconnect=_env_bool(env, "RECONNECT", defaults.reconnect),
            reconnect_initial_s=_env_float(env, "RECONNECT_INITIAL_S", defaults.reconnect_initial_s)
            or defaults.reconnect_initial_s,
            reconnect_max_s=_env_float(env, "RECONNECT_MAX_S", defaults.reconnect_max_s) or defaults.reconnect_max_s,
            request_timeout_s=_env_float(env, "REQUEST_TIMEOUT_S", defaults.request_timeout_s),
        )


@dataclass
class DeskConfig:
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    outbound_queue_size: int = 1000
