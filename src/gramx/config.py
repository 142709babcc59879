from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    history_page_size: int = 200
    max_body_chars: int = 4000
    bot_user_id: str | None = None
    completion_url: str | None = None
    completion_model: str = "gpt-4o-mini"
    completion_api_key: str | None = None
    log_level: str = "INFO"
    log_json: bool = True


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def _parse_optional_str(name: str) -> str | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _parse_log_level(name: str, default: str) -> str:
    raw = (_parse_optional_str(name) or default).upper()
    if raw not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ValueError(f"{name} must be a logging level name")
    return raw


def load_config_from_env() -> GatewayConfig:
    defaults = GatewayConfig()
    return GatewayConfig(
        host=_parse_optional_str("GRAMX_HOST") or defaults.host,
        port=_parse_positive_int("GRAMX_PORT", defaults.port),
        db_path=_parse_optional_str("GRAMX_DB_PATH"),
        ping_interval_s=_parse_positive_int("GRAMX_PING_INTERVAL_S", defaults.ping_interval_s),
        ping_miss_limit=_parse_non_negative_int("GRAMX_PING_MISS_LIMIT", defaults.ping_miss_limit),
        max_msg_size=_parse_positive_int("GRAMX_MAX_MSG_SIZE", defaults.max_msg_size),
        history_page_size=_parse_positive_int("GRAMX_HISTORY_PAGE_SIZE", defaults.history_page_size),
        max_body_chars=_parse_positive_int("GRAMX_MAX_BODY_CHARS", defaults.max_body_chars),
        bot_user_id=_parse_optional_str("GRAMX_BOT_USER_ID"),
        completion_url=_parse_optional_str("GRAMX_COMPLETION_URL"),
        completion_model=_parse_optional_str("GRAMX_COMPLETION_MODEL") or defaults.completion_model,
        completion_api_key=_parse_optional_str("GRAMX_COMPLETION_API_KEY"),
        log_level=_parse_log_level("GRAMX_LOG_LEVEL", defaults.log_level),
        log_json=_parse_bool01("GRAMX_LOG_JSON", defaults.log_json),
    )
