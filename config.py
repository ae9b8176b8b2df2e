"""
Configuration management for the farm bot.

Handles loading, saving, and validation of bot configuration from bot_config.json.
"""

import json
import os
from copy import deepcopy
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

from utils.constants import CLIENT_OS, CLIENT_VERSION, CONFIG_FILE, PLATFORMS, SERVER_URL


class ConfigError(ValueError):
    """Raised when a configuration value cannot be accepted."""
    pass


# Lower clamps keep patrol loops from tripping server rate limits
MIN_FARM_INTERVAL = 1
MIN_FRIEND_INTERVAL = 1
MIN_TASK_INTERVAL = 30
MIN_SELL_INTERVAL = 10
MIN_HEARTBEAT_INTERVAL = 10


@dataclass
class FarmConfig:
    """Self-farm patrol configuration"""
    interval_seconds: int
    force_lowest_level_crop: bool
    fertilize: bool
    fertilize_min_grow_seconds: int  # crops growing faster than this are not fertilized
    auto_unlock_lands: bool
    auto_upgrade_lands: bool


@dataclass
class FriendConfig:
    """Friend-farm patrol configuration"""
    interval_seconds: int
    help_only_with_exp: bool
    enable_put_bad_things: bool  # adversarial: put weeds/insects on friends' lands
    steal_enabled: bool
    invite_delay_seconds: float


@dataclass
class TaskConfig:
    """Task reward configuration"""
    enabled: bool
    interval_seconds: int
    share_rewards: bool


@dataclass
class WarehouseConfig:
    """Warehouse auto-sell configuration"""
    enabled: bool
    initial_delay_seconds: int
    sell_interval_seconds: int
    min_keep: int


@dataclass
class ReconnectionConfig:
    """Reconnection configuration"""
    max_retries: int
    base_delay: int
    max_delay: int


@dataclass
class BotConfig:
    """Complete bot configuration"""
    platform: str
    os: str
    client_version: str
    server_url: str
    heartbeat_interval: int
    request_timeout: float
    farm: FarmConfig
    friend: FriendConfig
    task: TaskConfig
    warehouse: WarehouseConfig
    reconnection: ReconnectionConfig
    message_log: bool


def get_default_config() -> Dict[str, Any]:
    """Return a fresh copy of the default configuration."""
    return {
        "platform": "qq",
        "os": CLIENT_OS,
        "client_version": CLIENT_VERSION,
        "server_url": SERVER_URL,
        "heartbeat_interval": 25,
        "request_timeout": 10,
        "message_log": False,
        "farm": {
            "interval_seconds": 10,
            "force_lowest_level_crop": False,
            "fertilize": True,
            "fertilize_min_grow_seconds": 300,
            "auto_unlock_lands": False,
            "auto_upgrade_lands": False,
        },
        "friend": {
            "interval_seconds": 10,
            "help_only_with_exp": True,
            "enable_put_bad_things": False,
            "steal_enabled": True,
            "invite_delay_seconds": 2,
        },
        "task": {
            "enabled": True,
            "interval_seconds": 300,
            "share_rewards": True,
        },
        "warehouse": {
            "enabled": True,
            "initial_delay_seconds": 5,
            "sell_interval_seconds": 60,
            "min_keep": 0,
        },
        "reconnection": {
            "max_retries": 5,
            "base_delay": 5,
            "max_delay": 60,
        },
    }


def _as_int(value, default: int, minimum: int, maximum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        value = default
    value = int(value)
    if maximum is not None:
        value = min(value, maximum)
    return max(minimum, value)


def _as_float(value, default: float, minimum: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        value = default
    return max(minimum, float(value))


def _as_bool(value, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def normalize_config(raw_config) -> Tuple[Dict[str, Any], bool]:
    """Fill in missing keys and clamp values.

    Returns:
        Tuple of (normalized config dict, dirty flag). The dirty flag is set when
        the normalized dict differs from the input and should be written back.

    Raises:
        ConfigError: If the platform is not one of the supported platforms.
    """
    defaults = get_default_config()
    if not isinstance(raw_config, dict):
        return defaults, True

    normalized = deepcopy(defaults)

    platform = raw_config.get("platform", defaults["platform"])
    if platform not in PLATFORMS:
        raise ConfigError(f"platform must be one of {', '.join(PLATFORMS)}, got {platform!r}")
    normalized["platform"] = platform

    for key in ("os", "client_version", "server_url"):
        value = raw_config.get(key)
        if isinstance(value, str) and value.strip():
            normalized[key] = value.strip()

    normalized["heartbeat_interval"] = _as_int(
        raw_config.get("heartbeat_interval"), defaults["heartbeat_interval"], MIN_HEARTBEAT_INTERVAL
    )
    normalized["request_timeout"] = _as_float(
        raw_config.get("request_timeout"), defaults["request_timeout"], 1
    )
    normalized["message_log"] = _as_bool(raw_config.get("message_log"), False)

    # Farm
    farm_raw = raw_config.get("farm") if isinstance(raw_config.get("farm"), dict) else {}
    farm = normalized["farm"]
    farm["interval_seconds"] = _as_int(
        farm_raw.get("interval_seconds"), farm["interval_seconds"], MIN_FARM_INTERVAL
    )
    for key in ("force_lowest_level_crop", "fertilize", "auto_unlock_lands", "auto_upgrade_lands"):
        farm[key] = _as_bool(farm_raw.get(key), farm[key])
    farm["fertilize_min_grow_seconds"] = _as_int(
        farm_raw.get("fertilize_min_grow_seconds"), farm["fertilize_min_grow_seconds"], 0
    )

    # Friend
    friend_raw = raw_config.get("friend") if isinstance(raw_config.get("friend"), dict) else {}
    friend = normalized["friend"]
    friend["interval_seconds"] = _as_int(
        friend_raw.get("interval_seconds"), friend["interval_seconds"], MIN_FRIEND_INTERVAL
    )
    for key in ("help_only_with_exp", "enable_put_bad_things", "steal_enabled"):
        friend[key] = _as_bool(friend_raw.get(key), friend[key])
    friend["invite_delay_seconds"] = _as_float(
        friend_raw.get("invite_delay_seconds"), friend["invite_delay_seconds"], 0
    )

    # Task
    task_raw = raw_config.get("task") if isinstance(raw_config.get("task"), dict) else {}
    task = normalized["task"]
    task["enabled"] = _as_bool(task_raw.get("enabled"), task["enabled"])
    task["share_rewards"] = _as_bool(task_raw.get("share_rewards"), task["share_rewards"])
    task["interval_seconds"] = _as_int(
        task_raw.get("interval_seconds"), task["interval_seconds"], MIN_TASK_INTERVAL
    )

    # Warehouse
    warehouse_raw = raw_config.get("warehouse") if isinstance(raw_config.get("warehouse"), dict) else {}
    warehouse = normalized["warehouse"]
    warehouse["enabled"] = _as_bool(warehouse_raw.get("enabled"), warehouse["enabled"])
    warehouse["initial_delay_seconds"] = _as_int(
        warehouse_raw.get("initial_delay_seconds"), warehouse["initial_delay_seconds"], 0
    )
    warehouse["sell_interval_seconds"] = _as_int(
        warehouse_raw.get("sell_interval_seconds"), warehouse["sell_interval_seconds"], MIN_SELL_INTERVAL
    )
    warehouse["min_keep"] = _as_int(warehouse_raw.get("min_keep"), warehouse["min_keep"], 0)

    # Reconnection
    reconnection_raw = raw_config.get("reconnection") if isinstance(raw_config.get("reconnection"), dict) else {}
    reconnection = normalized["reconnection"]
    reconnection["max_retries"] = _as_int(reconnection_raw.get("max_retries"), 5, 0, 100)  # 0-100 retries
    reconnection["base_delay"] = _as_int(reconnection_raw.get("base_delay"), 5, 1, 60)  # 1-60 seconds
    reconnection["max_delay"] = _as_int(
        reconnection_raw.get("max_delay"), 60, reconnection["base_delay"], 300
    )  # base_delay to 5 minutes

    return normalized, normalized != raw_config


def build_config(normalized: Dict[str, Any]) -> BotConfig:
    """Build structured config objects from a normalized config dict."""
    return BotConfig(
        platform=normalized["platform"],
        os=normalized["os"],
        client_version=normalized["client_version"],
        server_url=normalized["server_url"],
        heartbeat_interval=normalized["heartbeat_interval"],
        request_timeout=normalized["request_timeout"],
        farm=FarmConfig(**normalized["farm"]),
        friend=FriendConfig(**normalized["friend"]),
        task=TaskConfig(**normalized["task"]),
        warehouse=WarehouseConfig(**normalized["warehouse"]),
        reconnection=ReconnectionConfig(**normalized["reconnection"]),
        message_log=normalized["message_log"],
    )


def load_config(path: str = CONFIG_FILE) -> BotConfig:
    """Load bot configuration from file.

    A missing or unreadable file falls back to defaults; the normalized
    config is written back when anything had to be filled in or clamped.

    Returns:
        BotConfig object with all configuration loaded and validated.

    Raises:
        ConfigError: If a value cannot be accepted (e.g., unknown platform).
    """
    config = {}
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Warning: Could not read {path}, using defaults: {e}")
            config = {}

    normalized, config_dirty = normalize_config(config)

    farm = normalized["farm"]
    friend = normalized["friend"]
    print(f"Loaded config: platform={normalized['platform']}, heartbeat={normalized['heartbeat_interval']}s")
    print(f"  Farm patrol every {farm['interval_seconds']}s "
          f"(force_lowest_level_crop={farm['force_lowest_level_crop']})")
    print(f"  Friend patrol every {friend['interval_seconds']}s "
          f"(help_only_with_exp={friend['help_only_with_exp']}, "
          f"enable_put_bad_things={friend['enable_put_bad_things']})")
    print(f"  Reconnection: max_retries={normalized['reconnection']['max_retries']}, "
          f"base_delay={normalized['reconnection']['base_delay']}s, "
          f"max_delay={normalized['reconnection']['max_delay']}s")

    # Save if modified
    if config_dirty:
        save_config(normalized, path)

    return build_config(normalized)


def save_config(config: Dict[str, Any], path: str = CONFIG_FILE):
    """Persist a config dict; failures are reported and otherwise ignored."""
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
    except OSError as e:
        print(f"Warning: Failed to save config: {e}")


# start() overrides -> (section, key) in the config dict
PLATFORM_OPTION_KEYS = {
    "platform": (None, "platform"),
    "interval": ("farm", "interval_seconds"),
    "friend_interval": ("friend", "interval_seconds"),
    "force_lowest_level_crop": ("farm", "force_lowest_level_crop"),
    "help_only_with_exp": ("friend", "help_only_with_exp"),
    "enable_put_bad_things": ("friend", "enable_put_bad_things"),
    "steal_enabled": ("friend", "steal_enabled"),
}


def apply_platform_options(config: BotConfig, options: Optional[Dict[str, Any]]) -> BotConfig:
    """Return a copy of config with start() overrides applied through the same clamps.

    Raises:
        ConfigError: On an unknown option name or an invalid platform.
    """
    if not options:
        return config

    raw = asdict(config)
    for name, value in options.items():
        if name not in PLATFORM_OPTION_KEYS:
            raise ConfigError(f"unknown option: {name}")
        section, key = PLATFORM_OPTION_KEYS[name]
        if section is None:
            raw[key] = value
        else:
            raw[section][key] = value

    normalized, _ = normalize_config(raw)
    return build_config(normalized)
