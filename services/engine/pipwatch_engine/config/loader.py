"""Configuration loader with JSON file and environment variable support."""

import json
import os
from pathlib import Path
from typing import Any

from .models import EngineConfig


def load_config(config_path: str | None = None) -> EngineConfig:
    """
    Load configuration from JSON file with environment variable overrides.

    Priority: env vars > config file > defaults

    Args:
        config_path: Path to JSON config file. If None, uses ENGINE_CONFIG_PATH env var
                     or defaults to 'config.json' in engine service root.

    Returns:
        Validated EngineConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        json.JSONDecodeError: If config file has invalid JSON
        pydantic.ValidationError: If config values are invalid
    """
    # Determine config file path
    if config_path is None:
        config_path = os.environ.get("ENGINE_CONFIG_PATH", "config.json")

    config_file = Path(config_path)
    if not config_file.is_absolute():
        # Resolve relative to engine service root
        engine_root = Path(__file__).parent.parent.parent
        config_file = engine_root / config_file

    # Load JSON config
    config_data: dict[str, Any] = {}
    if config_file.exists():
        with open(config_file) as f:
            config_data = json.load(f)
    else:
        raise FileNotFoundError(f"Config file not found: {config_file}")

    # Apply environment variable overrides
    # Format: PIPWATCH_SCHEDULER_TICK_INTERVAL_SECONDS, PIPWATCH_MONITOR_CONFIRMATION_COUNT, etc.
    if tick_interval := os.environ.get("PIPWATCH_SCHEDULER_TICK_INTERVAL_SECONDS"):
        config_data.setdefault("scheduler", {})["tick_interval_seconds"] = float(tick_interval)

    if repair_interval := os.environ.get("PIPWATCH_SCHEDULER_REPAIR_INTERVAL_SECONDS"):
        config_data.setdefault("scheduler", {})["repair_interval_seconds"] = float(repair_interval)

    if count := os.environ.get("PIPWATCH_MONITOR_CONFIRMATION_COUNT"):
        config_data.setdefault("monitor", {})["confirmation_count"] = int(count)

    if window := os.environ.get("PIPWATCH_MONITOR_CONFIRMATION_WINDOW_SECONDS"):
        config_data.setdefault("monitor", {})["confirmation_window_seconds"] = float(window)

    if factor := os.environ.get("PIPWATCH_MONITOR_TRAILING_STOP_FACTOR"):
        config_data.setdefault("monitor", {})["trailing_stop_factor"] = float(factor)

    if provider := os.environ.get("PIPWATCH_MARKET_DATA_PROVIDER"):
        config_data.setdefault("market_data", {})["provider"] = provider

    if telegram := os.environ.get("PIPWATCH_NOTIFICATIONS_TELEGRAM_ENABLED"):
        config_data.setdefault("notifications", {})["telegram_enabled"] = telegram.lower() == "true"

    # Validate and return
    return EngineConfig(**config_data)
