# Copyright (C) 2026 grodz
#
# This file is part of Encore.
#
# Encore is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Configuration management for Encore."""

import asyncio
import copy
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Top level:
#   database_url           - SQLAlchemy async URL (sqlite+aiosqlite, postgresql+asyncpg)
#   home_guild_id          - Guild whose session is restored on startup
#
# Lavalink (lavalink.*):
#   host, port, password   - Lavalink node address and auth
#   secure                 - Use https/wss
#   label                  - Node label in the pool
#
# Job worker (worker.*):
#   poll_interval          - Seconds between polls when idle (0.5-60)
#   batch_size             - Jobs claimed per tick (1-50)
#   retention_minutes      - Finished jobs are deleted after this long
#
# Playback (playback.*):
#   default_volume         - Volume for new sessions (1-150)
#   autoplay               - Autoplay on for new sessions
#   history_size           - Finished tracks kept for "previous"
#   empty_grace_ms         - Wait after the queue runs dry before leaving/autoplaying
#   idle_timeout           - Seconds an unattended idle session survives
#   restore_limit          - Max tracks re-resolved on startup recovery
#
# Health monitor (monitor.*):
#   enabled                - Run the health monitor
#   check_interval         - Seconds between probes
#   sample_interval_minutes - Wall-clock aligned sampling period
#   failure_threshold      - Consecutive failures before alerting
#   alert_cooldown_minutes - Minimum time between alerts per service
#   log_interval_seconds   - Repeat monitoring events while unhealthy at most this often
#   alert_webhook_url      - Discord webhook for alerts (None = log only)
#
# Panel (panel.*):
#   enabled                - Edit the status message after every change
#   channel_id, message_id - Where the status message lives
#   color                  - Embed color as hex integer (e.g., 0xA03E72)
#   idle_text              - Shown when nothing is playing
#
# Logging (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "database_url": "sqlite+aiosqlite:///data/encore.db",
    "home_guild_id": None,
    "lavalink": {
        "host": "127.0.0.1",
        "port": 2333,
        "password": "youshallnotpass",
        "secure": False,
        "label": "main",
    },
    "worker": {
        "poll_interval": 4.0,
        "batch_size": 10,
        "retention_minutes": 15,
    },
    "playback": {
        "default_volume": 60,
        "autoplay": True,
        "history_size": 50,
        "empty_grace_ms": 1200,
        "idle_timeout": 15,
        "restore_limit": 25,
    },
    "monitor": {
        "enabled": True,
        "check_interval": 30,
        "sample_interval_minutes": 5,
        "failure_threshold": 3,
        "alert_cooldown_minutes": 15,
        "log_interval_seconds": 120,
        "alert_webhook_url": None,
    },
    "panel": {
        "enabled": True,
        "channel_id": None,
        "message_id": None,
        "color": 0xA03E72,
        "idle_text": "nothing playing",
    },
    # LOG_LEVEL env var overrides this
    "logging": {
        "level": "verbose",  # minimal, verbose, debug
    },
}

# (section, key) -> (min, max); max None = unbounded
RANGES = {
    ("worker", "poll_interval"): (0.5, 60),
    ("worker", "batch_size"): (1, 50),
    ("worker", "retention_minutes"): (1, None),
    ("playback", "default_volume"): (1, 150),
    ("playback", "history_size"): (1, 500),
    ("playback", "empty_grace_ms"): (0, 60000),
    ("playback", "idle_timeout"): (0, None),
    ("playback", "restore_limit"): (1, 100),
    ("monitor", "check_interval"): (5, 3600),
    ("monitor", "sample_interval_minutes"): (1, 60),
    ("monitor", "failure_threshold"): (1, 100),
    ("monitor", "alert_cooldown_minutes"): (0, None),
    ("monitor", "log_interval_seconds"): (0, None),
}

# =============================================================================
# DEFAULT MESSAGES SCHEMA
# =============================================================================
# Every outcome a control job can end in. The job worker records the formatted
# text as the job's error_message (failures) or in the audit log (successes).
# Templates support {variables}.
# =============================================================================

DEFAULT_MESSAGES = {
    # Validation
    "invalid_payload": {"text": "invalid request: {reason}"},
    "unsupported_action": {"text": "unsupported action: {action}"},

    # Session state
    "no_active_session": {"text": "nothing is playing right now"},
    "nothing_playing": {"text": "nothing is playing right now"},
    "nothing_to_play": {"text": "nothing queued to play"},
    "already_playing": {"text": "already playing"},
    "already_paused": {"text": "already paused"},
    "no_next_track": {"text": "no next track"},
    "no_previous_track": {"text": "no previous track"},
    "queue_empty": {"text": "the queue is already empty"},
    "track_not_found": {"text": "that track isn't in the queue"},

    # External
    "no_search_results": {"text": "no results for that search"},
    "unsupported_source": {"text": "spotify links aren't supported yet, use a youtube or soundcloud link"},
    "backend_unavailable": {"text": "music backend is offline"},
    "voice_unavailable": {"text": "can't join that voice channel"},
    "no_voice_channel": {"text": "join a voice channel first"},

    # Success
    "resumed": {"text": "playback resumed"},
    "playing": {"text": "now playing **{title}**"},
    "paused": {"text": "paused"},
    "stopped": {"text": "stopped and left the channel"},
    "skipped": {"text": "skipped to **{title}**"},
    "previous_played": {"text": "back to **{title}**"},
    "track_added": {"text": "added **{title}**"},
    "playlist_added": {"text": "added playlist ({count} tracks)"},
    "track_removed": {"text": "removed **{title}**"},
    "queue_reordered": {"text": "queue reordered"},
    "queue_cleared": {"text": "cleared {count} tracks"},
    "volume_set": {"text": "volume set to {level}%"},
    "autoplay_on": {"text": "autoplay on"},
    "autoplay_off": {"text": "autoplay off"},
    "filter_set": {"text": "filter set to {preset}"},

    # Errors
    "error_generic": {"text": "something broke, try again"},
}

LOG_LEVELS = {
    "minimal": "WARNING",
    "verbose": "INFO",
    "debug": "DEBUG",
}


def deep_merge(user: dict, defaults: dict) -> dict:
    """Merge user config over defaults, recursing into nested dicts.

    Unknown keys (not in defaults) are logged as warnings and ignored.
    """
    result = copy.deepcopy(defaults)
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(value, result[key])
        elif key in defaults:
            result[key] = value
        else:
            logger.warning(f"unknown config key: {key}")
    return result


def load_yaml(path: Path, defaults: dict) -> dict:
    """Load a YAML file merged over defaults. Missing or broken files yield defaults."""
    if not path.exists():
        return deep_merge({}, defaults)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            user = yaml.safe_load(f) or {}
    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return deep_merge({}, defaults)

    if not isinstance(user, dict):
        logger.warning(f"{path.name} invalid, using defaults")
        return deep_merge({}, defaults)
    return deep_merge(user, defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Write YAML through a temp file and rename, so a crash never leaves half a file."""
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            if header:
                f.write(header)
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        Path(temp_path).replace(path)
    except Exception:
        if temp_path:
            Path(temp_path).unlink(missing_ok=True)
        raise


def format_message(key: str, messages: dict | None = None, **kwargs) -> str:
    """Format a message template. Unknown keys fall back to error_generic."""
    messages = messages or DEFAULT_MESSAGES
    entry = messages.get(key) or DEFAULT_MESSAGES.get(key) or DEFAULT_MESSAGES["error_generic"]
    template = entry.get("text", "") if isinstance(entry, dict) else str(entry)
    try:
        return template.format(**kwargs)
    except (KeyError, IndexError, ValueError):
        return template


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class ConfigManager:
    """Manages bot configuration from settings.yaml and messages.yaml.

    Priority (highest wins):
    1. DEFAULT_SETTINGS / DEFAULT_MESSAGES (built-in defaults)
    2. settings.yaml / messages.yaml (user customization)
    3. Environment variables (Docker/deployment override)

    Access patterns:
        config.get("home_guild_id")             # top-level value
        config.section("worker")["batch_size"]  # nested section
        config.msg("track_added", title=...)    # formatted message
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = deep_merge({}, DEFAULT_SETTINGS)
        self.messages: dict = dict(DEFAULT_MESSAGES)

    async def load(self) -> None:
        """Load YAML (generating missing files), apply env overrides, validate."""
        settings_path = self.config_path / "settings.yaml"
        self.settings = await asyncio.to_thread(load_yaml, settings_path, DEFAULT_SETTINGS)
        if not settings_path.exists():
            header = "# Encore Settings\n# Edit these values to customize behavior\n\n"
            await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
            logger.debug(f"generated {settings_path.name}")

        messages_path = self.config_path / "messages.yaml"
        self.messages = await asyncio.to_thread(load_yaml, messages_path, DEFAULT_MESSAGES)
        if not messages_path.exists():
            header = "# Encore Responses\n# Shown in the web panel as job results\n\n"
            await asyncio.to_thread(save_yaml, messages_path, DEFAULT_MESSAGES, header)
            logger.debug(f"generated {messages_path.name}")

        self._apply_env_overrides()
        self._validate_settings()
        logger.debug("config loaded")

    def _validate_settings(self) -> None:
        """Restore nulls, clamp ranged numbers, coerce the panel color and ids.

        Logs a warning for every value that needed correcting.
        """
        for key in list(self.settings):
            if self.settings[key] is None and DEFAULT_SETTINGS.get(key) is not None:
                self.settings[key] = copy.deepcopy(DEFAULT_SETTINGS[key])
        for section, defaults in DEFAULT_SETTINGS.items():
            if not isinstance(defaults, dict):
                continue
            sect = self.settings.get(section)
            if not isinstance(sect, dict):
                logger.warning(f"{section} must be a mapping, using defaults")
                self.settings[section] = deep_merge({}, defaults)
                continue
            for key in list(sect):
                # None is a meaningful value for optional ids/urls
                if sect[key] is None and defaults.get(key) is not None:
                    sect[key] = defaults[key]

        for (section, key), (min_val, max_val) in RANGES.items():
            sect = self.settings[section]
            value = sect.get(key)
            default = DEFAULT_SETTINGS[section][key]
            cast = float if isinstance(default, float) else int
            try:
                v = cast(value)
            except (ValueError, TypeError):
                logger.warning(f"{section}.{key}={value!r} invalid, using default")
                sect[key] = default
                continue
            clamped = max(min_val, v) if max_val is None else max(min_val, min(max_val, v))
            if clamped != v:
                logger.warning(f"{section}.{key}={v} out of range, clamped to {clamped}")
            sect[key] = cast(clamped)

        panel = self.settings["panel"]
        color = panel.get("color")
        if not isinstance(color, int):
            try:
                color_str = str(color).strip().lstrip("#").removeprefix("0x").removeprefix("0X")
                panel["color"] = int(color_str, 16)
            except (ValueError, TypeError):
                logger.warning(f"panel.color={color!r} invalid, using default")
                panel["color"] = DEFAULT_SETTINGS["panel"]["color"]

        # Discord ids arrive as strings from YAML/env
        for target, key in ((self.settings, "home_guild_id"), (panel, "channel_id"), (panel, "message_id")):
            value = target.get(key)
            if value is None:
                continue
            try:
                target[key] = int(value)
            except (ValueError, TypeError):
                logger.warning(f"{key}={value!r} is not a discord id, ignoring")
                target[key] = None

        level = str(self.settings["logging"].get("level", "verbose")).lower()
        if level not in LOG_LEVELS:
            logger.warning(f"logging.level={level!r} invalid, using verbose")
            level = "verbose"
        self.settings["logging"]["level"] = level

    def _apply_env_overrides(self) -> None:
        """Override settings with environment variables.

        env_map: ENV_VAR_NAME -> (dotted setting key, converter). Invalid values
        are logged and ignored.
        """
        def positive_float(env_key: str) -> Callable[[str], float]:
            def validate(x: str) -> float:
                v = float(x)
                if v <= 0:
                    raise ValueError(f"{env_key} must be positive")
                return v
            return validate

        env_map = {
            "DATABASE_URL": ("database_url", str),
            "HOME_GUILD_ID": ("home_guild_id", int),
            "LAVALINK_HOST": ("lavalink.host", str),
            "LAVALINK_PORT": ("lavalink.port", int),
            "LAVALINK_PASSWORD": ("lavalink.password", str),
            "LAVALINK_SECURE": ("lavalink.secure", _parse_bool),
            "WORKER_POLL_INTERVAL": ("worker.poll_interval", positive_float("WORKER_POLL_INTERVAL")),
            "ALERT_WEBHOOK_URL": ("monitor.alert_webhook_url", str),
            "LOG_LEVEL": ("logging.level", str),
        }

        for env_key, (setting_key, converter) in env_map.items():
            if value := os.getenv(env_key):
                try:
                    converted = converter(value)
                except (ValueError, TypeError) as e:
                    logger.warning(f"invalid env var {env_key}: {e}")
                    continue
                target = self.settings
                *parents, leaf = setting_key.split(".")
                for part in parents:
                    target = target.setdefault(part, {})
                    if not isinstance(target, dict):
                        logger.warning(f"invalid config structure for {setting_key}")
                        break
                else:
                    target[leaf] = converted
                    logger.debug(f"{env_key} overrides {setting_key}")

    def get(self, key: str, default=None) -> Any:
        return self.settings.get(key, default)

    def section(self, name: str) -> dict:
        """A nested settings section (always a dict after validation)."""
        return self.settings.get(name) or {}

    def msg(self, key: str, **kwargs) -> str:
        """Formatted message text from messages.yaml."""
        return format_message(key, self.messages, **kwargs)

    @property
    def log_level(self) -> str:
        return LOG_LEVELS[self.settings["logging"]["level"]]


def validate_configuration(config_path: Path, data_path: Path) -> None:
    """Pre-flight checks before the bot starts. Exits on failure.

    - DISCORD_TOKEN is set and looks like a token (three dot-separated parts)
    - Config and data directories exist (created if missing)
    """
    errors = []

    token = (os.getenv("DISCORD_TOKEN") or "").strip()
    if not token:
        errors.append("DISCORD_TOKEN not set - add it to .env or the container environment")
    elif len(token.split(".")) != 3 or any(not part for part in token.split(".")):
        errors.append(
            "DISCORD_TOKEN format appears invalid.\n"
            "Get a fresh token from: https://discord.com/developers/applications"
        )

    for path in (config_path, data_path):
        if not path.exists():
            try:
                path.mkdir(parents=True)
                logger.warning(f"created missing directory: {path}")
            except OSError as e:
                errors.append(f"cannot create directory {path}: {e}")

    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)
