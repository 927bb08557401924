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

"""
Encore Music Bot
========================================================

A remote-controlled Discord music bot built on discord.py and Lavalink (mafic).
The web panel writes control jobs into the database; this process claims and
executes them against one playback session per guild.

Startup order:
1. .env + settings.yaml/messages.yaml, logging
2. Database tables
3. setup_hook: services, Music cog, Lavalink node
4. First on_ready: restore home guild session → start job worker → start health monitor
"""

import asyncio
import inspect
import logging
import os
import signal
import sys
from datetime import timedelta
from pathlib import Path

import aiohttp
import discord
import mafic
from discord.ext import commands
from dotenv import load_dotenv
from loguru import logger

from core.player import SessionManager
from core.search import LavalinkSearch
from systems.control_panel import PanelRefresher
from systems.control_worker import ControlJobWorker
from systems.persistence import PersistenceMirror
from systems.recovery import SessionRecoveryService
from systems.voice_manager import VoiceManager
from systems.watchdog import HealthMonitor, WebhookAlerter, probe_bot, probe_lavalink
from utils.config import ConfigManager, validate_configuration
from utils.database import Database
from utils.persistence import AuditLog, HealthSampleStore, JobStore, SnapshotStore

load_dotenv()

ROOT = Path(__file__).parent
CONFIG_PATH = Path(os.getenv("CONFIG_PATH") or ROOT / "config")
DATA_PATH = Path(os.getenv("DATA_PATH") or ROOT / "data")

# =============================================================================
# LOGGING SETUP
# =============================================================================

# Between INFO and WARNING: startup lines that should survive "minimal"
logger.level("NOTICE", no=25, color="<cyan><bold>")

LIBRARY_LOGGERS = ("discord", "mafic", "sqlalchemy", "aiosqlite")


class InterceptHandler(logging.Handler):
    """Route standard-library log records (discord.py, mafic, SQLAlchemy) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside the logging module so loguru reports the right origin
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>[{time:YYYY-MM-DD HH:mm:ss}]</green> <level>[{level: <7}]</level> {message}",
    )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Library noise only in debug
    library_level = logging.DEBUG if level == "DEBUG" else logging.WARNING
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


# =============================================================================
# BOT
# =============================================================================

class EncoreBot(commands.Bot):
    def __init__(self, config_manager: ConfigManager, db: Database) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents, help_command=None)

        self.config_manager = config_manager
        self.db = db
        self.jobs = JobStore(db)
        self.snapshots = SnapshotStore(db)
        self.samples = HealthSampleStore(db)
        self.audit = AuditLog(db)

        self.pool = mafic.NodePool(self)
        self.voice = VoiceManager(self)
        self.http_session: aiohttp.ClientSession | None = None

        self.mirror: PersistenceMirror | None = None
        self.sessions: SessionManager | None = None
        self.worker: ControlJobWorker | None = None
        self.monitor: HealthMonitor | None = None

        self.closing = False
        self._initialized = False

    async def setup_hook(self) -> None:
        config = self.config_manager
        self.http_session = aiohttp.ClientSession()

        panel_settings = config.section("panel")
        panel = None
        if panel_settings["enabled"]:
            panel = PanelRefresher(
                self,
                panel_settings["channel_id"],
                panel_settings["message_id"],
                color=panel_settings["color"],
                idle_text=panel_settings["idle_text"],
            )
        self.mirror = PersistenceMirror(self.snapshots, panel)

        playback = config.section("playback")
        self.sessions = SessionManager(
            LavalinkSearch(self.pool, self.http_session),
            self.voice.connect,
            self.mirror,
            self.voice.count_listeners,
            default_volume=playback["default_volume"],
            default_autoplay=playback["autoplay"],
            history_size=playback["history_size"],
            empty_grace=playback["empty_grace_ms"] / 1000,
            idle_timeout=playback["idle_timeout"],
        )

        worker = config.section("worker")
        self.worker = ControlJobWorker(
            self.jobs,
            self.sessions,
            self.audit,
            config.msg,
            locate=self.voice.member_channel,
            ui_channel_id=panel_settings["channel_id"],
            poll_interval=worker["poll_interval"],
            batch_size=worker["batch_size"],
            retention=timedelta(minutes=worker["retention_minutes"]),
        )
        # Jobs enqueued from inside this process wake the worker immediately
        self.jobs.add_listener(self.worker.notify)

        monitor = config.section("monitor")
        if monitor["enabled"]:
            alerter = None
            if monitor["alert_webhook_url"]:
                alerter = WebhookAlerter(monitor["alert_webhook_url"], self.http_session)
            self.monitor = HealthMonitor(
                {"bot": lambda: probe_bot(self, self.worker), "lavalink": lambda: probe_lavalink(self.pool)},
                self.samples,
                self.audit,
                alerter,
                check_interval=monitor["check_interval"],
                sample_interval=timedelta(minutes=monitor["sample_interval_minutes"]),
                failure_threshold=monitor["failure_threshold"],
                alert_cooldown=timedelta(minutes=monitor["alert_cooldown_minutes"]),
                log_interval=timedelta(seconds=monitor["log_interval_seconds"]),
            )

        await self.load_extension("cogs.music")

        lavalink = config.section("lavalink")
        try:
            await self.pool.create_node(
                host=lavalink["host"],
                port=int(lavalink["port"]),
                label=lavalink["label"],
                password=lavalink["password"],
                secure=bool(lavalink["secure"]),
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError):
            # Health monitor reports lavalink as down; jobs fail with backend_unavailable
            logger.opt(exception=True).error(f"cannot connect to lavalink at {lavalink['host']}:{lavalink['port']}")

    async def on_ready(self) -> None:
        if self._initialized:
            logger.info("gateway reconnected")
            return
        self._initialized = True

        logger.log("NOTICE", "Encore - Copyright (C) 2026 grodz - GPL 3.0")
        logger.log("NOTICE", f"connected as {self.user}")

        home_guild_id = self.config_manager.get("home_guild_id")
        if home_guild_id:
            recovery = SessionRecoveryService(
                self.sessions,
                self.snapshots,
                self.voice.count_listeners,
                limit=self.config_manager.section("playback")["restore_limit"],
            )
            await recovery.recover(home_guild_id)
        else:
            logger.warning("home_guild_id not set, skipping session restore")

        # Worker only starts polling after recovery
        self.worker.start()
        if self.monitor is not None:
            self.monitor.start()
        logger.log("NOTICE", "ready for control jobs")

    async def close(self) -> None:
        self.closing = True
        logger.info("shutting down...")
        # Monitor stops before the worker it probes
        if self.monitor is not None:
            await self.monitor.stop()
        if self.worker is not None:
            await self.worker.stop()
        if self.mirror is not None:
            await self.mirror.flush()

        await super().close()

        if self.http_session is not None:
            await self.http_session.close()
        await self.db.close()
        logger.info("shutdown complete")


# =============================================================================
# MAIN
# =============================================================================

async def main() -> None:
    setup_logging("INFO")
    validate_configuration(CONFIG_PATH, DATA_PATH)

    config = ConfigManager(CONFIG_PATH)
    await config.load()
    setup_logging(config.log_level)

    db = Database(config.get("database_url"))
    await db.create_tables()

    bot = EncoreBot(config, db)

    # SIGTERM (docker stop, systemd) closes cleanly like Ctrl+C
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, lambda: asyncio.create_task(bot.close()))
    except NotImplementedError:
        pass  # Windows

    async with bot:
        await bot.start(os.getenv("DISCORD_TOKEN", "").strip())


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("stopped by user (Ctrl+C)")


if __name__ == '__main__':
    run()
