#!/usr/bin/env python3
"""nudged — a personal-assistant chat daemon that checks in on its own.

Entry point. Wires config → database → provider → channel → queue →
chat handler → collectors → gating oracle → proactive scheduler.
Handles PID file, Unix signals, and the main event loop.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any

# Add nudged directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from channels import create_channel
from chat import ChatHandler
from checkins import CheckInRepository
from collectors import create_collectors
from config import Config, ConfigError, load_config
from db_schema import open_db
from gating import GatingOracle
from goals import GoalRepository
from message_queue import MessageQueue
from proactive import ProactiveConfig, ProactiveScheduler
from providers import create_provider
from session import MessageLog, SessionManager

log = logging.getLogger("nudged")

# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except PermissionError:
            print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except Exception:  # noqa: S110 - daemon shutdown cleanup; failure is benign
        pass


# ─── Daemon ──────────────────────────────────────────────────────


class NudgeDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.start_time = time.time()
        self.providers: dict[str, Any] = {}
        self.channel: Any = None
        self.conn: Any = None
        self.queue: MessageQueue | None = None
        self.sessions: SessionManager | None = None
        self.message_log: MessageLog | None = None
        self.checkins: CheckInRepository | None = None
        self.goals: GoalRepository | None = None
        self.chat: ChatHandler | None = None
        self.scheduler: ProactiveScheduler | None = None
        self._http_api: Any = None
        self._stop: asyncio.Event | None = None

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "anthropic", "openai", "twilio", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    # ─── Init ────────────────────────────────────────────────────

    def _init_providers(self) -> None:
        """Create provider instances for every routed model."""
        for name in {self.config.route_model("chat"), self.config.route_model("gating")}:
            try:
                model_cfg = self.config.model_config(name)
                provider_type = model_cfg.get("provider", "")
                api_key = self.config.model_api_key(name)
                if not api_key and provider_type == "anthropic-compat":
                    log.warning("No API key for model '%s' (%s)", name, provider_type)
                    continue
                self.providers[name] = create_provider(model_cfg, api_key)
                log.info("Provider '%s': %s / %s", name, provider_type,
                         model_cfg.get("model", ""))
            except Exception as e:
                log.error("Failed to create provider '%s': %s", name, e)

    def _provider_for(self, route: str) -> Any:
        name = self.config.route_model(route)
        provider = self.providers.get(name)
        if provider is None:
            raise ConfigError(f"No usable provider for [routing] {route} = {name!r}")
        return provider

    def _init_storage(self) -> None:
        self.conn = open_db(self.config.db_path)
        self.checkins = CheckInRepository(self.conn)
        self.goals = GoalRepository(self.conn)
        self.message_log = MessageLog(self.conn)
        log.info("Database: %s", self.config.db_path)

    def _init_chat(self) -> None:
        cfg = self.config
        self.queue = MessageQueue()
        self.sessions = SessionManager(timeout_hours=cfg.session_timeout_hours)
        self.chat = ChatHandler(
            channel=self.channel,
            queue=self.queue,
            sessions=self.sessions,
            message_log=self.message_log,
            goals=self.goals,
            checkins=self.checkins,
            provider=self._provider_for("chat"),
            agent_name=cfg.agent_name,
            system_prompt=cfg.system_prompt,
            language=cfg.agent_language,
            timezone=cfg.agent_timezone,
            history_limit=cfg.history_limit,
            api_retries=cfg.api_retries,
            api_retry_base_delay=cfg.api_retry_base_delay,
            error_message=cfg.error_message,
            get_status=self._build_status,
        )

    def _init_caller(self) -> Any:
        cfg = self.config
        if not cfg.escalation_enabled:
            return None
        from escalation import TwilioCallProvider
        try:
            caller = TwilioCallProvider.from_env(
                cfg.twilio_sid_env, cfg.twilio_token_env, cfg.escalation_from_number,
            )
        except ValueError as e:
            log.warning("Phone escalation disabled: %s", e)
            return None
        log.info("Phone escalation enabled (threshold %d)", cfg.escalation_urgency_threshold)
        return caller

    def _init_scheduler(self) -> None:
        cfg = self.config
        self.scheduler = ProactiveScheduler(
            ProactiveConfig.from_config(cfg),
            collectors=create_collectors(cfg, self.conn),
            checkins=self.checkins,
            oracle=GatingOracle(self._provider_for("gating"), timeout=cfg.gating_timeout),
            messenger=self.channel,
            queue=self.queue,
            sessions=self.sessions,
            caller=self._init_caller(),
        )

    # ─── Status / Control ────────────────────────────────────────

    def _build_status(self) -> dict:
        """Build status dict for HTTP /status, /status command and SIGUSR2."""
        return {
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(time.time() - self.start_time),
            "channel": self.config.channel_type,
            "models": sorted(self.providers.keys()),
            "active_sessions": self.sessions.active_count if self.sessions else 0,
            "messages_today": self.message_log.count_today() if self.message_log else 0,
            "queue": {
                "processing": self.queue.is_processing() if self.queue else False,
                "locked": self.queue.is_locked() if self.queue else False,
                "pending": self.queue.pending_count if self.queue else 0,
            },
            "proactive": self.scheduler.status() if self.scheduler else {},
        }

    def _get_checkins(self, limit: int) -> list[dict]:
        return [entry.to_dict() for entry in self.checkins.get_recent_logs(limit)]

    def _set_quiet(self, hours: float | None) -> dict:
        user_id = self.config.proactive_target_user_id
        if hours is None:
            self.checkins.clear_quiet_mode(user_id)
            return {"quiet": False}
        until = time.time() + hours * 3600
        self.checkins.set_quiet_mode(user_id, until)
        return {"quiet": True, "until": round(until)}

    def _trigger_checkin(self) -> bool:
        if not self.scheduler or not self.config.proactive_enabled:
            return False
        return self.scheduler.trigger()

    # ─── Loop ────────────────────────────────────────────────────

    async def _channel_reader(self) -> None:
        """Read messages from channel and hand them to the chat lane."""
        try:
            async for msg in self.channel.receive():
                self.chat.submit(msg)
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.error("Channel reader failed: %s", e)
        # Channel exhausted (e.g., piped stdin EOF): shut down
        log.info("Channel closed, shutting down")
        self._stop.set()

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            status_path = self.config.state_dir / "status.json"
            status_path.write_text(json.dumps(self._build_status(), indent=2))

        def handle_sigterm():
            log.info("SIGTERM: shutting down gracefully")
            self._stop.set()

        try:
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run(self) -> None:
        """Main entry point — starts all components and runs until stopped."""
        cfg = self.config
        pid_path = cfg.state_dir / "nudged.pid"
        self._stop = asyncio.Event()

        self._setup_logging()
        log.info("Starting nudged for '%s'", cfg.agent_name)

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        channel_task: asyncio.Task | None = None
        try:
            self._init_providers()
            self._init_storage()
            self.channel = create_channel(cfg)
            self._init_chat()
            self._init_scheduler()

            await self.channel.connect()
            log.info("Channel connected: %s", cfg.channel_type)

            self._setup_signals(asyncio.get_running_loop())

            channel_task = asyncio.create_task(self._channel_reader())

            if cfg.http_enabled:
                from channels.http_api import HTTPApi
                self._http_api = HTTPApi(
                    host=cfg.http_host,
                    port=cfg.http_port,
                    auth_token=cfg.http_auth_token,
                    get_status=self._build_status,
                    get_checkins=self._get_checkins,
                    set_quiet=self._set_quiet,
                    trigger_checkin=self._trigger_checkin,
                    max_body_bytes=cfg.http_max_body_bytes,
                    rate_limit=cfg.http_rate_limit,
                    rate_window=cfg.http_rate_window,
                    status_rate_limit=cfg.http_status_rate_limit,
                    agent_name=cfg.agent_name,
                )
                await self._http_api.start()

            self.scheduler.start()
            log.info("nudged running (PID %d)", os.getpid())

            await self._stop.wait()

            # Shutdown: no new checks, no new input, finish queued turns
            self.scheduler.stop()
            channel_task.cancel()
            try:
                await channel_task
            except asyncio.CancelledError:
                pass
            await self.queue.drain()
            await self.scheduler.wait_stopped()

        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            if self.scheduler is not None:
                self.scheduler.stop()
            if channel_task is not None and not channel_task.done():
                channel_task.cancel()
            if self._http_api is not None:
                try:
                    await self._http_api.stop()
                except Exception:  # noqa: S110 - HTTP cleanup on shutdown; failure is benign
                    pass
            if self.channel is not None:
                try:
                    await self.channel.disconnect()
                except Exception:  # noqa: S110 - channel cleanup on shutdown; failure is benign
                    pass
            if self.conn is not None:
                try:
                    self.conn.close()
                except Exception:  # noqa: S110 - DB close on shutdown; failure is benign
                    pass
            _remove_pid_file(pid_path)
            log.info("nudged stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="nudged — a personal-assistant chat daemon that checks in on its own",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("NUDGED_CONFIG", "./nudged.toml"),
        help="Path to config file (default: $NUDGED_CONFIG or ./nudged.toml)",
    )
    parser.add_argument(
        "--channel",
        help="Override channel type (e.g., 'cli' for testing)",
    )
    args = parser.parse_args()

    overrides = {}
    if args.channel:
        overrides["channel.type"] = args.channel

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    daemon = NudgeDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
