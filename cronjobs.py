#!/usr/bin/env python3
"""
cronjobs.py

YAML/JSON-driven job scheduler and service supervisor for shell commands.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import IO, Any, BinaryIO, Dict, List, Mapping, Optional, Set, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None


DEFAULT_LOGS_FOLDER = "/tmp/cronjobs"
DEFAULT_JOBS_FILE = "jobs"
DEFAULT_RESTART_INTERVAL_MS = 1000
DEFAULT_PREVIEW_COUNT = 5
DAEMON_LOG_FILE = "crond.log"
CONFIG_EXTENSIONS = ("yaml", "yml", "json")
MAX_IDLE_SECONDS = 60.0
STOP_GRACE_SECONDS = 5.0
PUMP_DRAIN_SECONDS = 0.5
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

VALID_OVERLAPS = {"skip", "queue", "parallel"}
JOB_KEYS = {"name", "interval", "command", "commands", "cwd", "env", "overlap"}
SERVICE_KEYS = {"name", "command", "cwd", "env", "restart", "restartInterval"}

STATE_IDLE = "idle"
STATE_STARTING = "starting"
STATE_RUNNING = "running"
STATE_EXITED = "exited"
STATE_AWAITING_RESTART = "awaiting_restart"
STATE_STOPPED = "stopped"

INTERVAL_RE = re.compile(r"^(\d+)([smhd])$")
WHITESPACE_RE = re.compile(r"\s+")


class CronError(Exception):
    """Base error for cronjobs."""


class ConfigError(CronError):
    """Configuration could not be used."""


class ConfigMissing(ConfigError):
    """No configuration source was found."""


class ConfigParseError(ConfigError):
    """Configuration document is malformed."""


class ScheduleError(ConfigError):
    """Schedule expression is not understood."""


class CommandError(CronError):
    """A job or service command did not complete successfully."""


class LaunchError(CommandError):
    def __init__(self, cause: BaseException, command: str = ""):
        self.cause = cause
        self.command = command
        super().__init__(f"Failed to launch command: {cause}")


class CommandFailed(CommandError):
    def __init__(self, code: int, command: str = ""):
        self.code = code
        self.command = command
        super().__init__(f"Command exited with code {code}: {command}")


logger = logging.getLogger("cronjobs")
UTC = timezone.utc


def setup_logging(debug: bool = False) -> logging.Logger:
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if logger.handlers:
        return logger
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once at startup."""

    logs_folder: Path = Path(DEFAULT_LOGS_FOLDER)
    jobs_file_name: str = DEFAULT_JOBS_FILE
    debug: bool = False
    restart_interval_ms: int = DEFAULT_RESTART_INTERVAL_MS
    config_path: Optional[Path] = None

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        restart_interval_ms = DEFAULT_RESTART_INTERVAL_MS
        raw_interval = env.get("CRON_RESTART_INTERVAL")
        if raw_interval:
            try:
                restart_interval_ms = int(raw_interval)
            except ValueError as exc:
                raise ConfigError(
                    f'Error: CRON_RESTART_INTERVAL must be an integer, got "{raw_interval}".'
                ) from exc
            if restart_interval_ms < 0:
                raise ConfigError("Error: CRON_RESTART_INTERVAL must be >= 0.")
        config_raw = env.get("CRON_CONFIG")
        return Settings(
            logs_folder=Path(env.get("CRON_LOGS_FOLDER") or DEFAULT_LOGS_FOLDER).expanduser(),
            jobs_file_name=env.get("CRON_JOBS_FILE") or DEFAULT_JOBS_FILE,
            debug=bool(env.get("DEBUG")),
            restart_interval_ms=restart_interval_ms,
            config_path=Path(config_raw).expanduser() if config_raw else None,
        )


@dataclass(frozen=True)
class JobSpec:
    name: str
    interval: str
    commands: Tuple[str, ...]
    cwd: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)
    overlap: str = "parallel"

    @property
    def log_name(self) -> str:
        return sanitize_name(self.name)


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    command: str
    cwd: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)
    restart: bool = True
    restart_interval_ms: Optional[int] = None

    @property
    def log_name(self) -> str:
        return sanitize_name(self.name)


@dataclass(frozen=True)
class ScheduleConfig:
    jobs: List[JobSpec] = field(default_factory=list)
    services: List[ServiceSpec] = field(default_factory=list)
    source: Optional[Path] = None

    @property
    def empty(self) -> bool:
        return not self.jobs and not self.services


@dataclass
class JobRunResult:
    job_name: str
    success: bool
    commands_run: int
    started_at: datetime
    ended_at: datetime
    scheduled_for: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class JobState:
    trigger: Optional["Trigger"] = None
    next_fire: Optional[datetime] = None
    running_count: int = 0
    queued_pending: bool = False


def require_dependency(module: Any, distribution: str, purpose: str) -> None:
    if module is None:
        raise CronError(
            f"Missing required dependency: {distribution} (needed for {purpose}). "
            f"Install with: pip install {distribution}"
        )


def sanitize_name(name: str) -> str:
    return WHITESPACE_RE.sub("-", name)


def as_utc(moment: datetime) -> datetime:
    # Naive datetimes are taken to be UTC already.
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def timestamp(moment: Optional[datetime] = None) -> str:
    return as_utc(moment or datetime.now(tz=UTC)).strftime(TIMESTAMP_FORMAT)


def system_timezone(
    environ: Optional[Mapping[str, str]] = None,
    localtime: Path = Path("/etc/localtime"),
) -> Tuple[ZoneInfo, str]:
    """Zone cron expressions are evaluated in: ``TZ``, then ``/etc/localtime``, then UTC."""
    env = os.environ if environ is None else environ
    tz_name = (env.get("TZ") or "").lstrip(":")
    if tz_name:
        try:
            return ZoneInfo(tz_name), tz_name
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning('Unknown TZ "%s"; falling back to the system zone.', tz_name)
    try:
        # /etc/localtime is usually a symlink into the zoneinfo tree, which names the zone.
        key = localtime.resolve().as_posix().split("/zoneinfo/", 1)[1]
        return ZoneInfo(key), key
    except (IndexError, OSError, ValueError, ZoneInfoNotFoundError):
        pass
    try:
        with localtime.open("rb") as handle:
            return ZoneInfo.from_file(handle, key="localtime"), "localtime"
    except (OSError, ValueError):
        return ZoneInfo("UTC"), "UTC"


class LogSink:
    """
    Append-only log file for one job or service name.

    Every line is prefixed with ``[YYYY-MM-DDTHH:MM:SS] `` (UTC) at write time.
    An existing file is resumed at its end, never truncated. Writes after
    ``close()`` are dropped.
    """

    def __init__(self, path: Path, handle: BinaryIO, resume_offset: int = 0, at_line_start: bool = True):
        self.path = path
        self.resume_offset = resume_offset
        self._handle: Optional[BinaryIO] = handle
        self._lock = threading.Lock()
        self._at_line_start = at_line_start

    @classmethod
    def open(cls, logs_folder: Union[str, Path], name: str) -> "LogSink":
        path = Path(logs_folder) / f"{sanitize_name(name)}.log"
        resume_offset = 0
        at_line_start = True
        if path.exists():
            resume_offset = path.stat().st_size
            if resume_offset:
                with path.open("rb") as existing:
                    existing.seek(-1, os.SEEK_END)
                    at_line_start = existing.read(1) == b"\n"
        handle = path.open("ab")
        return cls(path, handle, resume_offset=resume_offset, at_line_start=at_line_start)

    @property
    def closed(self) -> bool:
        return self._handle is None

    @property
    def writable(self) -> bool:
        return self._handle is not None

    def write(self, data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        with self._lock:
            self._append(data)

    def write_line(self, text: str) -> None:
        with self._lock:
            lead = b"" if self._at_line_start else b"\n"
            self._append(lead + text.encode("utf-8") + b"\n")

    def close(self) -> None:
        with self._lock:
            if self._handle is None:
                return
            handle, self._handle = self._handle, None
            handle.close()

    def _append(self, data: bytes) -> None:
        if self._handle is None:
            return
        self._handle.write(self._stamp(data))
        self._handle.flush()

    def _stamp(self, data: bytes) -> bytes:
        prefix = f"[{timestamp()}] ".encode("ascii")
        segments = data.split(b"\n")
        stamped: List[bytes] = []
        for idx, segment in enumerate(segments):
            # A leading fragment continues a line left open by the previous write.
            starts_line = idx > 0 or self._at_line_start
            stamped.append(prefix + segment if segment and starts_line else segment)
        self._at_line_start = data.endswith(b"\n")
        return b"\n".join(stamped)

    def __enter__(self) -> "LogSink":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"LogSink(path={self.path}, closed={self.closed})"


def _pump(stream: IO[bytes], sink: LogSink) -> None:
    with stream:
        for line in iter(stream.readline, b""):
            sink.write(line)


def build_env(overrides: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ.copy()
    if overrides:
        env.update({k: str(v) for k, v in overrides.items() if v is not None})
    return env


class RunningCommand:
    """A launched shell command whose stdout and stderr feed one sink."""

    def __init__(self, command: str, process: subprocess.Popen, pumps: List[threading.Thread]):
        self.command = command
        self.process = process
        self.pumps = pumps

    @property
    def pid(self) -> int:
        return self.process.pid

    def wait(self, drain_seconds: float = PUMP_DRAIN_SECONDS) -> int:
        """
        Block until the shell exits and return its exit code.

        A backgrounded child may keep the pipes open long after the shell is
        gone, so the pumps only get a bounded window to flush what is already
        buffered. Anything they read later lands on a closed sink and is dropped.
        """
        code = self.process.wait()
        deadline = time.monotonic() + drain_seconds
        for pump in self.pumps:
            pump.join(timeout=max(0.0, deadline - time.monotonic()))
        return code

    def terminate(self, grace_seconds: float = STOP_GRACE_SECONDS) -> None:
        if self.process.poll() is not None:
            return
        self._signal(signal.SIGTERM)
        try:
            self.process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Command %s ignored SIGTERM; killing it.", self.pid)
            self._signal(signal.SIGKILL)
            self.process.wait()

    def _signal(self, signum: int) -> None:
        try:
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.process.send_signal(signum)


def spawn_command(
    command: str,
    sink: LogSink,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunningCommand:
    sink.write_line(command)
    try:
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd) if cwd is not None else None,
            env=build_env(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        raise LaunchError(exc, command) from exc

    pumps = [
        threading.Thread(target=_pump, args=(stream, sink), daemon=True, name=f"cronjobs-pump-{process.pid}")
        for stream in (process.stdout, process.stderr)
    ]
    for pump in pumps:
        pump.start()
    return RunningCommand(command, process, pumps)


def run_command(
    command: str,
    sink: LogSink,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> int:
    running = spawn_command(command, sink, cwd=cwd, env=env)
    code = running.wait()
    if code != 0:
        raise CommandFailed(code, command)
    return code


def run_job(
    job: JobSpec,
    logs_folder: Union[str, Path],
    scheduled_for: Optional[datetime] = None,
) -> JobRunResult:
    started = datetime.now(tz=UTC)
    commands_run = 0
    error: Optional[str] = None
    logger.info("[%s] Starting job (%s command(s))", job.name, len(job.commands))

    sink = LogSink.open(logs_folder, job.name)
    try:
        sink.write_line(f"Starting {job.name}")
        for command in job.commands:
            commands_run += 1
            logger.debug("[%s] [%s/%s] Running %s", job.name, commands_run, len(job.commands), command)
            run_command(command, cwd=job.cwd, env=job.env, sink=sink)
        sink.write_line("[OK]")
    except CommandError as exc:
        error = str(exc)
        sink.write_line(f"[ERROR] {error}")
        logger.error("[%s] %s; remaining commands skipped.", job.name, error)
    except Exception as exc:  # pragma: no cover - defensive
        error = str(exc) or exc.__class__.__name__
        sink.write_line(f"[ERROR] {error}")
        logger.exception("[%s] Unexpected failure: %s", job.name, error)
    finally:
        sink.close()

    ended = datetime.now(tz=UTC)
    logger.info(
        "[%s] Job completed with success=%s in %.2fs",
        job.name,
        error is None,
        (ended - started).total_seconds(),
    )
    return JobRunResult(
        job_name=job.name,
        success=error is None,
        commands_run=commands_run,
        started_at=started,
        ended_at=ended,
        scheduled_for=scheduled_for,
        error=error,
    )


class ServiceSupervisor:
    """
    Keeps one service command running.

    ``start()`` launches the command and returns at once; a watcher thread
    waits for the exit, logs it and, unless ``restart`` is false, arms a
    timer that calls ``start()`` again. There is no backoff and no cap on
    the number of restarts.
    """

    def __init__(
        self,
        service: ServiceSpec,
        logs_folder: Union[str, Path],
        default_restart_interval_ms: int = DEFAULT_RESTART_INTERVAL_MS,
    ):
        self.service = service
        self.logs_folder = Path(logs_folder)
        self.default_restart_interval_ms = default_restart_interval_ms
        self.state = STATE_IDLE
        self.restarts = 0
        self.last_exit_code: Optional[int] = None
        self._cond = threading.Condition()
        self._sink: Optional[LogSink] = None
        self._running: Optional[RunningCommand] = None
        self._timer: Optional[threading.Timer] = None
        self._watcher: Optional[threading.Thread] = None
        self._stopping = False

    @property
    def restart_interval_ms(self) -> int:
        if self.service.restart_interval_ms is not None:
            return self.service.restart_interval_ms
        return self.default_restart_interval_ms

    @property
    def pid(self) -> Optional[int]:
        running = self._running
        return running.pid if running else None

    def start(self) -> None:
        name = self.service.name
        with self._cond:
            if self._stopping:
                return
            self._timer = None
            previous, self._sink = self._sink, LogSink.open(self.logs_folder, name)
            if previous is not None:
                previous.close()
            sink = self._sink
            self._set_state(STATE_STARTING)
            sink.write_line(f"Starting service {name}")
            logger.info("[%s] Starting service: %s", name, self.service.command)
            try:
                running = spawn_command(
                    self.service.command,
                    cwd=self.service.cwd,
                    env=self.service.env,
                    sink=sink,
                )
            except LaunchError as exc:
                sink.write_line(f"[ERROR] {exc}")
                logger.error("[%s] %s", name, exc)
                self._after_exit(None)
                return
            self._running = running
            self._set_state(STATE_RUNNING)
            self._watcher = threading.Thread(
                target=self._watch,
                args=(running, sink),
                daemon=True,
                name=f"cronjobs-service-{sanitize_name(name)}",
            )
            self._watcher.start()

    def stop(self, grace_seconds: float = STOP_GRACE_SECONDS) -> None:
        with self._cond:
            self._stopping = True
            timer, self._timer = self._timer, None
            running = self._running
            watcher = self._watcher
        if timer is not None:
            timer.cancel()
        if running is not None:
            logger.info("[%s] Stopping service (pid %s)", self.service.name, running.pid)
            running.terminate(grace_seconds)
        if watcher is not None and watcher is not threading.current_thread():
            watcher.join(timeout=grace_seconds)
        with self._cond:
            if self._sink is not None:
                self._sink.close()
                self._sink = None
            self._set_state(STATE_STOPPED)

    def wait_for_state(self, *states: str, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self.state in states, timeout=timeout)

    def _watch(self, running: RunningCommand, sink: LogSink) -> None:
        code = running.wait()
        sink.write_line(f"[CRON] service exited with code {code}")
        logger.warning("[%s] Service exited with code %s", self.service.name, code)
        self._after_exit(code)

    def _after_exit(self, code: Optional[int]) -> None:
        with self._cond:
            self._running = None
            self.last_exit_code = code
            if self._stopping:
                return
            self._set_state(STATE_EXITED)
            if not self.service.restart:
                logger.info("[%s] restart=false; service stays stopped.", self.service.name)
                self._set_state(STATE_STOPPED)
                return
            delay = self.restart_interval_ms / 1000.0
            logger.info("[%s] Restarting in %.3fs", self.service.name, delay)
            self._timer = threading.Timer(delay, self._restart)
            self._timer.daemon = True
            self._set_state(STATE_AWAITING_RESTART)
            self._timer.start()

    def _restart(self) -> None:
        with self._cond:
            if self._stopping:
                return
            self.restarts += 1
        self.start()

    def _set_state(self, state: str) -> None:
        self.state = state
        self._cond.notify_all()

    def __repr__(self) -> str:
        return f"ServiceSupervisor(name={self.service.name!r}, state={self.state}, restarts={self.restarts})"


def _interval_delta(amount: int, unit: str) -> timedelta:
    if unit == "s":
        return timedelta(seconds=amount)
    if unit == "m":
        return timedelta(minutes=amount)
    if unit == "h":
        return timedelta(hours=amount)
    if unit == "d":
        return timedelta(days=amount)
    raise ScheduleError(f"Error: Unsupported interval unit: {unit}")


def _croniter_expression(expression: str) -> str:
    if expression.startswith("@"):
        return expression.lower()
    fields = expression.split()
    if len(fields) == 6:
        # Leading seconds field; croniter expects seconds last.
        fields = fields[1:] + fields[:1]
    return " ".join(fields)


class Trigger:
    """
    Computes fire times for a schedule expression.

    Accepts 5-field cron, 6-field cron with leading seconds, ``@daily``-style
    aliases and interval shorthand such as ``30s``, ``5m``, ``2h`` or ``1d``.
    Intervals count from ``anchor`` (registration time by default).
    """

    def __init__(
        self,
        expression: str,
        tz: Optional[ZoneInfo] = None,
        anchor: Optional[datetime] = None,
    ):
        if not isinstance(expression, str) or not expression.strip():
            raise ScheduleError("Error: Schedule expression must be a non-empty string.")
        self.expression = expression.strip()
        self.timezone = tz or system_timezone()[0]
        self.anchor = as_utc(anchor or datetime.now(tz=UTC))
        self.interval: Optional[timedelta] = None
        self.cron_expr: Optional[str] = None

        match = INTERVAL_RE.match(self.expression.lower())
        if match:
            amount = int(match.group(1))
            if amount <= 0:
                raise ScheduleError(f'Error: Interval must be > 0, got "{self.expression}".')
            self.interval = _interval_delta(amount, match.group(2))
            return

        require_dependency(croniter, "croniter", "cron expressions")
        cron_expr = _croniter_expression(self.expression)
        fields = cron_expr.split()
        if not cron_expr.startswith("@") and len(fields) not in (5, 6):
            raise ScheduleError(
                f'Error: Cron expression must have 5 or 6 fields, got "{self.expression}".'
            )
        if not croniter.is_valid(cron_expr):
            raise ScheduleError(f'Error: Invalid schedule expression "{self.expression}".')
        self.cron_expr = cron_expr

    @property
    def kind(self) -> str:
        return "interval" if self.interval is not None else "cron"

    def next_after(self, moment: datetime) -> datetime:
        moment = as_utc(moment)
        if self.interval is not None:
            if moment < self.anchor:
                return self.anchor + self.interval
            elapsed = moment - self.anchor
            steps = int(elapsed.total_seconds() // self.interval.total_seconds()) + 1
            return self.anchor + (self.interval * steps)

        local_after = moment.astimezone(self.timezone)
        nxt = croniter(self.cron_expr, local_after).get_next(datetime)
        if nxt.tzinfo is None:
            nxt = nxt.replace(tzinfo=self.timezone)
        return nxt.astimezone(UTC)

    def next_times(self, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
        cursor = as_utc(now_utc or datetime.now(tz=UTC))
        runs: List[datetime] = []
        while len(runs) < count:
            cursor = self.next_after(cursor)
            runs.append(cursor)
        return runs

    def __repr__(self) -> str:
        return f"Trigger({self.expression!r}, kind={self.kind})"


def compile_triggers(
    jobs: List[JobSpec],
    tz: Optional[ZoneInfo] = None,
    anchor: Optional[datetime] = None,
) -> Dict[str, Trigger]:
    triggers: Dict[str, Trigger] = {}
    for job in jobs:
        try:
            triggers[job.name] = Trigger(job.interval, tz=tz, anchor=anchor)
        except ScheduleError as exc:
            raise ScheduleError(f'{exc} (job "{job.name}")') from exc
    return triggers


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigParseError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: Optional[int], minimum: int = 0) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigParseError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigParseError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str, strip: bool = True) -> str:
    # Command text is handed to the shell exactly as written.
    if not isinstance(value, str) or not value.strip():
        raise ConfigParseError(f"Error: {field_path} must be a non-empty string.")
    return value.strip() if strip else value


def parse_overlap(value: Any, field_path: str) -> str:
    if value is None:
        return "parallel"
    overlap = ensure_str(value, field_path).lower()
    if overlap not in VALID_OVERLAPS:
        choices = ", ".join(sorted(VALID_OVERLAPS))
        raise ConfigParseError(f'Error: {field_path} must be one of {choices}, got "{value}".')
    return overlap


def parse_commands(raw: Dict[str, Any], field_path: str) -> Tuple[str, ...]:
    key = "commands" if raw.get("commands") is not None else "command"
    value = raw.get(key)
    if value is None:
        raise ConfigParseError(f'Error: {field_path} requires "command" or "commands".')
    if isinstance(value, str):
        return (ensure_str(value, f"{field_path}.{key}", strip=False),)
    if not isinstance(value, list):
        raise ConfigParseError(f"Error: {field_path}.{key} must be a string or a list of strings.")
    return tuple(ensure_str(item, f"{field_path}.{key}[{idx}]", strip=False) for idx, item in enumerate(value))


def parse_cwd(value: Any, config_dir: Path, field_path: str) -> Optional[Path]:
    if value is None:
        return None
    raw = Path(ensure_str(value, field_path)).expanduser()
    return raw if raw.is_absolute() else (config_dir / raw).resolve()


def parse_env(value: Any, field_path: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigParseError(f"Error: {field_path} must be a mapping.")
    env: Dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not key:
            raise ConfigParseError(f"Error: {field_path} keys must be non-empty strings.")
        if isinstance(item, bool):
            env[key] = "true" if item else "false"
        elif isinstance(item, (str, int, float)):
            env[key] = str(item)
        else:
            raise ConfigParseError(
                f"Error: {field_path}.{key} must be scalar value convertible to string."
            )
    return env


def parse_job(raw: Any, field_path: str, config_dir: Path) -> JobSpec:
    if not isinstance(raw, dict):
        raise ConfigParseError(f"Error: {field_path} must be a mapping.")
    unknown = set(raw.keys()) - JOB_KEYS
    if unknown:
        raise ConfigParseError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return JobSpec(
        name=ensure_str(raw.get("name"), f"{field_path}.name"),
        interval=ensure_str(raw.get("interval"), f"{field_path}.interval"),
        commands=parse_commands(raw, field_path),
        cwd=parse_cwd(raw.get("cwd"), config_dir, f"{field_path}.cwd"),
        env=parse_env(raw.get("env"), f"{field_path}.env"),
        overlap=parse_overlap(raw.get("overlap"), f"{field_path}.overlap"),
    )


def parse_service(raw: Any, field_path: str, config_dir: Path) -> ServiceSpec:
    if not isinstance(raw, dict):
        raise ConfigParseError(f"Error: {field_path} must be a mapping.")
    unknown = set(raw.keys()) - SERVICE_KEYS
    if unknown:
        raise ConfigParseError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return ServiceSpec(
        name=ensure_str(raw.get("name"), f"{field_path}.name"),
        command=ensure_str(raw.get("command"), f"{field_path}.command", strip=False),
        cwd=parse_cwd(raw.get("cwd"), config_dir, f"{field_path}.cwd"),
        env=parse_env(raw.get("env"), f"{field_path}.env"),
        restart=ensure_bool(raw.get("restart"), f"{field_path}.restart", True),
        restart_interval_ms=ensure_int(
            raw.get("restartInterval"), f"{field_path}.restartInterval", None, 0
        ),
    )


def _parse_list(payload: Dict[str, Any], key: str) -> List[Any]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigParseError(f"Error: {key} must be a list.")
    return value


def _check_unique(names: List[str], kind: str) -> None:
    seen: Set[str] = set()
    for name in names:
        if name in seen:
            raise ConfigParseError(f'Error: Duplicate {kind} name "{name}".')
        seen.add(name)


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigMissing(f"Error: Config file not found: {config_path}")
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigParseError(f"Error: Failed to read {config_path}: {exc}") from exc

    if config_path.suffix.lower() in (".yaml", ".yml"):
        require_dependency(yaml, "PyYAML", "YAML config files")
        try:
            payload = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigParseError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    else:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigParseError(f"Error: Failed to parse JSON in {config_path}: {exc}") from exc

    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigParseError("Error: Top-level config must be a mapping.")
    return payload


def parse_config(config_path: Union[str, Path]) -> ScheduleConfig:
    config_path = Path(config_path)
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - {"jobs", "services"}
    if unknown_top:
        raise ConfigParseError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    config_dir = config_path.resolve().parent
    jobs = [
        parse_job(raw, f"jobs[{idx}]", config_dir)
        for idx, raw in enumerate(_parse_list(payload, "jobs"))
    ]
    services = [
        parse_service(raw, f"services[{idx}]", config_dir)
        for idx, raw in enumerate(_parse_list(payload, "services"))
    ]
    _check_unique([job.name for job in jobs], "job")
    _check_unique([service.name for service in services], "service")
    return ScheduleConfig(jobs=jobs, services=services, source=config_path)


def find_config(
    settings: Settings,
    cwd: Optional[Union[str, Path]] = None,
    home: Optional[Union[str, Path]] = None,
) -> Path:
    if settings.config_path is not None:
        path = Path(settings.config_path)
        if not path.exists():
            raise ConfigMissing(f"Error: Config file not found: {path}")
        return path

    search_dirs = [Path(cwd) if cwd is not None else Path.cwd()]
    home_dir = home if home is not None else os.environ.get("HOME")
    if home_dir:
        search_dirs.append(Path(home_dir))

    for directory in search_dirs:
        for extension in CONFIG_EXTENSIONS:
            candidate = directory / f"{settings.jobs_file_name}.{extension}"
            logger.debug("Trying %s", candidate)
            if candidate.exists():
                return candidate
    raise ConfigMissing("No jobs found. Create a list of jobs first!")


def load_schedule(settings: Settings) -> ScheduleConfig:
    config_path = find_config(settings)
    config = parse_config(config_path)
    logger.info(
        "Loaded %s job(s) and %s service(s) from %s",
        len(config.jobs),
        len(config.services),
        config_path,
    )
    return config


class Scheduler:
    """
    Owns the configured jobs and services.

    ``start()`` registers a trigger per job and launches every service;
    ``serve_forever()`` then dispatches due jobs until ``stop()``. Each tick
    runs in its own worker thread. Overlapping ticks of one job follow the
    job's ``overlap`` policy: ``parallel`` starts an independent run,
    ``skip`` drops the tick, ``queue`` keeps one pending run for later.
    """

    def __init__(self, settings: Settings, config: ScheduleConfig):
        self.settings = settings
        self.config = config
        self.jobs: Dict[str, JobSpec] = {job.name: job for job in config.jobs}
        self.supervisors: Dict[str, ServiceSupervisor] = {}
        self._states: Dict[str, JobState] = {job.name: JobState() for job in config.jobs}
        self._workers: Set[threading.Thread] = set()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()

    def start(self) -> bool:
        self.settings.logs_folder.mkdir(parents=True, exist_ok=True)
        if self.config.empty:
            logger.info("Nothing to run: no jobs or services configured.")
            return False

        now = datetime.now(tz=UTC)
        triggers = compile_triggers(self.config.jobs, anchor=now)
        for job in self.config.jobs:
            state = self._states[job.name]
            state.trigger = triggers[job.name]
            state.next_fire = state.trigger.next_after(now)
            logger.debug('[%s] registered with interval "%s"', job.name, job.interval)

        for service in self.config.services:
            supervisor = ServiceSupervisor(
                service,
                self.settings.logs_folder,
                default_restart_interval_ms=self.settings.restart_interval_ms,
            )
            self.supervisors[service.name] = supervisor
            supervisor.start()

        logger.info(
            "Scheduler started with %s job(s) and %s service(s); logs in %s",
            len(self.config.jobs),
            len(self.config.services),
            self.settings.logs_folder,
        )
        return True

    def serve_forever(self, max_idle_seconds: float = MAX_IDLE_SECONDS) -> None:
        while not self._stop_event.is_set():
            now = datetime.now(tz=UTC)
            for name, state in self._states.items():
                if state.trigger is None or state.next_fire is None or state.next_fire > now:
                    continue
                scheduled_for = state.next_fire
                # Missed ticks are not replayed; the next fire is after now.
                state.next_fire = state.trigger.next_after(now)
                self.fire(name, scheduled_for=scheduled_for)
            self._stop_event.wait(self._seconds_until_next_fire(max_idle_seconds))

    def fire(self, job_name: str, scheduled_for: Optional[datetime] = None) -> bool:
        job = self.jobs.get(job_name)
        if job is None:
            raise CronError(f'Unknown job "{job_name}".')

        with self._lock:
            return self._dispatch(job, scheduled_for)

    def running(self, job_name: str) -> int:
        with self._lock:
            return self._states[job_name].running_count

    def request_stop(self) -> None:
        self._stop_event.set()

    def stop(self, grace_seconds: float = STOP_GRACE_SECONDS) -> None:
        self.request_stop()
        for supervisor in self.supervisors.values():
            supervisor.stop(grace_seconds)
        self.join_workers(timeout=grace_seconds)
        logger.info("Scheduler stopped.")

    def join_workers(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [worker for worker in self._workers if worker.is_alive()]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            pending[0].join(timeout=remaining)

    def _work(self, job: JobSpec, scheduled_for: Optional[datetime]) -> None:
        try:
            run_job(job, self.settings.logs_folder, scheduled_for=scheduled_for)
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("[%s] Job run crashed: %s", job.name, exc)
        finally:
            self._finish(job)

    def _dispatch(self, job: JobSpec, scheduled_for: Optional[datetime]) -> bool:
        # Caller holds self._lock.
        if self._stop_event.is_set():
            return False
        state = self._states[job.name]
        if state.running_count > 0 and job.overlap == "skip":
            logger.info("Skipping overlapping run for %s", job.name)
            return False
        if state.running_count > 0 and job.overlap == "queue":
            if not state.queued_pending:
                state.queued_pending = True
                logger.info("Queueing one pending run for %s", job.name)
            return False
        state.running_count += 1
        logger.info(
            "Dispatching %s (overlap=%s, running=%s)",
            job.name,
            job.overlap,
            state.running_count,
        )
        worker = threading.Thread(
            target=self._work,
            args=(job, scheduled_for),
            daemon=True,
            name=f"cronjobs-job-{job.log_name}",
        )
        self._workers.add(worker)
        worker.start()
        return True

    def _finish(self, job: JobSpec) -> None:
        with self._lock:
            self._workers.discard(threading.current_thread())
            state = self._states[job.name]
            state.running_count = max(state.running_count - 1, 0)
            if state.running_count == 0 and state.queued_pending:
                state.queued_pending = False
                logger.info("Starting queued pending run for %s", job.name)
                self._dispatch(job, datetime.now(tz=UTC))

    def _seconds_until_next_fire(self, max_idle_seconds: float) -> float:
        upcoming = [state.next_fire for state in self._states.values() if state.next_fire is not None]
        if not upcoming:
            return max_idle_seconds
        delta = (min(upcoming) - datetime.now(tz=UTC)).total_seconds()
        return min(max(delta, 0.0), max_idle_seconds)


def select_jobs(config: ScheduleConfig, job_name: Optional[str]) -> List[JobSpec]:
    if not job_name:
        return list(config.jobs)
    selected = [job for job in config.jobs if job.name == job_name]
    if not selected:
        raise CronError(f'Unknown job "{job_name}".')
    return selected


def command_validate(settings: Settings) -> int:
    config = load_schedule(settings)
    triggers = compile_triggers(config.jobs)
    print(f"Config valid: {config.source}")
    print(f"Total jobs: {len(config.jobs)}")
    for job in config.jobs:
        trigger = triggers[job.name]
        print(f"- {job.name}: {trigger.kind} ({job.interval}), {len(job.commands)} command(s)")
    print(f"Total services: {len(config.services)}")
    for service in config.services:
        print(f"- {service.name}: restart={str(service.restart).lower()}")
    return 0


def command_preview(settings: Settings, job_name: Optional[str], count: int) -> int:
    config = load_schedule(settings)
    selected = select_jobs(config, job_name)
    tz, tz_name = system_timezone()
    triggers = compile_triggers(selected, tz=tz)
    now_utc = datetime.now(tz=UTC)

    for job in selected:
        print("=" * 80)
        print(f"Job: {job.name}")
        print(f"Interval: {job.interval} ({triggers[job.name].kind}, {tz_name})")
        print(f"Log file: {settings.logs_folder / (job.log_name + '.log')}")
        print("Commands:")
        if not job.commands:
            print("- (none)")
        for command in job.commands:
            print(f"- {command}")
        print(f"Next {count} run(s):")
        for run_dt in triggers[job.name].next_times(count, now_utc=now_utc):
            print(f"- {run_dt.astimezone(tz).isoformat()}")
    print("=" * 80)
    return 0


def command_run(settings: Settings, job_name: Optional[str]) -> int:
    config = load_schedule(settings)
    selected = select_jobs(config, job_name)
    settings.logs_folder.mkdir(parents=True, exist_ok=True)
    exit_code = 0
    for job in selected:
        result = run_job(job, settings.logs_folder)
        if not result.success:
            exit_code = 1
    return exit_code


def command_start(settings: Settings) -> int:
    config = load_schedule(settings)
    scheduler = Scheduler(settings, config)
    if not scheduler.start():
        return 0

    previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: scheduler.request_stop())
    try:
        scheduler.serve_forever()
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted by user.")
        return 130
    finally:
        scheduler.stop()
        signal.signal(signal.SIGTERM, previous_handler)
    return 0


def start_daemon(settings: Settings) -> int:
    # Resolve and validate in the foreground so config errors reach the operator.
    config_path = find_config(settings).resolve()
    compile_triggers(parse_config(config_path).jobs)

    settings.logs_folder.mkdir(parents=True, exist_ok=True)
    log_path = settings.logs_folder / DAEMON_LOG_FILE
    command = [sys.executable, str(Path(__file__).resolve()), "--config", str(config_path), "start"]
    with log_path.open("ab") as output:
        child = subprocess.Popen(
            command,
            cwd=os.getcwd(),
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=output,
            start_new_session=True,
        )
    print(f"cronjobs running in background (pid {child.pid}); output in {log_path}")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="cronjobs scheduler and service supervisor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to jobs file (default: ./{DEFAULT_JOBS_FILE}.yaml|yml|json, then $HOME)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    config_help = "Path to jobs file"

    start_parser = subparsers.add_parser("start", help="Run the scheduler")
    start_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    start_parser.add_argument(
        "-d",
        "--daemon",
        action="store_true",
        help=f"Detach and log to <logs folder>/{DAEMON_LOG_FILE}",
    )

    validate_parser = subparsers.add_parser("validate", help="Validate jobs file and schedules")
    validate_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)

    preview_parser = subparsers.add_parser("preview", help="Show upcoming fire times")
    preview_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    preview_parser.add_argument("--job", help="Preview a single job by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run jobs once, now")
    run_parser.add_argument("--config", default=argparse.SUPPRESS, help=config_help)
    run_parser.add_argument("--job", help="Run one job by name")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = Settings.from_env()
        if args.config:
            settings = replace(settings, config_path=Path(args.config).expanduser().resolve())
        setup_logging(settings.debug)

        if args.command == "validate":
            return command_validate(settings)
        if args.command == "preview":
            if args.count <= 0:
                raise CronError("--count must be >= 1")
            return command_preview(settings, job_name=args.job, count=args.count)
        if args.command == "run":
            return command_run(settings, job_name=args.job)
        if args.command == "start":
            if args.daemon:
                return start_daemon(settings)
            return command_start(settings)
        raise CronError(f"Unsupported command: {args.command}")
    except CronError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
