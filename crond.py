#!/usr/bin/env python3
"""
crond.py

Single-crontab cron daemon. All schedules are evaluated in UTC.
"""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import os
import re
import resource
import select
import signal
import subprocess
import sys
import tempfile
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml
from croniter import croniter


LOGGER_NAME = "crond"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DEFAULT_CRONTAB = "/etc/crontab"
DEFAULT_SHELL = "/bin/sh"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_OUTPUT_LOG_LEVEL = "DEBUG"
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_WAIT_INTERVAL = 0.05
PREVIEW_HORIZON = timedelta(days=366)
READ_CHUNK = 65536
# Per stream, per pump.
READ_LIMIT = 262144
MAX_LINE = 65536

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}
CONFIG_KEYS = {
    "crontab",
    "shell",
    "working_dir",
    "inherit_environment",
    "log_level",
    "log_file",
    "syslog",
    "output_log_level",
}

MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
# ISO numbering: Monday = 1, Sunday = 7.
WEEKDAYS = {
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
    "sun": 7,
}
FIELD_DOMAINS = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day_of_month": (1, 31),
    "month": (1, 12),
    "day_of_week": (1, 7),
}

HANDLED_SIGNALS = (signal.SIGCHLD, signal.SIGHUP)
MNEMONIC_RE = re.compile(r"[A-Za-z]+")
VARIABLE_RE = re.compile(r"^[A-Za-z_]+[ \t]*=[ \t]*.+$")
VARIABLE_SPLIT_RE = re.compile(r"[ \t]*=[ \t]*")

UTC = timezone.utc
logger = logging.getLogger(LOGGER_NAME)


class CronError(Exception):
    """Base error for crond."""


class ConfigError(CronError):
    """Daemon config validation error."""


class LoadError(CronError):
    """The crontab file could not be read."""


class ParseError(CronError):
    """A single crontab line could not be parsed."""


class SpawnError(CronError):
    """A child process could not be created."""


class ReapError(CronError):
    """The exit status of a child process could not be collected."""


@dataclass(frozen=True)
class DaemonConfig:
    crontab: Path = Path(DEFAULT_CRONTAB)
    shell: str = DEFAULT_SHELL
    working_dir: Optional[Path] = None
    inherit_environment: bool = False
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[Path] = None
    syslog: bool = False
    output_log_level: str = DEFAULT_OUTPUT_LOG_LEVEL


@dataclass
class ProcessResult:
    pid: int
    command: str
    exit_code: Optional[int]
    stdout_lines: int
    stderr_lines: int


@dataclass
class Crontab:
    jobs: List["Job"]
    variables: Dict[str, str]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_minute(now: datetime) -> datetime:
    return _ensure_aware_utc(now).replace(second=0, microsecond=0) + timedelta(minutes=1)


def match_field(unit: int, spec: str, mnemonics: Optional[Mapping[str, int]] = None) -> bool:
    """Evaluate one crontab field spec against a calendar unit.

    The spec is a comma-separated list; the field matches when any element
    matches. Elements that cannot be parsed never match.
    """
    table = mnemonics or {}
    for part in spec.split(","):
        try:
            if _match_part(unit, part, table):
                return True
        except ValueError:
            continue
    return False


def _match_part(unit: int, part: str, mnemonics: Mapping[str, int]) -> bool:
    text = _replace_mnemonics(part.strip(), mnemonics)
    base, has_step, step_text = text.partition("/")
    step = _parse_number(step_text) if has_step else 1
    if step == 0:
        raise ValueError(f'Zero step in "{part}".')

    # Steps apply to the absolute unit value, not relative to a range start.
    if unit % step != 0:
        return False
    if base == "*":
        return True
    if "-" in base:
        low_text, _, high_text = base.partition("-")
        return _parse_number(low_text) <= unit <= _parse_number(high_text)
    return unit == _parse_number(base)


def _replace_mnemonics(text: str, mnemonics: Mapping[str, int]) -> str:
    if not mnemonics:
        return text

    def repl(match: re.Match[str]) -> str:
        token = match.group(0)
        value = mnemonics.get(token.lower())
        return token if value is None else str(value)

    return MNEMONIC_RE.sub(repl, text)


def _parse_number(text: str) -> int:
    token = text.strip()
    if not token.isdigit():
        raise ValueError(f'Invalid number "{text}".')
    return int(token)


def _is_unrestricted(spec: str) -> bool:
    return spec.strip().startswith("*")


@dataclass(frozen=True)
class Job:
    """One crontab entry: five field specs, a command and its environment."""

    minute: str
    hour: str
    day_of_month: str
    month: str
    day_of_week: str
    command: str
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    line: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def matches(self, instant: datetime) -> bool:
        moment = _ensure_aware_utc(instant)
        return (
            match_field(moment.minute, self.minute)
            and match_field(moment.hour, self.hour)
            and self.matches_date(moment)
        )

    def matches_date(self, instant: datetime) -> bool:
        """Month and day fields only.

        Day-of-month and day-of-week are OR'd when both are restricted;
        if either starts with "*" both must match, as in crontab(5).
        """
        moment = _ensure_aware_utc(instant)
        if not match_field(moment.month, self.month, MONTHS):
            return False
        day_of_month = match_field(moment.day, self.day_of_month)
        day_of_week = match_field(moment.isoweekday(), self.day_of_week, WEEKDAYS)
        if _is_unrestricted(self.day_of_month) or _is_unrestricted(self.day_of_week):
            return day_of_month and day_of_week
        return day_of_month or day_of_week

    def resolve_shell(self, default_shell: str = DEFAULT_SHELL) -> str:
        return self.env.get("SHELL") or os.environ.get("SHELL") or default_shell

    def spawn(
        self,
        default_shell: str = DEFAULT_SHELL,
        inherit_env: bool = False,
        cwd: Optional[Path] = None,
    ) -> "Process":
        env: Dict[str, str] = os.environ.copy() if inherit_env else {}
        env.update(self.env)
        return Process(
            self.command,
            env,
            shell=self.resolve_shell(default_shell),
            cwd=cwd or Path(tempfile.gettempdir()),
        )

    def fields(self) -> Dict[str, str]:
        return {
            "minute": self.minute,
            "hour": self.hour,
            "day_of_month": self.day_of_month,
            "month": self.month,
            "day_of_week": self.day_of_week,
        }

    def time_spec(self) -> str:
        return " ".join(self.fields().values())


def _read_available(fd: int, limit: int = READ_LIMIT) -> bytes:
    chunks: List[bytes] = []
    total = 0
    while total < limit:
        try:
            chunk = os.read(fd, min(READ_CHUNK, limit - total))
        except BlockingIOError:
            break
        if not chunk:
            break
        chunks.append(chunk)
        total += len(chunk)
    return b"".join(chunks)


def _take_lines(buffer: bytearray) -> List[bytes]:
    """Remove complete lines from `buffer` and return them.

    An unterminated tail is left in place until it reaches MAX_LINE bytes,
    at which point it is cut into MAX_LINE pieces.
    """
    lines: List[bytes] = []
    end = buffer.rfind(b"\n")
    if end >= 0:
        lines = bytes(buffer[:end]).split(b"\n")
        del buffer[: end + 1]
    while len(buffer) >= MAX_LINE:
        lines.append(bytes(buffer[:MAX_LINE]))
        del buffer[:MAX_LINE]
    return lines


class Process:
    """A running `<shell> -c <command>` child with captured output."""

    def __init__(self, command: str, env: Mapping[str, str], shell: str = DEFAULT_SHELL, cwd: Optional[Path] = None):
        self._command = command
        self._closed = False
        self._stdout_buf = bytearray()
        self._stderr_buf = bytearray()
        self.stdout_line_count = 0
        self.stderr_line_count = 0
        try:
            self._popen = subprocess.Popen(
                [shell, "-c", command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=dict(env),
                close_fds=True,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            raise SpawnError(f"unable to execute '{shell}' for '{command}': {exc}") from exc

        os.set_blocking(self._popen.stdout.fileno(), False)
        os.set_blocking(self._popen.stderr.fileno(), False)

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def command(self) -> str:
        return self._command

    @property
    def stdout(self) -> Any:
        return self._popen.stdout

    @property
    def stderr(self) -> Any:
        return self._popen.stderr

    @property
    def returncode(self) -> Optional[int]:
        return self._popen.returncode

    @property
    def signal(self) -> Optional[int]:
        """Number of the signal that terminated the child, if any."""
        code = self._popen.returncode
        if code is not None and code < 0:
            return -code
        return None

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError(f"Process {self.pid} is already closed.")

    def running(self) -> bool:
        self._check_open()
        return self._popen.poll() is None

    def pump(self) -> Tuple[List[bytes], List[bytes]]:
        """Read what is available without blocking and return complete lines.

        At most READ_LIMIT bytes are read from each pipe per call. Only the
        unfinished last line of each stream stays buffered.
        """
        self._check_open()
        self._stdout_buf += _read_available(self._popen.stdout.fileno())
        self._stderr_buf += _read_available(self._popen.stderr.fileno())
        stdout, stderr = _take_lines(self._stdout_buf), _take_lines(self._stderr_buf)
        self.stdout_line_count += len(stdout)
        self.stderr_line_count += len(stderr)
        return stdout, stderr

    def drain(self) -> Tuple[List[bytes], List[bytes]]:
        """Pump once more and also hand back any unterminated last line."""
        stdout, stderr = self.pump()
        if self._stdout_buf:
            stdout.append(bytes(self._stdout_buf))
            self._stdout_buf.clear()
            self.stdout_line_count += 1
        if self._stderr_buf:
            stderr.append(bytes(self._stderr_buf))
            self._stderr_buf.clear()
            self.stderr_line_count += 1
        return stdout, stderr

    def close(self) -> int:
        self._check_open()
        self._closed = True
        self._popen.stdout.close()
        self._popen.stderr.close()
        try:
            return self._popen.wait()
        except OSError as exc:
            raise ReapError(f"unable to collect exit status of pid #{self.pid}: {exc}") from exc


def parse_line(line: str, variables: Dict[str, str], line_number: int = 0) -> Optional[Job]:
    text = line.strip()
    if not text or text.startswith("#"):
        return None

    if VARIABLE_RE.match(text):
        name, value = VARIABLE_SPLIT_RE.split(text, maxsplit=1)
        if len(value) >= 2 and value[0] in ("'", '"') and value[-1] == value[0]:
            value = value[1:-1]
        variables[name] = value
        return None

    fields = text.split(None, 5)
    if len(fields) < 6:
        raise ParseError(f"expected 6 fields, found {len(fields)}")
    minute, hour, day_of_month, month, day_of_week, command = fields
    return Job(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month=month,
        day_of_week=day_of_week,
        command=command,
        env=variables,
        line=line_number,
    )


def parse_crontab(lines: Iterable[str], source: str = "<crontab>", log: Optional[logging.Logger] = None) -> Crontab:
    log = log or logger
    variables: Dict[str, str] = {}
    jobs: List[Job] = []
    for number, line in enumerate(lines, start=1):
        try:
            job = parse_line(line, variables, number)
        except ParseError as exc:
            log.warning("error parsing %s at line %s (%s)", source, number, exc)
            continue
        if job is not None:
            jobs.append(job)
    return Crontab(jobs=jobs, variables=variables)


def load_crontab(path: Path, log: Optional[logging.Logger] = None) -> Crontab:
    log = log or logger
    log.debug("loading crontab from %s", path)
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise LoadError(f"unable to read {path}: {exc}") from exc
    return parse_crontab(text.splitlines(), str(path), log)


def _output_lines(lines: Iterable[bytes]) -> List[str]:
    decoded = (line.decode("utf-8", errors="replace").strip() for line in lines)
    return [line for line in decoded if line]


def peak_memory_kb() -> float:
    # ru_maxrss is kilobytes on Linux and bytes on macOS.
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return usage / 1024.0 if sys.platform == "darwin" else float(usage)


class CronDaemon:
    """Wake each minute, spawn due jobs and reap finished children.

    Signal handlers only queue the signal number; every change to `jobs`,
    `vars` and `procs` happens on the main loop in `process_notifications`,
    `dispatch` or `reap`.
    """

    def __init__(
        self,
        config: DaemonConfig,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self._clock = clock or utc_now
        self.jobs: List[Job] = []
        self.vars: Dict[str, str] = {}
        self.procs: Dict[int, Process] = {}
        self._notifications: Deque[int] = deque()
        self._wakeup_fds: Optional[Tuple[int, int]] = None
        self._previous_wakeup_fd = -1
        self._previous_handlers: Dict[int, Any] = {}

        crontab = load_crontab(config.crontab, self.logger)
        self.jobs, self.vars = crontab.jobs, crontab.variables
        self.logger.debug("initialised with %s job(s) from %s", len(self.jobs), config.crontab)

    @property
    def output_level(self) -> int:
        return LOG_LEVELS[self.config.output_log_level]

    def reload(self) -> bool:
        try:
            crontab = load_crontab(self.config.crontab, self.logger)
        except LoadError as exc:
            self.logger.error("reload failed; keeping %s previous job(s): %s", len(self.jobs), exc)
            return False
        self.jobs, self.vars = crontab.jobs, crontab.variables
        self.logger.info("reloaded %s job(s) from %s", len(self.jobs), self.config.crontab)
        return True

    def dispatch(self, now: datetime) -> List[Process]:
        self.logger.debug("running jobs for %s", _ensure_aware_utc(now).isoformat())
        spawned: List[Process] = []
        for job in self.jobs:
            if not job.matches(now):
                self.logger.debug("no match for %s", job.time_spec())
                continue
            self.logger.info("time spec %s matches, executing '%s'", job.time_spec(), job.command)
            try:
                proc = job.spawn(
                    default_shell=self.config.shell,
                    inherit_env=self.config.inherit_environment,
                    cwd=self.config.working_dir,
                )
            except SpawnError as exc:
                self.logger.warning("line %s: %s", job.line, exc)
                continue
            self.procs[proc.pid] = proc
            spawned.append(proc)
            self.logger.debug("spawned process %s", proc.pid)
        return spawned

    def run_for(self, instant: datetime) -> List[Process]:
        """Dispatch once for `instant` without installing signal handlers."""
        return self.dispatch(instant)

    def reap(self) -> List[ProcessResult]:
        results: List[ProcessResult] = []
        for pid, proc in list(self.procs.items()):
            if proc.running():
                self._log_output(pid, *proc.pump())
                continue
            results.append(self._finish(pid, proc))
        self.logger.debug("%s process(es) still running", len(self.procs))
        return results

    def _log_output(self, pid: int, stdout: List[bytes], stderr: List[bytes]) -> None:
        for line in _output_lines(stderr):
            self.logger.info("pid #%s: %s", pid, line)
        if not self.logger.isEnabledFor(self.output_level):
            return
        for line in _output_lines(stdout):
            self.logger.log(self.output_level, "pid #%s stdout: %s", pid, line)

    def _finish(self, pid: int, proc: Process) -> ProcessResult:
        self.logger.debug("pid #%s has finished", pid)
        self._log_output(pid, *proc.drain())
        self.logger.debug("pid #%s: %s output line(s)", pid, proc.stdout_line_count)

        exit_code: Optional[int] = None
        try:
            exit_code = proc.close()
        except ReapError as exc:
            self.logger.error("pid #%s (%s): %s", pid, proc.command, exc)
        finally:
            del self.procs[pid]

        if exit_code is not None:
            if proc.signal is not None:
                self.logger.info("pid #%s (%s) killed by signal %s", pid, proc.command, proc.signal)
            else:
                self.logger.info("pid #%s (%s) exited with code %s", pid, proc.command, exit_code)
        return ProcessResult(
            pid=pid,
            command=proc.command,
            exit_code=exit_code,
            stdout_lines=proc.stdout_line_count,
            stderr_lines=proc.stderr_line_count,
        )

    def wait_for_all(self, timeout: Optional[float] = None, interval: float = DEFAULT_WAIT_INTERVAL) -> List[ProcessResult]:
        deadline = None if timeout is None else time.monotonic() + timeout
        results: List[ProcessResult] = []
        while True:
            results.extend(self.reap())
            if not self.procs:
                return results
            if deadline is not None and time.monotonic() >= deadline:
                return results
            time.sleep(interval)

    def notify(self, signum: int, frame: Any = None) -> None:
        self._notifications.append(signum)

    def process_notifications(self) -> None:
        seen = set()
        while self._notifications:
            seen.add(self._notifications.popleft())
        if not seen:
            return
        if signal.SIGHUP in seen:
            self.logger.info("SIGHUP received, reloading")
            self.reload()
        self.reap()

    def install_signal_handlers(self) -> None:
        read_fd, write_fd = os.pipe()
        os.set_blocking(read_fd, False)
        os.set_blocking(write_fd, False)
        self._wakeup_fds = (read_fd, write_fd)
        self._previous_wakeup_fd = signal.set_wakeup_fd(write_fd, warn_on_full_buffer=False)
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self.notify)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
        if self._wakeup_fds is not None:
            signal.set_wakeup_fd(self._previous_wakeup_fd)
            for fd in self._wakeup_fds:
                os.close(fd)
            self._wakeup_fds = None

    def _wait_for_notification(self, timeout: float) -> bool:
        if self._wakeup_fds is None:
            time.sleep(timeout)
            return bool(self._notifications)
        read_fd = self._wakeup_fds[0]
        readable, _, _ = select.select([read_fd], [], [], timeout)
        if readable:
            _read_available(read_fd)
        return bool(readable) or bool(self._notifications)

    def sleep_to_next_minute(self) -> datetime:
        target = next_minute(self._clock())
        while True:
            remaining = (target - self._clock()).total_seconds()
            if remaining <= 0:
                return target
            self.logger.debug("sleeping %.3fs until %s", remaining, target.isoformat())
            if self._wait_for_notification(remaining):
                self.process_notifications()

    def run(self) -> None:
        self.install_signal_handlers()
        self.logger.info("entering main loop with %s job(s) from %s", len(self.jobs), self.config.crontab)
        try:
            while True:
                tick = self.sleep_to_next_minute()
                self.dispatch(tick)
                self.reap()
                self.logger.debug(
                    "%s live process(es), peak memory usage: %.1fKB",
                    len(self.procs),
                    peak_memory_kb(),
                )
        finally:
            self.restore_signal_handlers()


def next_run_times(job: Job, count: int, after: Optional[datetime] = None) -> List[datetime]:
    cursor = next_minute(after or utc_now())
    horizon = cursor + PREVIEW_HORIZON
    runs: List[datetime] = []
    while len(runs) < count and cursor < horizon:
        if not job.matches_date(cursor):
            cursor = cursor.replace(hour=0, minute=0) + timedelta(days=1)
            continue
        if job.matches(cursor):
            runs.append(cursor)
        cursor += timedelta(minutes=1)
    return runs


def field_warnings(job: Job) -> List[str]:
    warnings: List[str] = []
    expression = job.time_spec()
    if not croniter.is_valid(expression):
        warnings.append(f'"{expression}" is not a valid cron expression; some fields will never match')

    tables: Dict[str, Mapping[str, int]] = {"month": MONTHS, "day_of_week": WEEKDAYS}
    for name, spec in job.fields().items():
        low, high = FIELD_DOMAINS[name]
        for part in spec.split(","):
            base = _replace_mnemonics(part.strip(), tables.get(name, {})).partition("/")[0]
            for number in re.findall(r"\d+", base):
                if not low <= int(number) <= high:
                    warnings.append(f"{name} value {number} is outside {low}-{high}")
                    if name == "day_of_week" and int(number) == 0:
                        warnings.append('Sunday is 7 (or "sun") here, not 0')
    return warnings


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_level(value: Any, field_path: str, default: str) -> str:
    if value is None:
        return default
    level = ensure_str(value, field_path).upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f'Error: {field_path} must be one of {sorted(LOG_LEVELS)}, got "{value}".')
    return level


def _resolve_path(value: Any, config_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path))
    resolved = raw if raw.is_absolute() else (config_dir / raw)
    return resolved.resolve()


def load_config(config_path: Path) -> DaemonConfig:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Error: Unable to read {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    unknown = set(payload.keys()) - CONFIG_KEYS
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")

    config_dir = config_path.parent
    working_dir = None
    if payload.get("working_dir") is not None:
        working_dir = _resolve_path(payload["working_dir"], config_dir, "working_dir")
        if not working_dir.is_dir():
            raise ConfigError(f"Error: working_dir does not exist: {working_dir}")
    log_file = None
    if payload.get("log_file") is not None:
        log_file = _resolve_path(payload["log_file"], config_dir, "log_file")

    return DaemonConfig(
        crontab=_resolve_path(payload.get("crontab", DEFAULT_CRONTAB), config_dir, "crontab"),
        shell=ensure_str(payload.get("shell", DEFAULT_SHELL), "shell"),
        working_dir=working_dir,
        inherit_environment=ensure_bool(payload.get("inherit_environment"), "inherit_environment", False),
        log_level=ensure_level(payload.get("log_level"), "log_level", DEFAULT_LOG_LEVEL),
        log_file=log_file,
        syslog=ensure_bool(payload.get("syslog"), "syslog", False),
        output_log_level=ensure_level(payload.get("output_log_level"), "output_log_level", DEFAULT_OUTPUT_LOG_LEVEL),
    )


def setup_logging(level: str = DEFAULT_LOG_LEVEL, log_file: Optional[Path] = None, syslog: bool = False) -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()
    log.setLevel(LOG_LEVELS[level])

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    log.addHandler(stream_handler)
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)
    if syslog:
        address: Any = "/dev/log" if os.path.exists("/dev/log") else ("localhost", 514)
        syslog_handler = logging.handlers.SysLogHandler(
            address=address,
            facility=logging.handlers.SysLogHandler.LOG_CRON,
        )
        syslog_handler.setFormatter(logging.Formatter(f"{LOGGER_NAME}[%(process)d]: %(message)s"))
        log.addHandler(syslog_handler)
    return log


def command_check(config: DaemonConfig, log: logging.Logger) -> int:
    crontab = load_crontab(config.crontab, log)
    warning_count = 0
    print(f"Crontab: {config.crontab}")
    print(f"Total jobs: {len(crontab.jobs)}")
    for name, value in crontab.variables.items():
        print(f"{name}={value}")
    for job in crontab.jobs:
        print(f"- line {job.line}: {job.time_spec()} -> {job.command}")
        for warning in field_warnings(job):
            warning_count += 1
            print(f"  warning: {warning}")
    return 1 if warning_count else 0


def command_preview(
    config: DaemonConfig,
    log: logging.Logger,
    line: Optional[int] = None,
    count: int = DEFAULT_PREVIEW_COUNT,
    now: Optional[datetime] = None,
) -> int:
    jobs = load_crontab(config.crontab, log).jobs
    if line is not None:
        jobs = [job for job in jobs if job.line == line]
        if not jobs:
            raise CronError(f"No job at line {line} of {config.crontab}.")
    start = now or utc_now()

    for job in jobs:
        print("=" * 80)
        print(f"Line {job.line}: {job.command}")
        print(f"Schedule: {job.time_spec()} (UTC)")
        print(f"Next {count} run(s):")
        runs = next_run_times(job, count, after=start)
        if not runs:
            print("- none")
        for run_dt in runs:
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)
    return 0


def command_run(config: DaemonConfig, log: logging.Logger, at: Optional[datetime] = None) -> int:
    daemon = CronDaemon(config, log)
    instant = _ensure_aware_utc(at) if at else utc_now().replace(second=0, microsecond=0)
    processes = daemon.run_for(instant)
    if not processes:
        log.info("No jobs due at %s", instant.isoformat())
        return 0
    results = daemon.wait_for_all()
    failed = [result for result in results if result.exit_code != 0]
    return 1 if failed else 0


def command_daemon(config: DaemonConfig, log: logging.Logger) -> int:
    daemon = CronDaemon(config, log)
    try:
        daemon.run()
    except KeyboardInterrupt:
        log.info("Daemon interrupted by user.")
        return 130
    return 0


def parse_instant(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _ensure_aware_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f'must be an ISO datetime, got "{value}"') from exc


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="crond: single-crontab, UTC-only cron daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to an optional crond YAML config")
    parser.add_argument("--crontab", help=f"Path to the crontab (default: {DEFAULT_CRONTAB})")
    parser.add_argument("--log-level", type=str.upper, choices=sorted(LOG_LEVELS), help="Override log level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("daemon", help="Run the scheduler loop")
    subparsers.add_parser("check", help="Parse the crontab and report suspicious fields")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming run times")
    preview_parser.add_argument("--line", type=int, help="Preview the job on this crontab line")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run the jobs due at one instant and wait for them")
    run_parser.add_argument("--at", type=parse_instant, help="ISO instant (default: the current UTC minute)")

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> DaemonConfig:
    config = load_config(Path(args.config).resolve()) if args.config else DaemonConfig()
    if args.crontab:
        config = replace(config, crontab=Path(args.crontab).resolve())
    if args.log_level:
        config = replace(config, log_level=args.log_level)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = build_config(args)
        log = setup_logging(config.log_level, config.log_file, config.syslog)
        if args.command == "daemon":
            return command_daemon(config, log)
        if args.command == "check":
            return command_check(config, log)
        if args.command == "preview":
            if args.count <= 0:
                raise CronError("--count must be >= 1")
            return command_preview(config, log, line=args.line, count=args.count)
        if args.command == "run":
            return command_run(config, log, at=args.at)
        raise CronError(f"Unsupported command: {args.command}")
    except CronError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
