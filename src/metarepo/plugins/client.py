"""External plugin client.

Runs one external plugin executable per invocation and talks to it over
stdio with the line-delimited JSON protocol in ``protocol.py``:

    GetInfo -> InfoResponse, then exactly one of
    HandleCommand -> Success | Error, or RegisterCommands -> CommandsResponse.

A reader thread drains the child's stdout for the whole session so a
chatty or slow plugin can never deadlock the writer. Each request is
written from its own thread and guarded by a watchdog timer; when a step
deadline passes the watchdog kills the child and wakes the waiting
caller. The child is always reaped before control returns.
"""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import (
    ExperimentalGateClosed,
    FailureReason,
    NameMismatchError,
    PluginCrashedError,
    PluginReportedError,
    PluginSpawnError,
    PluginTimeoutError,
    ProtocolViolation,
)
from .models import CommandNode, RuntimeConfig
from .protocol import (
    CommandsResponse,
    Error,
    GetInfo,
    HandleCommand,
    InfoResponse,
    RegisterCommands,
    Request,
    Response,
    Success,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)

PLUGIN_MODE_ENV = "METAREPO_PLUGIN_MODE"

_EOF = object()
_TIMEOUT = object()


@dataclass(frozen=True)
class StepTimeouts:
    """Per-step deadlines in seconds."""
    info: float = 30.0
    commands: float = 30.0
    command: float = 30.0
    shutdown: float = 10.0

    def with_override(self, seconds: Optional[float]) -> "StepTimeouts":
        """Apply one value to the info, commands and command steps."""
        if seconds is None:
            return self
        return replace(self, info=seconds, commands=seconds, command=seconds)


class ProcessState(str, Enum):
    STARTING = "starting"
    AWAITING_INFO = "awaiting-info"
    READY = "ready"
    AWAITING_RESULT = "awaiting-result"
    TERMINATED = "terminated"
    FAILED = "failed"


@dataclass
class CommandOutcome:
    """Result of a successful ``HandleCommand`` exchange."""
    exit_code: int = 0
    message: Optional[str] = None


class PluginProcessHandle:
    """One running plugin process.

    Use as a context manager: the process is spawned on enter and is
    guaranteed to be terminated and reaped on exit, whatever happened in
    between.
    """

    def __init__(self, name: str, path: Path, cwd: Optional[Path] = None,
                 env: Optional[Dict[str, str]] = None, shutdown_timeout: float = 10.0):
        self.name = name
        self.path = Path(path)
        self.cwd = cwd
        self.env = {**os.environ, **(env or {}), PLUGIN_MODE_ENV: "1"}
        self.shutdown_timeout = shutdown_timeout
        self.state = ProcessState.STARTING
        self.failure: Optional[FailureReason] = None
        self.process: Optional[subprocess.Popen] = None
        self._lines: queue.Queue = queue.Queue()
        self._reader: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._active_step: Optional[object] = None
        self._timed_out = False
        self._eof = False

    def __enter__(self) -> "PluginProcessHandle":
        self.spawn()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.state != ProcessState.TERMINATED:
            if self.state == ProcessState.FAILED:
                self._kill()
            self.close()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def fail(self, reason: FailureReason) -> None:
        self.state = ProcessState.FAILED
        self.failure = reason

    def spawn(self) -> None:
        try:
            self.process = subprocess.Popen(
                [str(self.path)],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=None,
                cwd=str(self.cwd) if self.cwd else None,
                env=self.env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            self.fail(FailureReason.SPAWN_FAILED)
            raise PluginSpawnError(self.name, f"cannot execute {self.path}: {e.strerror or e}") from e

        logger.debug("Spawned plugin %s (pid %s)", self.name, self.process.pid)
        self._reader = threading.Thread(
            target=self._read_stdout, name=f"plugin-{self.name}-reader", daemon=True
        )
        self._reader.start()

    def _read_stdout(self) -> None:
        stdout = self.process.stdout
        try:
            for line in stdout:
                self._lines.put(line)
        except (OSError, ValueError) as e:
            # stdout closed underneath us during teardown
            logger.debug("Reader for %s stopped: %s", self.name, e)
        finally:
            self._lines.put(_EOF)

    def _write(self, payload: str, errors: List[BaseException]) -> None:
        try:
            self.process.stdin.write(payload)
            self.process.stdin.flush()
        except (OSError, ValueError) as e:
            errors.append(e)

    def _on_deadline(self, step: object) -> None:
        with self._lock:
            if self._active_step is not step:
                return
            self._timed_out = True
        self._lines.put(_TIMEOUT)
        self._kill()

    def _kill(self) -> None:
        if self.process is not None and self.process.poll() is None:
            logger.debug("Killing plugin %s (pid %s)", self.name, self.process.pid)
            self.process.kill()

    def exchange(self, request: Request, step: str, timeout: float) -> Response:
        """Write one request and wait for exactly one response.

        Raises:
            PluginTimeoutError: no response within ``timeout``; the child is killed.
            PluginCrashedError: stdout closed before a response arrived.
            ProtocolViolation: the response line is not a valid message.
        """
        if self.process is None or self.state in (ProcessState.FAILED, ProcessState.TERMINATED):
            raise RuntimeError(f"plugin '{self.name}' session is not open")

        payload = encode_message(request)
        logger.debug("-> %s %s (%d bytes)", self.name, request.TYPE, len(payload))

        token = object()
        write_errors: List[BaseException] = []
        with self._lock:
            self._active_step = token
        watchdog = threading.Timer(timeout, self._on_deadline, args=(token,))
        watchdog.daemon = True
        writer = threading.Thread(
            target=self._write, args=(payload, write_errors),
            name=f"plugin-{self.name}-writer", daemon=True,
        )
        watchdog.start()
        writer.start()
        try:
            item = self._next_line()
        finally:
            watchdog.cancel()
            with self._lock:
                self._active_step = None

        if self._timed_out:
            self.fail(FailureReason.TIMEOUT)
            raise PluginTimeoutError(self.name, step, timeout)

        if item is _EOF:
            self._eof = True
            self.fail(FailureReason.PROCESS_EXITED)
            if write_errors:
                logger.debug("Write to %s failed: %s", self.name, write_errors[0])
            raise PluginCrashedError(self.name, self._returncode())

        # The plugin may answer before it has consumed the whole request
        writer.join(timeout)
        if writer.is_alive():
            self._kill()
            writer.join()

        try:
            response = decode_message(item)
        except ValueError as e:
            self.fail(FailureReason.PROTOCOL_VIOLATION)
            raise ProtocolViolation(self.name, f"invalid response to {request.TYPE}: {e}") from e

        logger.debug("<- %s %s", self.name, response.TYPE)
        return response

    def _next_line(self):
        while True:
            item = self._lines.get()
            if item is _TIMEOUT or item is _EOF:
                return item
            if item.strip():
                return item.strip()

    def _returncode(self) -> Optional[int]:
        try:
            return self.process.wait(timeout=self.shutdown_timeout)
        except subprocess.TimeoutExpired:
            return None

    def close(self) -> None:
        """Close stdin, wait for the child to exit and reap it.

        The child is killed if it outlives the shutdown timeout.
        """
        if self.process is None:
            return
        try:
            self.process.stdin.close()
        except (OSError, ValueError) as e:
            logger.debug("Closing stdin of %s: %s", self.name, e)

        try:
            self.process.wait(timeout=self.shutdown_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Plugin %s did not exit within %gs; killing it", self.name, self.shutdown_timeout
            )
            self.process.kill()
            self.process.wait()

        if self._reader is not None:
            self._reader.join(self.shutdown_timeout)
        self.process.stdout.close()
        logger.debug("Plugin %s exited with code %s", self.name, self.process.returncode)
        if self.state != ProcessState.FAILED:
            self.state = ProcessState.TERMINATED


class ExternalPluginClient:
    """Drives one session with an external plugin executable."""

    def __init__(self, name: str, path: Union[str, Path], timeouts: Optional[StepTimeouts] = None):
        self.name = name
        self.path = Path(path)
        self.timeouts = timeouts or StepTimeouts()
        self.last_handle: Optional[PluginProcessHandle] = None

    def _open(self, cwd: Optional[Path]) -> PluginProcessHandle:
        handle = PluginProcessHandle(
            self.name, self.path, cwd=cwd, shutdown_timeout=self.timeouts.shutdown
        )
        self.last_handle = handle
        return handle

    def _reject(self, handle: PluginProcessHandle, response: Response, expected: str) -> None:
        if isinstance(response, Error):
            handle.close()
            raise PluginReportedError(self.name, response.message)
        handle.fail(FailureReason.PROTOCOL_VIOLATION)
        raise ProtocolViolation(self.name, f"expected {expected}, got {response.TYPE}")

    def _handshake(self, handle: PluginProcessHandle, experimental_enabled: bool) -> InfoResponse:
        handle.state = ProcessState.AWAITING_INFO
        response = handle.exchange(GetInfo(), "InfoResponse", self.timeouts.info)
        if not isinstance(response, InfoResponse):
            self._reject(handle, response, InfoResponse.TYPE)

        if response.name != self.name:
            handle.fail(FailureReason.NAME_MISMATCH)
            raise NameMismatchError(self.name, response.name)
        if response.experimental and not experimental_enabled:
            handle.fail(FailureReason.EXPERIMENTAL_GATE_CLOSED)
            raise ExperimentalGateClosed(self.name)

        handle.state = ProcessState.READY
        return response

    def handle_command(self, args: List[str], config: RuntimeConfig) -> CommandOutcome:
        """Run one command in a fresh plugin process.

        Raises:
            PluginReportedError: the plugin answered with ``Error``.
            PluginFailure: any host-side failure (spawn, handshake,
                protocol, timeout, crash).
        """
        with self._open(config.working_directory) as handle:
            self._handshake(handle, config.experimental_enabled)

            handle.state = ProcessState.AWAITING_RESULT
            response = handle.exchange(
                HandleCommand(command=self.name, args=list(args), config=config),
                "command result",
                self.timeouts.command,
            )
            if not isinstance(response, Success):
                self._reject(handle, response, Success.TYPE)

            handle.close()
        return CommandOutcome(exit_code=response.exit_code, message=response.message)

    def fetch_commands(self, experimental_enabled: bool = False,
                       cwd: Optional[Path] = None) -> CommandNode:
        """Ask the plugin for its command tree (used by help)."""
        with self._open(cwd) as handle:
            self._handshake(handle, experimental_enabled)
            response = handle.exchange(RegisterCommands(), "CommandsResponse", self.timeouts.commands)
            if not isinstance(response, CommandsResponse):
                self._reject(handle, response, CommandsResponse.TYPE)
            handle.close()

        tree = response.tree
        if not tree.name:
            tree.name = self.name
        return tree

    def probe(self, cwd: Optional[Path] = None) -> InfoResponse:
        """Perform only the handshake and report what the plugin says about itself."""
        with self._open(cwd) as handle:
            info = self._handshake(handle, experimental_enabled=True)
            handle.close()
        return info
