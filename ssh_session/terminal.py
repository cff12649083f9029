"""
Remote command execution over an authenticated SSHConnection.

SSHTerminal runs commands in three modes:
- execute_command: stdout and stderr merged into one output string
- execute_command_separated: stdout and stderr collected separately
- execute_command_stream: lazy iterator of output chunks as they arrive

Each execution opens its own session channel on the shared transport.
"""

import codecs
import logging
import time
import weakref
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import paramiko

from .connection import SSHConnection
from .errors import (
    ChannelCreationFailed,
    CommandExecutionFailed,
    CommandTimeout,
    ConnectionLost,
    InvalidCommand,
    SessionNotEstablished,
    SSHError,
    wrap_transport_error,
)
from .results import FAILURE_EXIT_CODE, CommandResult

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32768
POLL_INTERVAL = 0.05


class StreamKind(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class OutputChunk:
    stream: StreamKind
    data: str


@dataclass
class TerminalSize:
    width: int = 80
    height: int = 24
    pixel_width: int = 0
    pixel_height: int = 0


class SSHTerminal:
    """
    Command execution sub-session.

    Holds only a weak reference to its connection; if the connection is
    gone or no longer authenticated every call fails with
    SessionNotEstablished.
    """

    def __init__(self, connection: SSHConnection, log: logging.Logger | None = None):
        self._connection_ref = weakref.ref(connection)
        self._log = log or logger
        self._active = False
        self.environment: dict[str, str] = {}
        self.terminal_size = TerminalSize()
        self.use_pty = False
        self.output_handler: Callable[[str], None] | None = None
        self.error_handler: Callable[[str], None] | None = None
        self.completion_handler: Callable[[CommandResult], None] | None = None

    def __del__(self):
        if getattr(self, "_active", False):
            self.close()

    @property
    def is_active(self) -> bool:
        return self._active

    # -- Session management ---------------------------------------------------

    def start(self) -> None:
        """
        Start the terminal session.

        Raises:
            SessionNotEstablished: If the connection is not authenticated.
        """
        connection = self._connection_ref()
        if connection is None or not connection.is_authenticated:
            raise SessionNotEstablished("connection is not authenticated")
        if self._active:
            self._log.warning("Terminal session already started")
            return
        self._active = True
        self._log.info("Terminal session started")

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._log.info("Terminal session closed")

    # -- Command execution ----------------------------------------------------

    def execute_command(self, command: str) -> CommandResult:
        """
        Run a command with stderr merged into stdout.

        Output chunks go to output_handler as they arrive. The exit code is
        the remote exit status. completion_handler is called exactly once,
        on success and on failure.

        Raises:
            SessionNotEstablished: If the session is not usable.
            InvalidCommand: If the command is blank.
            CommandTimeout: If no output arrives within data_timeout.
            CommandExecutionFailed: On any other transport failure; the
                failed CommandResult is attached as ``result``.
        """
        connection = self._require_connection()
        self._validate_command(command)
        self._log.info("Executing command: %s", command)

        start_time = datetime.now()
        try:
            channel = self._open_channel(connection, command, combine_stderr=True)
            try:
                decoder = self._decoder(connection)
                parts: list[str] = []
                for _stream, data in self._read_channel(channel, connection):
                    text = decoder.decode(data)
                    if text:
                        parts.append(text)
                        self._emit("output", self.output_handler, text)
                tail = decoder.decode(b"", final=True)
                if tail:
                    parts.append(tail)
                    self._emit("output", self.output_handler, tail)
                exit_code = channel.recv_exit_status()
            finally:
                channel.close()
        except SSHError as e:
            self._fail(command, start_time, e)

        result = CommandResult.from_times(
            command, exit_code, "".join(parts), "", start_time, datetime.now()
        )
        self._log.info("Command finished: %s", result.summary)
        self._emit("completion", self.completion_handler, result)
        return result

    def execute_command_separated(self, command: str) -> CommandResult:
        """
        Run a command collecting stdout and stderr separately.

        Both streams are fully drained before the result is built. The exit
        code is 0 when stderr is empty and 1 otherwise. Handlers receive the
        collected text once, after the command finishes.
        """
        connection = self._require_connection()
        self._validate_command(command)
        self._log.info("Executing command (separated output): %s", command)

        start_time = datetime.now()
        try:
            channel = self._open_channel(connection, command, combine_stderr=False)
            try:
                decoders = {
                    StreamKind.STDOUT: self._decoder(connection),
                    StreamKind.STDERR: self._decoder(connection),
                }
                collected: dict[StreamKind, list[str]] = {
                    StreamKind.STDOUT: [],
                    StreamKind.STDERR: [],
                }
                for stream, data in self._read_channel(channel, connection):
                    collected[stream].append(decoders[stream].decode(data))
                for stream, decoder in decoders.items():
                    collected[stream].append(decoder.decode(b"", final=True))
            finally:
                channel.close()
        except SSHError as e:
            self._fail(command, start_time, e)

        stdout = "".join(collected[StreamKind.STDOUT])
        stderr = "".join(collected[StreamKind.STDERR])
        result = CommandResult.from_times(
            command, 0 if not stderr else 1, stdout, stderr, start_time, datetime.now()
        )
        self._log.info("Command finished: %s", result.summary)

        if stdout:
            self._emit("output", self.output_handler, stdout)
        if stderr:
            self._emit("error", self.error_handler, stderr)
        self._emit("completion", self.completion_handler, result)
        return result

    def execute_command_stream(self, command: str) -> Iterator[OutputChunk]:
        """
        Run a command and return its output as a lazy iterator.

        Session state and the command are checked immediately; the channel
        is opened on first iteration. Chunks are yielded in arrival order
        and also passed to output_handler / error_handler. Closing the
        iterator early discards the remaining output.

        Raises (from the iterator):
            CommandTimeout: If no output arrives within data_timeout.
            CommandExecutionFailed: On any other transport failure.
        """
        connection = self._require_connection()
        self._validate_command(command)
        self._log.info("Streaming command: %s", command)
        return self._stream(connection, command)

    # -- Internals ------------------------------------------------------------

    def _stream(self, connection: SSHConnection, command: str) -> Iterator[OutputChunk]:
        channel = None
        handlers = {
            StreamKind.STDOUT: ("output", lambda: self.output_handler),
            StreamKind.STDERR: ("error", lambda: self.error_handler),
        }
        try:
            channel = self._open_channel(connection, command, combine_stderr=False)
            decoders = {
                StreamKind.STDOUT: self._decoder(connection),
                StreamKind.STDERR: self._decoder(connection),
            }
            for stream, data in self._read_channel(channel, connection):
                text = decoders[stream].decode(data)
                if not text:
                    continue
                name, handler = handlers[stream]
                self._emit(name, handler(), text)
                yield OutputChunk(stream, text)
            for stream, decoder in decoders.items():
                tail = decoder.decode(b"", final=True)
                if tail:
                    name, handler = handlers[stream]
                    self._emit(name, handler(), tail)
                    yield OutputChunk(stream, tail)
        except GeneratorExit:
            self._log.debug("Output stream for %r abandoned by consumer", command)
            raise
        except CommandTimeout as e:
            self._log.error("Streaming command timed out: %s", e)
            raise
        except SSHError as e:
            self._log.error("Streaming command failed: %s", e)
            raise CommandExecutionFailed(e.description) from e
        finally:
            if channel is not None:
                channel.close()

    def _require_connection(self) -> SSHConnection:
        if not self._active:
            raise SessionNotEstablished("terminal session not started")
        connection = self._connection_ref()
        if connection is None or not connection.is_authenticated:
            raise SessionNotEstablished("connection is no longer available")
        return connection

    @staticmethod
    def _validate_command(command: str) -> None:
        if not command or not command.strip():
            raise InvalidCommand(repr(command))

    @staticmethod
    def _decoder(connection: SSHConnection):
        return codecs.getincrementaldecoder(connection.configuration.encoding)(errors="replace")

    def _open_channel(
        self, connection: SSHConnection, command: str, combine_stderr: bool
    ) -> paramiko.Channel:
        timeout = connection.configuration.data_timeout
        with connection.channel_lock:
            transport = connection.get_transport_handle().get_transport()
            if transport is None or not transport.is_active():
                raise ConnectionLost("SSH transport is not active")
            try:
                channel = transport.open_session(timeout=timeout)
            except (paramiko.SSHException, OSError, EOFError) as e:
                raise wrap_transport_error(e, ChannelCreationFailed) from e

        try:
            channel.settimeout(timeout)
            if combine_stderr:
                channel.set_combine_stderr(True)
            if self.use_pty:
                size = self.terminal_size
                channel.get_pty(
                    width=size.width,
                    height=size.height,
                    width_pixels=size.pixel_width,
                    height_pixels=size.pixel_height,
                )
            if self.environment:
                channel.update_environment(self.environment)
            channel.exec_command(command)
        except (paramiko.SSHException, OSError, EOFError) as e:
            channel.close()
            raise wrap_transport_error(e, CommandExecutionFailed, timeout=CommandTimeout) from e
        return channel

    def _read_channel(
        self, channel: paramiko.Channel, connection: SSHConnection
    ) -> Iterator[tuple[StreamKind, bytes]]:
        """Yield (stream, bytes) until the remote process exits and buffers drain."""
        timeout = connection.configuration.data_timeout
        last_activity = time.monotonic()
        try:
            while True:
                received = False
                if channel.recv_ready():
                    data = channel.recv(CHUNK_SIZE)
                    if data:
                        received = True
                        yield StreamKind.STDOUT, data
                if channel.recv_stderr_ready():
                    data = channel.recv_stderr(CHUNK_SIZE)
                    if data:
                        received = True
                        yield StreamKind.STDERR, data
                if received:
                    last_activity = time.monotonic()
                    continue

                if (
                    channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    return
                if time.monotonic() - last_activity > timeout:
                    raise CommandTimeout(f"no output for {timeout}s")
                time.sleep(POLL_INTERVAL)
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise wrap_transport_error(e, CommandExecutionFailed, timeout=CommandTimeout) from e

    def _fail(self, command: str, start_time: datetime, error: SSHError):
        result = CommandResult.from_times(
            command, FAILURE_EXIT_CODE, "", error.description, start_time, datetime.now()
        )
        self._log.error("Command failed: %s - %s", command, error)
        self._emit("error", self.error_handler, error.description)
        self._emit("completion", self.completion_handler, result)
        if isinstance(error, CommandTimeout):
            raise error
        raise CommandExecutionFailed(error.description, result=result) from error

    def _emit(self, name: str, handler, value) -> None:
        if handler is None:
            return
        try:
            handler(value)
        except Exception:
            self._log.exception("Exception in %s handler", name)
