"""
Error taxonomy for SSH session orchestration.

Every failure surfaced by this package is one of the closed set of
SSHError subclasses below. Each kind belongs to exactly one ErrorCategory,
carries a recoverability flag and a suggested remedy, and keeps the
free-text detail it was raised with.

Raw paramiko/socket/OS exceptions are translated with
wrap_transport_error() at the orchestration boundary so callers only
ever see these types.
"""

from __future__ import annotations

import errno
import socket
from enum import Enum

import paramiko
from paramiko.ssh_exception import IncompatiblePeer, NoValidConnectionsError


class ErrorCategory(Enum):
    """Coarse error grouping used for dispatch without inspecting the kind."""

    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    PROTOCOL = "protocol"
    SESSION = "session"
    COMMAND = "command"
    FILE_TRANSFER = "file_transfer"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class SSHError(Exception):
    """Base class for all errors raised by ssh_session."""

    kind = "ssh_error"
    category = ErrorCategory.SYSTEM
    recoverable = False
    summary = "SSH error"
    suggestion = "Check the error details and try again"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(self.description)

    @property
    def description(self) -> str:
        if self.detail:
            return f"{self.summary}: {self.detail}"
        return self.summary

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.detail!r})"


# -- Categories ---------------------------------------------------------------


class SSHConnectionError(SSHError):
    category = ErrorCategory.CONNECTION
    suggestion = "Check the network connection and the server address"


class SSHAuthenticationError(SSHError):
    category = ErrorCategory.AUTHENTICATION
    suggestion = "Check the username and password"


class SSHProtocolError(SSHError):
    category = ErrorCategory.PROTOCOL


class SSHSessionError(SSHError):
    category = ErrorCategory.SESSION


class SSHCommandError(SSHError):
    category = ErrorCategory.COMMAND


class SSHTransferError(SSHError):
    category = ErrorCategory.FILE_TRANSFER


class SSHConfigurationError(SSHError):
    category = ErrorCategory.CONFIGURATION
    suggestion = "Fix the configuration value and try again"


class SSHSystemError(SSHError):
    category = ErrorCategory.SYSTEM


# -- Connection ---------------------------------------------------------------


class ConnectionFailed(SSHConnectionError):
    kind = "connection_failed"
    summary = "Connection failed"


class ConnectionTimeout(SSHConnectionError):
    kind = "connection_timeout"
    summary = "Connection timed out"
    recoverable = True


class NotConnected(SSHConnectionError):
    kind = "not_connected"
    summary = "Not connected"
    suggestion = "Establish the SSH connection first"


class ConnectionLost(SSHConnectionError):
    kind = "connection_lost"
    summary = "Connection lost"
    recoverable = True


# -- Authentication -----------------------------------------------------------


class AuthenticationFailed(SSHAuthenticationError):
    kind = "authentication_failed"
    summary = "Authentication failed"


class AuthenticationTimeout(SSHAuthenticationError):
    kind = "authentication_timeout"
    summary = "Authentication timed out"
    recoverable = True


class KeyNotFound(SSHAuthenticationError):
    kind = "key_not_found"
    summary = "Private key file not found"
    suggestion = "Check the private key path and format"


class KeyInvalid(SSHAuthenticationError):
    kind = "key_invalid"
    summary = "Private key is invalid"
    suggestion = "Check the private key path and format"


class InvalidPassphrase(SSHAuthenticationError):
    kind = "invalid_passphrase"
    summary = "Invalid private key passphrase"
    suggestion = "Check the passphrase for the private key"


# -- Protocol -----------------------------------------------------------------


class ProtocolError(SSHProtocolError):
    kind = "protocol_error"
    summary = "SSH protocol error"


class UnsupportedAlgorithm(SSHProtocolError):
    kind = "unsupported_algorithm"
    summary = "Unsupported algorithm"


class InvalidData(SSHProtocolError):
    kind = "invalid_data"
    summary = "Invalid data"


# -- Session ------------------------------------------------------------------


class SessionNotEstablished(SSHSessionError):
    kind = "session_not_established"
    summary = "Session not established"
    suggestion = "Authenticate and start the session first"


class SessionClosed(SSHSessionError):
    kind = "session_closed"
    summary = "Session closed"


class ChannelCreationFailed(SSHSessionError):
    kind = "channel_creation_failed"
    summary = "Channel creation failed"


class ChannelOperationFailed(SSHSessionError):
    kind = "channel_operation_failed"
    summary = "Channel operation failed"


# -- Command ------------------------------------------------------------------


class CommandExecutionFailed(SSHCommandError):
    kind = "command_execution_failed"
    summary = "Command execution failed"

    def __init__(self, detail: str = "", result=None):
        self.result = result
        super().__init__(detail)


class CommandTimeout(SSHCommandError):
    kind = "command_timeout"
    summary = "Command timed out"
    recoverable = True
    suggestion = "Check whether the command needs a longer data timeout"


class InvalidCommand(SSHCommandError):
    kind = "invalid_command"
    summary = "Invalid command"


# -- File transfer ------------------------------------------------------------


class SftpInitializationFailed(SSHTransferError):
    kind = "sftp_initialization_failed"
    summary = "SFTP initialization failed"


class FileNotFound(SSHTransferError):
    kind = "file_not_found"
    summary = "File not found"
    suggestion = "Check that the file path is correct"


class AccessDenied(SSHTransferError):
    kind = "access_denied"
    summary = "Access denied"
    suggestion = "Check the file permissions or user privileges"


class TransferFailed(SSHTransferError):
    kind = "transfer_failed"
    summary = "File transfer failed"
    recoverable = True


class DirectoryOperationFailed(SSHTransferError):
    kind = "directory_operation_failed"
    summary = "Directory operation failed"


# -- Configuration ------------------------------------------------------------


class InvalidConfiguration(SSHConfigurationError):
    kind = "invalid_configuration"
    summary = "Invalid configuration"


class MissingParameter(SSHConfigurationError):
    kind = "missing_parameter"
    summary = "Missing required parameter"


# -- System -------------------------------------------------------------------


class OutOfMemory(SSHSystemError):
    kind = "out_of_memory"
    summary = "Out of memory"


class NetworkUnreachable(SSHSystemError):
    kind = "network_unreachable"
    summary = "Network unreachable"
    recoverable = True
    suggestion = "Check the network connection and the server address"


class UnknownError(SSHSystemError):
    kind = "unknown"
    summary = "Unknown error"


ERROR_KINDS: tuple[type[SSHError], ...] = (
    ConnectionFailed,
    ConnectionTimeout,
    NotConnected,
    ConnectionLost,
    AuthenticationFailed,
    AuthenticationTimeout,
    KeyNotFound,
    KeyInvalid,
    InvalidPassphrase,
    ProtocolError,
    UnsupportedAlgorithm,
    InvalidData,
    SessionNotEstablished,
    SessionClosed,
    ChannelCreationFailed,
    ChannelOperationFailed,
    CommandExecutionFailed,
    CommandTimeout,
    InvalidCommand,
    SftpInitializationFailed,
    FileNotFound,
    AccessDenied,
    TransferFailed,
    DirectoryOperationFailed,
    InvalidConfiguration,
    MissingParameter,
    OutOfMemory,
    NetworkUnreachable,
    UnknownError,
)

_UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH}


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return text if text else type(exc).__name__


def wrap_transport_error(
    exc: BaseException,
    default: type[SSHError],
    *,
    timeout: type[SSHError] = ConnectionTimeout,
    path: str | None = None,
) -> SSHError:
    """
    Translate a transport-level exception into a taxonomy error.

    Args:
        exc: The exception raised by paramiko, the socket layer or the OS.
        default: Error kind used when nothing more specific applies.
        timeout: Error kind used for timeouts in the caller's context.
        path: Remote path involved, used as detail for file errors.

    Returns:
        An SSHError instance. The caller is expected to raise it
        ``from exc`` so the original traceback is preserved.
    """
    if isinstance(exc, SSHError):
        return exc

    detail = _describe(exc)

    # PasswordRequiredException subclasses AuthenticationException
    if isinstance(exc, paramiko.PasswordRequiredException):
        return InvalidPassphrase(detail)
    if isinstance(exc, paramiko.AuthenticationException):
        # paramiko signals an auth_timeout expiry as "Authentication timeout."
        if "timeout" in detail.lower():
            return AuthenticationTimeout(detail)
        return AuthenticationFailed(detail)
    if isinstance(exc, paramiko.BadHostKeyException):
        return ProtocolError(detail)
    if isinstance(exc, IncompatiblePeer):
        return UnsupportedAlgorithm(detail)
    if isinstance(exc, paramiko.ChannelException):
        return ChannelCreationFailed(detail)
    if isinstance(exc, NoValidConnectionsError):
        errors = list(exc.errors.values())
        if errors and all(getattr(e, "errno", None) in _UNREACHABLE_ERRNOS for e in errors):
            return NetworkUnreachable(detail)
        return ConnectionFailed(detail)
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return timeout(detail)
    if isinstance(exc, EOFError):
        return ConnectionLost(detail)
    if isinstance(exc, MemoryError):
        return OutOfMemory(detail)
    if isinstance(exc, OSError):
        code = exc.errno
        if code in _UNREACHABLE_ERRNOS:
            return NetworkUnreachable(detail)
        if code == errno.ENOENT:
            return FileNotFound(path or detail)
        if code in (errno.EACCES, errno.EPERM):
            return AccessDenied(path or detail)
    return default(detail)
