__version__ = "0.1.0"

# Public API exports
from .config import (
    AppConfig,
    AuthConfig,
    Credential,
    KeyCredential,
    LogConfig,
    PasswordCredential,
    SSHConfiguration,
    load_config,
)
from .connection import ConnectionInfo, ConnectionState, SSHConnection
from .errors import (
    ErrorCategory,
    SSHAuthenticationError,
    SSHCommandError,
    SSHConfigurationError,
    SSHConnectionError,
    SSHError,
    SSHProtocolError,
    SSHSessionError,
    SSHSystemError,
    SSHTransferError,
)
from .logger import setup_logging
from .results import CommandResult
from .sftp_client import SFTPSession
from .sftp_types import (
    FileType,
    RemoteEntry,
    TransferDirection,
    TransferOperation,
    TransferProgress,
    TransferResult,
)
from .terminal import OutputChunk, SSHTerminal, StreamKind, TerminalSize

__all__ = [
    "__version__",
    # Configuration
    "SSHConfiguration",
    "AppConfig",
    "AuthConfig",
    "LogConfig",
    "Credential",
    "PasswordCredential",
    "KeyCredential",
    "load_config",
    "setup_logging",
    # Sessions
    "SSHConnection",
    "ConnectionInfo",
    "ConnectionState",
    "SSHTerminal",
    "SFTPSession",
    # Results
    "CommandResult",
    "OutputChunk",
    "StreamKind",
    "TerminalSize",
    "RemoteEntry",
    "FileType",
    "TransferDirection",
    "TransferOperation",
    "TransferProgress",
    "TransferResult",
    # Errors
    "ErrorCategory",
    "SSHError",
    "SSHConnectionError",
    "SSHAuthenticationError",
    "SSHProtocolError",
    "SSHSessionError",
    "SSHCommandError",
    "SSHTransferError",
    "SSHConfigurationError",
    "SSHSystemError",
]
