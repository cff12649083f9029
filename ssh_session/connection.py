"""
SSH connection management using paramiko.

SSHConnection owns the authentication state machine
(disconnected -> connected -> authenticated) and the single
paramiko.SSHClient handle. Command and file-transfer sub-sessions
borrow that handle through get_transport_handle() and never close it.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

import paramiko
from paramiko.pkey import UnknownKeyType

from .config import Credential, KeyCredential, PasswordCredential, SSHConfiguration
from .errors import (
    ConnectionFailed,
    InvalidConfiguration,
    InvalidPassphrase,
    KeyInvalid,
    KeyNotFound,
    MissingParameter,
    NotConnected,
    ProtocolError,
    SSHError,
    wrap_transport_error,
)

logger = logging.getLogger(__name__)


class TrustOnFirstUsePolicy(paramiko.MissingHostKeyPolicy):
    """
    Trust-on-first-use host key policy (same model as OpenSSH).

    - Unknown host: accept and save key to the known_hosts file
    - Known host, same key: accept
    - Known host, CHANGED key: reject (possible MITM attack)
    """

    def __init__(self, known_hosts_path: str, log: logging.Logger | None = None):
        self._known_hosts_path = Path(known_hosts_path).expanduser()
        self._log = log or logger

    def missing_host_key(self, client, hostname, key):
        host_keys = client.get_host_keys()
        existing = host_keys.lookup(hostname)

        if existing is not None:
            key_type = key.get_name()
            existing_key = existing.get(key_type)
            if existing_key is not None and existing_key != key:
                raise paramiko.SSHException(
                    f"Host key for {hostname} has CHANGED. "
                    f"This could indicate a man-in-the-middle attack. "
                    f"If the server key was legitimately changed, remove the old "
                    f"entry from {self._known_hosts_path} and try again."
                )

        self._log.info("Adding host key for %s to known_hosts", hostname)
        host_keys.add(hostname, key.get_name(), key)

        try:
            self._known_hosts_path.parent.mkdir(parents=True, exist_ok=True)
            host_keys.save(str(self._known_hosts_path))
        except OSError as e:
            self._log.warning("Could not save known_hosts: %s", e)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class ConnectionInfo:
    """Point-in-time snapshot of a connection's state."""

    host: str
    port: int
    is_connected: bool
    is_authenticated: bool
    session_id: str | None = None
    connection_time: datetime | None = None
    authentication_time: datetime | None = None
    server_version: str | None = None

    @property
    def connection_duration(self) -> float | None:
        if self.connection_time is None:
            return None
        return (datetime.now() - self.connection_time).total_seconds()

    @property
    def status_description(self) -> str:
        if not self.is_connected:
            return "Disconnected"
        if not self.is_authenticated:
            return "Connected, not authenticated"
        return "Connected and authenticated"

    @property
    def can_execute_commands(self) -> bool:
        return self.is_connected and self.is_authenticated

    @property
    def can_transfer_files(self) -> bool:
        return self.is_connected and self.is_authenticated

    def __str__(self) -> str:
        lines = [
            "SSH connection info:",
            f"- Server: {self.host}:{self.port}",
            f"- Status: {self.status_description}",
            f"- Session ID: {self.session_id or 'none'}",
        ]
        if self.connection_time is not None:
            lines.append(f"- Connected at: {self.connection_time.isoformat(timespec='seconds')}")
        if self.server_version:
            lines.append(f"- Server version: {self.server_version}")
        return "\n".join(lines)


class SSHConnection:
    """
    A logical SSH connection to one host.

    connect() only marks the connection as open: paramiko binds the TCP
    connect and authentication together, so network I/O happens in
    authenticate().
    """

    def __init__(self, configuration: SSHConfiguration, log: logging.Logger | None = None):
        configuration.validate()
        self.configuration = configuration
        self._log = log or logger
        self._client: paramiko.SSHClient | None = None
        self._connected = False
        self._authenticated = False
        self._session_id: str | None = None
        self._username: str | None = None
        self._connection_time: datetime | None = None
        self._authentication_time: datetime | None = None
        self._server_version: str | None = None
        self._lock = threading.RLock()
        # Held by sub-sessions while they open channels on the shared transport
        self.channel_lock = threading.Lock()
        self._log.debug(
            "SSH connection created for %s:%d", configuration.host, configuration.port
        )

    # -- State ----------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def username(self) -> str | None:
        return self._username

    @property
    def state(self) -> ConnectionState:
        if self._authenticated:
            return ConnectionState.AUTHENTICATED
        if self._connected:
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED

    @property
    def connection_info(self) -> ConnectionInfo:
        return ConnectionInfo(
            host=self.configuration.host,
            port=self.configuration.port,
            is_connected=self._connected,
            is_authenticated=self._authenticated,
            session_id=self._session_id,
            connection_time=self._connection_time,
            authentication_time=self._authentication_time,
            server_version=self._server_version,
        )

    # -- Lifecycle ------------------------------------------------------------

    def connect(self) -> None:
        """Mark the connection as open and issue a fresh session id."""
        with self._lock:
            if self._connected:
                self._log.warning("SSH connection already established")
                return
            self._connect_internal()

    def _connect_internal(self) -> None:
        """Internal connect without lock - caller must hold lock."""
        self._log.info(
            "Connecting to %s:%d", self.configuration.host, self.configuration.port
        )
        self._connected = True
        self._connection_time = datetime.now()
        self._session_id = str(uuid.uuid4())
        self._log.info("SSH connection marked as established, session id %s", self._session_id)

    def authenticate(self, username: str, credential: Credential) -> None:
        """
        Authenticate against the server, opening the transport.

        Args:
            username: Remote user name.
            credential: PasswordCredential or KeyCredential.

        Raises:
            KeyNotFound: If a key credential points at a missing file.
            KeyInvalid / InvalidPassphrase: If the key cannot be loaded.
            AuthenticationFailed: If the server rejects the credential.
            SSHError: Any other connection-level failure, already wrapped.
        """
        with self._lock:
            if self._authenticated:
                self._log.warning("Already authenticated as %s", self._username)
                return
            if not username:
                raise MissingParameter("username")

            pkey = None
            if isinstance(credential, KeyCredential):
                self._log.info("Authenticating %s with private key", username)
                pkey = self._load_private_key(credential)
            elif isinstance(credential, PasswordCredential):
                self._log.info("Authenticating %s with password", username)
            else:
                raise InvalidConfiguration(
                    f"Unsupported credential type: {type(credential).__name__}"
                )

            if not self._connected:
                self._connect_internal()

            client = self._connect_with_retry(username, credential, pkey)

            transport = client.get_transport()
            if transport is not None:
                if self.configuration.keep_alive_interval > 0:
                    transport.set_keepalive(int(self.configuration.keep_alive_interval))
                self._server_version = transport.remote_version

            self._client = client
            self._connected = True
            self._authenticated = True
            self._username = username
            self._authentication_time = datetime.now()
            self._session_id = str(uuid.uuid4())
            self._log.info(
                "Authenticated to %s:%d as %s",
                self.configuration.host,
                self.configuration.port,
                username,
            )

    def disconnect(self) -> None:
        """Close the transport and clear all state. Never raises."""
        with self._lock:
            if not self._connected and self._client is None:
                return

            if self._client is not None:
                try:
                    self._client.close()
                except Exception as e:
                    self._log.warning("Error while closing SSH connection: %s", e)

            self._client = None
            self._connected = False
            self._authenticated = False
            self._session_id = None
            self._username = None
            self._connection_time = None
            self._authentication_time = None
            self._server_version = None
            self._log.info("SSH connection closed")

    def get_transport_handle(self) -> paramiko.SSHClient:
        """
        Return the authenticated paramiko client.

        Raises:
            NotConnected: If there is no authenticated handle.
        """
        client = self._client
        if client is None:
            raise NotConnected("no authenticated transport handle")
        return client

    # -- Internals ------------------------------------------------------------

    def _load_private_key(self, credential: KeyCredential) -> paramiko.PKey:
        key_path = Path(credential.key_path).expanduser()
        if not key_path.is_file():
            self._log.error("Private key file not found: %s", key_path)
            raise KeyNotFound(str(key_path))

        try:
            return paramiko.PKey.from_path(key_path, passphrase=credential.passphrase)
        except paramiko.PasswordRequiredException as e:
            raise InvalidPassphrase(f"{key_path}: {e}") from e
        except (paramiko.SSHException, UnknownKeyType, ValueError, OSError) as e:
            raise KeyInvalid(f"{key_path}: {e}") from e

    def _connect_with_retry(
        self, username: str, credential: Credential, pkey: paramiko.PKey | None
    ) -> paramiko.SSHClient:
        attempts = self.configuration.retry_attempts
        attempt = 1
        while True:
            try:
                return self._open_client(username, credential, pkey)
            except SSHError as e:
                if not e.recoverable or attempt >= attempts:
                    self._log.error("SSH authentication failed: %s", e)
                    raise
                self._log.warning(
                    "Authentication failed (attempt %d/%d): %s", attempt, attempts, e
                )
                time.sleep(self.configuration.retry_delay_seconds)
                attempt += 1

    def _open_client(
        self, username: str, credential: Credential, pkey: paramiko.PKey | None
    ) -> paramiko.SSHClient:
        config = self.configuration
        client = paramiko.SSHClient()
        self._apply_host_key_policy(client)

        connect_kwargs: dict = {
            "hostname": config.host,
            "port": config.port,
            "username": username,
            "timeout": config.connection_timeout,
            "banner_timeout": config.data_timeout,
            "auth_timeout": config.data_timeout,
            "compress": config.compression_enabled,
            "allow_agent": False,
            "look_for_keys": False,
            "transport_factory": self._transport_factory,
        }
        if pkey is not None:
            connect_kwargs["pkey"] = pkey
        else:
            connect_kwargs["password"] = credential.password

        self._log.debug("Connecting to SSH %s:%d as %s", config.host, config.port, username)
        try:
            client.connect(**connect_kwargs)
        except paramiko.SSHException as e:
            self._close_quietly(client)
            raise wrap_transport_error(e, ProtocolError) from e
        except (OSError, EOFError) as e:
            self._close_quietly(client)
            raise wrap_transport_error(e, ConnectionFailed) from e
        return client

    def _transport_factory(self, sock, **kwargs) -> paramiko.Transport:
        transport = paramiko.Transport(sock, **kwargs)
        transport.local_version = (
            f"SSH-{self.configuration.protocol_version}-{self.configuration.client_identifier}"
        )
        return transport

    def _apply_host_key_policy(self, client: paramiko.SSHClient) -> None:
        policy = self.configuration.host_key_policy
        if policy == "accept":
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            return

        client.load_system_host_keys()
        known_hosts = Path(self.configuration.known_hosts_file).expanduser()
        try:
            client.load_host_keys(str(known_hosts))
        except FileNotFoundError:
            pass

        if policy == "reject":
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(TrustOnFirstUsePolicy(str(known_hosts), self._log))

    def _close_quietly(self, client: paramiko.SSHClient) -> None:
        try:
            client.close()
        except Exception as e:
            self._log.debug("Ignoring error while closing failed client: %s", e)
