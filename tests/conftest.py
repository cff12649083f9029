"""
Shared pytest fixtures for ssh_session tests.
"""

import io
from collections import deque
from collections.abc import Generator
from pathlib import Path
from unittest.mock import MagicMock

import paramiko
import pytest

from ssh_session.config import SSHConfiguration
from ssh_session.connection import SSHConnection


class FakeChannel:
    """
    Scripted stand-in for paramiko.Channel.

    Serves the queued stdout/stderr chunks through the recv*/ready API and
    reports the exit status once both queues are drained. With hang=True
    the remote process never exits.
    """

    def __init__(self, stdout=(), stderr=(), exit_status=0, hang=False, recv_error=None):
        self._stdout = deque(stdout)
        self._stderr = deque(stderr)
        self.exit_status = exit_status
        self.hang = hang
        self.recv_error = recv_error
        self.combined = False
        self.closed = False
        self.command = None
        self.timeout = None
        self.pty = None
        self.environment: dict[str, str] = {}

    def settimeout(self, timeout):
        self.timeout = timeout

    def set_combine_stderr(self, combine):
        self.combined = combine

    def get_pty(self, **kwargs):
        self.pty = kwargs

    def update_environment(self, environment):
        self.environment.update(environment)

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        if self.recv_error is not None:
            return True
        return bool(self._stdout) or (self.combined and bool(self._stderr))

    def recv(self, nbytes):
        if self.recv_error is not None:
            raise self.recv_error
        if self._stdout:
            return self._stdout.popleft()
        if self.combined and self._stderr:
            return self._stderr.popleft()
        return b""

    def recv_stderr_ready(self):
        return not self.combined and bool(self._stderr)

    def recv_stderr(self, nbytes):
        return self._stderr.popleft() if self._stderr else b""

    def exit_status_ready(self):
        return not self.hang and not self._stdout and not self._stderr

    def recv_exit_status(self):
        return self.exit_status

    def close(self):
        self.closed = True


class RecordingFile(io.BytesIO):
    """BytesIO that keeps its contents after close()."""

    final = b""

    def close(self):
        if not self.closed:
            self.final = self.getvalue()
        super().close()


@pytest.fixture
def ssh_configuration(tmp_path: Path) -> SSHConfiguration:
    """SSHConfiguration with short timeouts and no retry delay."""
    return SSHConfiguration(
        host="test.ssh.local",
        port=22,
        data_timeout=0.5,
        retry_delay_seconds=0,
        known_hosts_file=str(tmp_path / "known_hosts"),
    )


@pytest.fixture
def mock_transport() -> MagicMock:
    """Creates a mocked, active paramiko.Transport."""
    transport = MagicMock(spec=paramiko.Transport)
    transport.is_active.return_value = True
    transport.remote_version = "SSH-2.0-OpenSSH_9.6"
    return transport


@pytest.fixture
def mock_ssh_client(mock_transport: MagicMock) -> MagicMock:
    """Creates a mocked paramiko.SSHClient."""
    mock = MagicMock(spec=paramiko.SSHClient)
    mock.get_transport.return_value = mock_transport
    return mock


@pytest.fixture
def mock_sftp() -> MagicMock:
    """Creates a mocked paramiko.SFTPClient rooted at /home/testuser."""
    mock = MagicMock(spec=paramiko.SFTPClient)
    mock.normalize.return_value = "/home/testuser"
    mock.get_channel.return_value = MagicMock(spec=paramiko.Channel)
    return mock


@pytest.fixture
def connection(
    ssh_configuration: SSHConfiguration, mock_ssh_client: MagicMock
) -> Generator[SSHConnection, None, None]:
    """
    Creates an SSHConnection in the authenticated state backed by mocks.

    Returns:
        SSHConnection whose transport handle is mock_ssh_client.
    """
    conn = SSHConnection(ssh_configuration)
    conn._client = mock_ssh_client
    conn._connected = True
    conn._authenticated = True
    conn._username = "testuser"
    conn._session_id = "test-session"
    yield conn


@pytest.fixture
def tmp_config_file(tmp_path: Path) -> Generator[Path, None, None]:
    """
    Creates a temporary INI configuration file for config tests.

    Returns:
        Path to the temporary config file.
    """
    config_content = """[ssh]
host = testserver.local
port = 2222
connection_timeout = 15
data_timeout = 45
client_identifier = test_client_2.0
compression_enabled = true
keep_alive_interval = 30
host_key_policy = reject
retry_attempts = 3
retry_delay_seconds = 2

[auth]
username = testuser
password = testpass

[logging]
level = DEBUG
file = test.log
console = false
"""
    config_path = tmp_path / "test_config.ini"
    config_path.write_text(config_content, encoding="utf-8")
    yield config_path


@pytest.fixture
def minimal_config_file(tmp_path: Path) -> Generator[Path, None, None]:
    """
    Creates a minimal INI configuration file with only required fields.

    Returns:
        Path to the temporary config file.
    """
    config_content = """[ssh]
host = minimal.server.com

[auth]
username = minimal
"""
    config_path = tmp_path / "minimal_config.ini"
    config_path.write_text(config_content, encoding="utf-8")
    yield config_path
