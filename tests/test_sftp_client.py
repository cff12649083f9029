"""
Unit tests for ssh_session.sftp_client module.

Tests cover:
- start() working directory resolution and fallback
- Operations before start() raise SessionNotEstablished
- close() idempotence and close error handling
- Path normalization against the working directory
- change_directory, list_directory, create/remove directory, remove_file, rename
- Error translation (ENOENT, EACCES, other failures)
- Chunked upload/download with progress reporting
- Atomic download via a .part file
"""

import errno
import io
import stat as stat_module
from pathlib import Path
from unittest.mock import MagicMock, patch

import paramiko
import pytest
from paramiko.sftp import SFTPError

from conftest import RecordingFile
from ssh_session.connection import SSHConnection
from ssh_session.errors import (
    AccessDenied,
    DirectoryOperationFailed,
    FileNotFound,
    SessionNotEstablished,
    SftpInitializationFailed,
    TransferFailed,
)
from ssh_session.sftp_client import SFTPSession
from ssh_session.sftp_types import FileType, TransferDirection, TransferOperation


@pytest.fixture
def session(connection, mock_ssh_client, mock_sftp):
    """A started SFTPSession over the mocked authenticated connection."""
    mock_ssh_client.open_sftp.return_value = mock_sftp
    sftp_session = SFTPSession(connection)
    sftp_session.start()
    yield sftp_session
    sftp_session.close()


def _make_sftp_attr(filename, size, mtime_ts, is_dir):
    """Helper to create mock SFTPAttributes."""
    attr = paramiko.SFTPAttributes()
    attr.filename = filename
    attr.st_size = size
    attr.st_mtime = mtime_ts
    attr.st_uid = 1000
    attr.st_gid = 1000
    if is_dir:
        attr.st_mode = stat_module.S_IFDIR | 0o755
    else:
        attr.st_mode = stat_module.S_IFREG | 0o644
    return attr


def _not_found(path="x"):
    return FileNotFoundError(errno.ENOENT, "No such file", path)


def _denied(path="x"):
    return PermissionError(errno.EACCES, "Permission denied", path)


class TestSFTPSessionStart:
    """Tests for SFTPSession.start."""

    def test_start_sets_working_directory(self, session, mock_sftp):
        assert session.is_active is True
        assert session.current_directory == "/home/testuser"
        mock_sftp.normalize.assert_called_once_with(".")

    def test_start_applies_channel_timeout(self, session, mock_sftp):
        mock_sftp.get_channel.return_value.settimeout.assert_called_once_with(0.5)

    def test_start_falls_back_to_home(self, connection, mock_ssh_client, mock_sftp):
        """Test the /home/<user> fallback when the real path query fails."""
        mock_ssh_client.open_sftp.return_value = mock_sftp
        mock_sftp.normalize.side_effect = OSError("Failure")

        sftp_session = SFTPSession(connection)
        sftp_session.start()

        assert sftp_session.current_directory == "/home/testuser"

    def test_start_falls_back_to_root_without_username(
        self, connection, mock_ssh_client, mock_sftp
    ):
        mock_ssh_client.open_sftp.return_value = mock_sftp
        mock_sftp.normalize.side_effect = OSError("Failure")
        connection._username = None

        sftp_session = SFTPSession(connection)
        sftp_session.start()

        assert sftp_session.current_directory == "/"

    def test_start_requires_authentication(self, ssh_configuration):
        with pytest.raises(SessionNotEstablished):
            SFTPSession(SSHConnection(ssh_configuration)).start()

    def test_start_failure_wrapped(self, connection, mock_ssh_client):
        mock_ssh_client.open_sftp.side_effect = paramiko.SSHException("subsystem request failed")

        with pytest.raises(SftpInitializationFailed, match="subsystem"):
            SFTPSession(connection).start()

    def test_start_protocol_mismatch_wrapped(self, connection, mock_ssh_client):
        """Test that an SFTP version mismatch is reported as an init failure."""
        mock_ssh_client.open_sftp.side_effect = SFTPError("Incompatible sftp protocol")

        with pytest.raises(SftpInitializationFailed, match="Incompatible"):
            SFTPSession(connection).start()

    def test_start_twice_is_noop(self, session, mock_ssh_client):
        session.start()

        mock_ssh_client.open_sftp.assert_called_once()


class TestSFTPSessionNotStarted:
    """Every operation fails before start()."""

    @pytest.mark.parametrize(
        "call",
        [
            lambda s: s.change_directory("/tmp"),
            lambda s: s.list_directory(),
            lambda s: s.create_directory("/tmp/new"),
            lambda s: s.remove_directory("/tmp/old"),
            lambda s: s.remove_file("/tmp/file"),
            lambda s: s.rename("/a", "/b"),
            lambda s: s.get_file_info("/a"),
            lambda s: s.upload_file("/does/not/exist", "/remote"),
            lambda s: s.download_file("/remote", "/local"),
        ],
    )
    def test_operation_rejected(self, connection, call):
        with pytest.raises(SessionNotEstablished):
            call(SFTPSession(connection))

    def test_operation_after_disconnect(self, session, connection):
        connection.disconnect()

        with pytest.raises(SessionNotEstablished):
            session.list_directory()


class TestSFTPSessionClose:
    """Tests for SFTPSession.close."""

    def test_close_resets_state(self, session, mock_sftp):
        session.close()

        mock_sftp.close.assert_called_once()
        assert session.is_active is False
        assert session.current_directory == "/"

    def test_close_is_idempotent(self, session, mock_sftp):
        session.close()
        session.close()

        mock_sftp.close.assert_called_once()

    def test_close_handles_errors(self, session, mock_sftp):
        """Test that close doesn't raise on close errors."""
        mock_sftp.close.side_effect = Exception("close failed")

        # Should not raise
        session.close()
        assert session.is_active is False


class TestSFTPSessionPathNormalization:
    """Tests for path normalization."""

    def test_backslash_to_forward_slash(self, session, mock_sftp):
        """Test Windows-style paths get converted."""
        mock_sftp.listdir_attr.return_value = []
        session.list_directory("\\srv\\data")
        mock_sftp.listdir_attr.assert_called_with("/srv/data")

    def test_relative_path_uses_working_directory(self, session, mock_sftp):
        mock_sftp.listdir_attr.return_value = []
        session.list_directory("docs/../projects")
        mock_sftp.listdir_attr.assert_called_with("/home/testuser/projects")

    def test_preserves_absolute_path(self, session, mock_sftp):
        mock_sftp.listdir_attr.return_value = []
        session.list_directory("/absolute/path/")
        mock_sftp.listdir_attr.assert_called_with("/absolute/path")

    def test_collapses_leading_slashes(self, session, mock_sftp):
        mock_sftp.listdir_attr.return_value = []
        session.list_directory("//double")
        mock_sftp.listdir_attr.assert_called_with("/double")

    def test_parent_of_root(self, session, mock_sftp):
        mock_sftp.listdir_attr.return_value = []
        session.list_directory("/../..")
        mock_sftp.listdir_attr.assert_called_with("/")


class TestSFTPSessionChangeDirectory:
    """Tests for SFTPSession.change_directory."""

    def test_change_directory_commits(self, session, mock_sftp):
        session.change_directory("projects")

        mock_sftp.listdir.assert_called_once_with("/home/testuser/projects")
        assert session.current_directory == "/home/testuser/projects"

    def test_change_directory_missing(self, session, mock_sftp):
        """Test that a failed probe leaves the working directory unchanged."""
        mock_sftp.listdir.side_effect = _not_found()

        with pytest.raises(FileNotFound):
            session.change_directory("/nope")

        assert session.current_directory == "/home/testuser"


class TestSFTPSessionListDirectory:
    """Tests for SFTPSession.list_directory."""

    def test_list_directory_returns_entries(self, session, mock_sftp):
        mock_sftp.listdir_attr.return_value = [
            _make_sftp_attr("file1.txt", 1024, 1700000000, False),
            _make_sftp_attr("folder1", 4096, 1700000000, True),
        ]

        entries = session.list_directory("/data")

        assert [e.name for e in entries] == ["file1.txt", "folder1"]
        assert entries[0].path == "/data/file1.txt"
        assert entries[0].size == 1024
        assert entries[0].file_type is FileType.FILE
        assert entries[1].is_directory is True

    def test_list_directory_defaults_to_cwd(self, session, mock_sftp):
        mock_sftp.listdir_attr.return_value = []

        session.list_directory()

        mock_sftp.listdir_attr.assert_called_once_with("/home/testuser")

    def test_list_directory_skips_dot_entries(self, session, mock_sftp):
        mock_sftp.listdir_attr.return_value = [
            _make_sftp_attr(".", 0, 0, True),
            _make_sftp_attr("..", 0, 0, True),
            _make_sftp_attr("real", 1, 0, False),
        ]

        entries = session.list_directory("/")

        assert [e.name for e in entries] == ["real"]

    def test_list_directory_keeps_degraded_entries(self, session, mock_sftp):
        """Test that entries without attributes are returned, not omitted."""
        bare = paramiko.SFTPAttributes()
        bare.filename = "bare"
        mock_sftp.listdir_attr.return_value = [bare]

        entries = session.list_directory("/")

        assert len(entries) == 1
        assert entries[0].is_degraded is True
        assert entries[0].size == 0

    @pytest.mark.parametrize(
        "error, expected",
        [
            (_not_found(), FileNotFound),
            (_denied(), AccessDenied),
            (OSError("Failure"), DirectoryOperationFailed),
        ],
    )
    def test_list_directory_errors(self, session, mock_sftp, error, expected):
        mock_sftp.listdir_attr.side_effect = error

        with pytest.raises(expected):
            session.list_directory("/data")


class TestSFTPSessionDirectoryOperations:
    """Tests for create/remove directory, remove_file, rename and get_file_info."""

    def test_create_directory(self, session, mock_sftp):
        session.create_directory("/new_dir")
        mock_sftp.mkdir.assert_called_once_with("/new_dir")

    def test_create_directory_with_parents(self, session, mock_sftp):
        """Test that missing ancestors are created."""
        mock_sftp.stat.side_effect = [None, _not_found(), _not_found()]

        session.create_directory("/a/b/c", parents=True)

        assert [c.args[0] for c in mock_sftp.mkdir.call_args_list] == ["/a/b", "/a/b/c"]

    def test_create_directory_failure(self, session, mock_sftp):
        mock_sftp.mkdir.side_effect = OSError("Failure")

        with pytest.raises(DirectoryOperationFailed):
            session.create_directory("/exists")

    def test_create_directory_missing_parent(self, session, mock_sftp):
        mock_sftp.mkdir.side_effect = _not_found()

        with pytest.raises(DirectoryOperationFailed):
            session.create_directory("/no/parent")

    def test_remove_directory(self, session, mock_sftp):
        session.remove_directory("/empty_dir")
        mock_sftp.rmdir.assert_called_once_with("/empty_dir")

    def test_remove_directory_missing(self, session, mock_sftp):
        mock_sftp.rmdir.side_effect = _not_found()

        with pytest.raises(FileNotFound):
            session.remove_directory("/gone")

    def test_remove_directory_not_empty(self, session, mock_sftp):
        mock_sftp.rmdir.side_effect = OSError("Failure")

        with pytest.raises(DirectoryOperationFailed):
            session.remove_directory("/full")

    def test_remove_file(self, session, mock_sftp):
        session.remove_file("old_file.txt")
        mock_sftp.remove.assert_called_once_with("/home/testuser/old_file.txt")

    @pytest.mark.parametrize(
        "error, expected",
        [
            (_not_found(), FileNotFound),
            (_denied(), AccessDenied),
            (OSError("Failure"), TransferFailed),
        ],
    )
    def test_remove_file_errors(self, session, mock_sftp, error, expected):
        mock_sftp.remove.side_effect = error

        with pytest.raises(expected):
            session.remove_file("/file")

    def test_unexpected_sftp_packet_wrapped(self, session, mock_sftp):
        mock_sftp.remove.side_effect = SFTPError("Expected status")

        with pytest.raises(TransferFailed, match="Expected status"):
            session.remove_file("/file")

    def test_rename(self, session, mock_sftp):
        session.rename("/old.txt", "new.txt")
        mock_sftp.rename.assert_called_once_with("/old.txt", "/home/testuser/new.txt")

    def test_rename_failure(self, session, mock_sftp):
        mock_sftp.rename.side_effect = _not_found()

        with pytest.raises(TransferFailed):
            session.rename("/old.txt", "/new.txt")

    def test_get_file_info(self, session, mock_sftp):
        mock_sftp.stat.return_value = _make_sftp_attr(None, 12345, 1700000000, False)

        entry = session.get_file_info("/docs/report.pdf")

        mock_sftp.stat.assert_called_once_with("/docs/report.pdf")
        assert entry.name == "report.pdf"
        assert entry.size == 12345

    def test_get_file_info_missing(self, session, mock_sftp):
        mock_sftp.stat.side_effect = _not_found()

        with pytest.raises(FileNotFound):
            session.get_file_info("/missing")


class TestSFTPSessionUpload:
    """Tests for SFTPSession.upload_file."""

    def test_upload_writes_remote_file(self, session, mock_sftp, tmp_path: Path):
        local = tmp_path / "data.bin"
        local.write_bytes(b"hello world")
        remote = RecordingFile()
        mock_sftp.open.return_value = remote
        completed = []
        session.transfer_completion_handler = completed.append

        result = session.upload_file(str(local), "upload/data.bin")

        mock_sftp.open.assert_called_once_with("/home/testuser/upload/data.bin", "wb")
        assert remote.final == b"hello world"
        assert result.operation is TransferOperation.UPLOAD
        assert result.file_size == 11
        assert result.transferred_bytes == 11
        assert result.success is True
        assert result.remote_path == "/home/testuser/upload/data.bin"
        assert completed == [result]

    def test_upload_missing_local_file(self, session, mock_sftp, tmp_path: Path):
        with pytest.raises(FileNotFound):
            session.upload_file(str(tmp_path / "absent"), "/remote")

        mock_sftp.open.assert_not_called()

    def test_upload_progress_is_monotonic(self, session, mock_sftp, tmp_path: Path):
        """Test that progress starts at 0, never decreases, and completes once."""
        local = tmp_path / "big.bin"
        local.write_bytes(b"x" * 10)
        mock_sftp.open.return_value = RecordingFile()
        reports = []
        session.progress_handler = reports.append

        with patch("ssh_session.sftp_client.CHUNK_SIZE", 4):
            session.upload_file(str(local), "/big.bin")

        transferred = [p.transferred_bytes for p in reports]
        assert transferred == [0, 4, 8, 10]
        assert all(p.total_bytes == 10 for p in reports)
        assert all(p.direction is TransferDirection.UPLOAD for p in reports)
        assert [p.is_completed for p in reports] == [False, False, False, True]
        assert reports[0].filename == "big.bin"

    def test_upload_empty_file_single_report(self, session, mock_sftp, tmp_path: Path):
        local = tmp_path / "empty"
        local.write_bytes(b"")
        mock_sftp.open.return_value = RecordingFile()
        reports = []
        session.progress_handler = reports.append

        session.upload_file(str(local), "/empty")

        assert len(reports) == 1
        assert reports[0].transferred_bytes == 0
        assert reports[0].is_completed is True

    def test_progress_handler_errors_ignored(self, session, mock_sftp, tmp_path: Path):
        local = tmp_path / "f"
        local.write_bytes(b"abc")
        mock_sftp.open.return_value = RecordingFile()
        session.progress_handler = MagicMock(side_effect=RuntimeError("ui closed"))

        result = session.upload_file(str(local), "/f")

        assert result.success is True

    def test_upload_permission_denied(self, session, mock_sftp, tmp_path: Path):
        local = tmp_path / "f"
        local.write_bytes(b"abc")
        mock_sftp.open.side_effect = _denied()

        with pytest.raises(AccessDenied):
            session.upload_file(str(local), "/root/f")

    def test_upload_connection_drop(self, session, mock_sftp, tmp_path: Path):
        local = tmp_path / "f"
        local.write_bytes(b"abc")
        mock_sftp.open.side_effect = paramiko.SSHException("Server connection dropped")

        with pytest.raises(TransferFailed):
            session.upload_file(str(local), "/f")


class TestSFTPSessionDownload:
    """Tests for SFTPSession.download_file."""

    def test_download_writes_local_file(self, session, mock_sftp, tmp_path: Path):
        mock_sftp.stat.return_value = _make_sftp_attr("r.txt", 7, 0, False)
        mock_sftp.open.return_value = io.BytesIO(b"payload")
        local = tmp_path / "nested" / "dir" / "r.txt"
        completed = []
        session.transfer_completion_handler = completed.append

        result = session.download_file("/srv/r.txt", str(local))

        mock_sftp.open.assert_called_once_with("/srv/r.txt", "rb")
        assert local.read_bytes() == b"payload"
        assert not (local.parent / "r.txt.part").exists()
        assert result.operation is TransferOperation.DOWNLOAD
        assert result.file_size == 7
        assert result.transferred_bytes == 7
        assert completed == [result]

    def test_download_progress(self, session, mock_sftp, tmp_path: Path):
        mock_sftp.stat.return_value = _make_sftp_attr("r", 6, 0, False)
        mock_sftp.open.return_value = io.BytesIO(b"abcdef")
        reports = []
        session.progress_handler = reports.append

        with patch("ssh_session.sftp_client.CHUNK_SIZE", 4):
            session.download_file("/r", str(tmp_path / "r"))

        assert [p.transferred_bytes for p in reports] == [0, 4, 6]
        assert reports[-1].is_completed is True
        assert all(p.direction is TransferDirection.DOWNLOAD for p in reports)

    def test_download_unknown_size_completes_once(self, session, mock_sftp, tmp_path: Path):
        """Test a file whose stat size is 0 but which still has content."""
        mock_sftp.stat.return_value = _make_sftp_attr("cpuinfo", 0, 0, False)
        mock_sftp.open.return_value = io.BytesIO(b"processor: 0\n")
        reports = []
        session.progress_handler = reports.append

        with patch("ssh_session.sftp_client.CHUNK_SIZE", 4):
            result = session.download_file("/proc/cpuinfo", str(tmp_path / "cpuinfo"))

        assert len(reports) == 1
        assert reports[0].transferred_bytes == 13
        assert reports[0].total_bytes == 13
        assert reports[0].is_completed is True
        assert result.file_size == 13
        assert result.transferred_bytes == 13

    def test_download_missing_remote(self, session, mock_sftp, tmp_path: Path):
        mock_sftp.stat.side_effect = _not_found()

        with pytest.raises(FileNotFound):
            session.download_file("/missing", str(tmp_path / "out"))

        assert not (tmp_path / "out").exists()

    def test_failed_download_keeps_existing_target(self, session, mock_sftp, tmp_path: Path):
        """Test that a failure mid-transfer leaves no partial or clobbered file."""
        local = tmp_path / "keep.txt"
        local.write_bytes(b"original")
        mock_sftp.stat.return_value = _make_sftp_attr("keep.txt", 100, 0, False)
        source = MagicMock()
        source.__enter__.return_value = source
        source.read.side_effect = [b"part", EOFError("connection lost")]
        mock_sftp.open.return_value = source

        with pytest.raises(TransferFailed):
            session.download_file("/keep.txt", str(local))

        assert local.read_bytes() == b"original"
        assert not (tmp_path / "keep.txt.part").exists()
