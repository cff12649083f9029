"""
SFTP file-transfer session over an authenticated SSHConnection.

SFTPSession opens one SFTP channel on the connection's transport, tracks a
remote working directory, and provides directory operations plus chunked
upload/download with progress reporting.
"""

import errno
import logging
import os
import posixpath
import threading
import time
import weakref
from collections.abc import Callable
from pathlib import Path

import paramiko
from paramiko.sftp import SFTPError

from .connection import SSHConnection
from .errors import (
    AccessDenied,
    DirectoryOperationFailed,
    FileNotFound,
    SessionNotEstablished,
    SftpInitializationFailed,
    SSHError,
    TransferFailed,
    wrap_transport_error,
)
from .sftp_types import (
    RemoteEntry,
    TransferDirection,
    TransferOperation,
    TransferProgress,
    TransferResult,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32768

# Failures raised by paramiko's SFTP layer and the local filesystem
_SFTP_ERRORS = (OSError, EOFError, paramiko.SSHException, SFTPError)


class SFTPSession:
    """
    File-transfer sub-session with a remote working directory.

    Relative paths resolve against current_directory. Holds only a weak
    reference to its connection.
    """

    def __init__(self, connection: SSHConnection, log: logging.Logger | None = None):
        self._connection_ref = weakref.ref(connection)
        self._log = log or logger
        self._sftp: paramiko.SFTPClient | None = None
        self._active = False
        self._current_directory = "/"
        self._lock = threading.RLock()
        self.progress_handler: Callable[[TransferProgress], None] | None = None
        self.transfer_completion_handler: Callable[[TransferResult], None] | None = None

    def __del__(self):
        if getattr(self, "_active", False):
            self.close()

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def current_directory(self) -> str:
        return self._current_directory

    # -- Session management ---------------------------------------------------

    def start(self) -> None:
        """
        Open the SFTP channel and initialize the working directory.

        Raises:
            SessionNotEstablished: If the connection is not authenticated.
            SftpInitializationFailed: If the SFTP subsystem cannot be opened.
        """
        connection = self._connection_ref()
        if connection is None or not connection.is_authenticated:
            raise SessionNotEstablished("connection is not authenticated")

        with self._lock:
            if self._active:
                self._log.warning("SFTP session already started")
                return

            try:
                with connection.channel_lock:
                    sftp = connection.get_transport_handle().open_sftp()
                channel = sftp.get_channel()
                if channel is not None:
                    channel.settimeout(connection.configuration.data_timeout)
            except SSHError as e:
                raise SftpInitializationFailed(e.description) from e
            except _SFTP_ERRORS as e:
                raise SftpInitializationFailed(str(e) or type(e).__name__) from e

            self._sftp = sftp
            self._active = True
            self._current_directory = self._initial_directory(sftp, connection)
            self._log.info("SFTP session started in %s", self._current_directory)

    def close(self) -> None:
        """Close the SFTP channel. Safe to call repeatedly; never raises."""
        with self._lock:
            if not self._active and self._sftp is None:
                return
            if self._sftp is not None:
                try:
                    self._sftp.close()
                except Exception as e:
                    self._log.warning("Error while closing SFTP session: %s", e)
            self._sftp = None
            self._active = False
            self._current_directory = "/"
            self._log.info("SFTP session closed")

    def _initial_directory(self, sftp: paramiko.SFTPClient, connection: SSHConnection) -> str:
        try:
            return self._normalize_path(sftp.normalize("."))
        except _SFTP_ERRORS as e:
            username = connection.username
            fallback = f"/home/{username}" if username else "/"
            self._log.warning(
                "Could not resolve remote working directory (%s), using %s", e, fallback
            )
            return fallback

    # -- Directory operations -------------------------------------------------

    def change_directory(self, path: str) -> None:
        """
        Change the working directory after checking the target can be listed.

        Raises:
            FileNotFound: If the directory cannot be listed.
        """
        with self._lock:
            sftp = self._require_sftp()
            target = self._normalize_path(path)
            try:
                sftp.listdir(target)
            except _SFTP_ERRORS as e:
                raise FileNotFound(target) from e
            self._current_directory = target
            self._log.debug("Changed directory to %s", target)

    def list_directory(self, path: str | None = None) -> list[RemoteEntry]:
        """
        List a directory (the working directory by default).

        Entries the server sent without attributes are still returned, with
        default values and is_degraded set.
        """
        with self._lock:
            sftp = self._require_sftp()
            target = self._current_directory if path is None else self._normalize_path(path)
            self._log.debug("Listing directory: %s", target)
            try:
                attrs = sftp.listdir_attr(target)
            except _SFTP_ERRORS as e:
                raise self._translate_error(e, target, DirectoryOperationFailed) from e

        entries = [
            RemoteEntry.from_attributes(attr, posixpath.join(target, attr.filename))
            for attr in attrs
            if attr.filename not in (".", "..")
        ]
        self._log.debug("Listed %d entries in %s", len(entries), target)
        return entries

    def create_directory(self, path: str, parents: bool = False) -> None:
        """Create a directory, and its missing ancestors when parents is True."""
        with self._lock:
            sftp = self._require_sftp()
            target = self._normalize_path(path)
            self._log.debug("Creating directory: %s", target)
            try:
                if parents:
                    self._create_parents(sftp, target)
                else:
                    sftp.mkdir(target)
            except _SFTP_ERRORS as e:
                raise self._translate_error(
                    e,
                    target,
                    DirectoryOperationFailed,
                    missing=DirectoryOperationFailed,
                    denied=DirectoryOperationFailed,
                ) from e
            self._log.info("Created directory: %s", target)

    def _create_parents(self, sftp: paramiko.SFTPClient, target: str) -> None:
        current = ""
        for part in target.strip("/").split("/"):
            if not part:
                continue
            current = current + "/" + part
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)
                self._log.debug("Created directory: %s", current)

    def remove_directory(self, path: str) -> None:
        """Remove an empty directory."""
        with self._lock:
            sftp = self._require_sftp()
            target = self._normalize_path(path)
            self._log.debug("Removing directory: %s", target)
            try:
                sftp.rmdir(target)
            except _SFTP_ERRORS as e:
                raise self._translate_error(
                    e, target, DirectoryOperationFailed, denied=DirectoryOperationFailed
                ) from e
            self._log.info("Removed directory: %s", target)

    def remove_file(self, path: str) -> None:
        with self._lock:
            sftp = self._require_sftp()
            target = self._normalize_path(path)
            self._log.debug("Removing file: %s", target)
            try:
                sftp.remove(target)
            except _SFTP_ERRORS as e:
                raise self._translate_error(e, target, TransferFailed) from e
            self._log.info("Removed file: %s", target)

    def rename(self, old_path: str, new_path: str) -> None:
        """Rename or move a remote file or directory."""
        with self._lock:
            sftp = self._require_sftp()
            source = self._normalize_path(old_path)
            target = self._normalize_path(new_path)
            self._log.debug("Renaming: %s -> %s", source, target)
            try:
                sftp.rename(source, target)
            except _SFTP_ERRORS as e:
                raise self._translate_error(
                    e, source, TransferFailed, missing=TransferFailed, denied=TransferFailed
                ) from e
            self._log.info("Renamed: %s -> %s", source, target)

    def get_file_info(self, path: str) -> RemoteEntry:
        """Get metadata for a single file or directory."""
        with self._lock:
            sftp = self._require_sftp()
            target = self._normalize_path(path)
            self._log.debug("Getting file info: %s", target)
            try:
                attr = sftp.stat(target)
            except _SFTP_ERRORS as e:
                raise self._translate_error(e, target, TransferFailed) from e
        return RemoteEntry.from_attributes(attr, target, name=posixpath.basename(target) or "/")

    # -- Transfers ------------------------------------------------------------

    def upload_file(self, local_path: str, remote_path: str) -> TransferResult:
        """
        Upload a local file in CHUNK_SIZE blocks.

        The remote file is created or truncated. progress_handler receives a
        0-byte report first and one report per chunk.

        Raises:
            FileNotFound: If the local file does not exist.
            AccessDenied: If the remote path cannot be written.
            TransferFailed: On any other failure.
        """
        with self._lock:
            sftp = self._require_sftp()
            local = Path(local_path).expanduser()
            if not local.is_file():
                raise FileNotFound(str(local))
            target = self._normalize_path(remote_path)
            total = local.stat().st_size
            self._log.info("Uploading %s -> %s (%d bytes)", local, target, total)

            started = time.monotonic()
            try:
                with open(local, "rb") as source, sftp.open(target, "wb") as dest:
                    transferred = self._copy_chunks(
                        source, dest, total, TransferDirection.UPLOAD, local.name, started
                    )
            except _SFTP_ERRORS as e:
                self._log.error("Upload of %s failed: %s", local, e)
                raise self._translate_error(e, target, TransferFailed) from e

            result = TransferResult(
                operation=TransferOperation.UPLOAD,
                local_path=str(local),
                remote_path=target,
                file_size=total or transferred,
                transferred_bytes=transferred,
                execution_time=time.monotonic() - started,
                success=True,
            )
        self._log.info("Upload finished: %s", result.summary)
        self._emit("transfer completion", self.transfer_completion_handler, result)
        return result

    def download_file(self, remote_path: str, local_path: str) -> TransferResult:
        """
        Download a remote file in CHUNK_SIZE blocks.

        Data is written to ``<local_path>.part`` and moved into place once
        complete, so the target is never left half-written.

        Raises:
            FileNotFound: If the remote file does not exist.
            AccessDenied: If the remote file cannot be read.
            TransferFailed: On any other failure.
        """
        with self._lock:
            sftp = self._require_sftp()
            source_path = self._normalize_path(remote_path)
            local = Path(local_path).expanduser()

            try:
                total = sftp.stat(source_path).st_size or 0
            except _SFTP_ERRORS as e:
                raise self._translate_error(e, source_path, TransferFailed) from e

            try:
                local.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise TransferFailed(f"cannot create {local.parent}: {e}") from e

            self._log.info("Downloading %s -> %s (%d bytes)", source_path, local, total)
            part = local.with_name(local.name + ".part")
            started = time.monotonic()
            try:
                with sftp.open(source_path, "rb") as source, open(part, "wb") as dest:
                    transferred = self._copy_chunks(
                        source,
                        dest,
                        total,
                        TransferDirection.DOWNLOAD,
                        posixpath.basename(source_path),
                        started,
                    )
                os.replace(part, local)
            except _SFTP_ERRORS as e:
                self._log.error("Download of %s failed: %s", source_path, e)
                self._discard_partial(part)
                raise self._translate_error(e, source_path, TransferFailed) from e

            result = TransferResult(
                operation=TransferOperation.DOWNLOAD,
                local_path=str(local),
                remote_path=source_path,
                file_size=total or transferred,
                transferred_bytes=transferred,
                execution_time=time.monotonic() - started,
                success=True,
            )
        self._log.info("Download finished: %s", result.summary)
        self._emit("transfer completion", self.transfer_completion_handler, result)
        return result

    # -- Internals ------------------------------------------------------------

    def _require_sftp(self) -> paramiko.SFTPClient:
        if not self._active or self._sftp is None:
            raise SessionNotEstablished("SFTP session not started")
        connection = self._connection_ref()
        if connection is None or not connection.is_authenticated:
            raise SessionNotEstablished("connection is no longer available")
        return self._sftp

    def _normalize_path(self, path: str) -> str:
        """Resolve against the working directory; forward slashes, one leading slash."""
        path = path.replace("\\", "/")
        if not path.startswith("/"):
            path = posixpath.join(self._current_directory, path)
        # normpath keeps a leading "//"
        return "/" + posixpath.normpath(path).lstrip("/")

    def _translate_error(
        self,
        error: BaseException,
        path: str,
        default: type[SSHError],
        *,
        missing: type[SSHError] = FileNotFound,
        denied: type[SSHError] = AccessDenied,
    ) -> SSHError:
        """Translate an SFTP or local I/O failure into an SSHError."""
        if isinstance(error, SSHError):
            return error
        if isinstance(error, MemoryError):
            return wrap_transport_error(error, default)
        code = getattr(error, "errno", None)
        if code == errno.ENOENT:
            kind = missing
        elif code in (errno.EACCES, errno.EPERM):
            kind = denied
        else:
            kind = default
        reason = os.strerror(code) if code else (str(error) or type(error).__name__)
        return kind(f"{path}: {reason}")

    def _copy_chunks(self, source, dest, total, direction, filename, started) -> int:
        # A zero size may be a stand-in (procfs-style files); report once at the end
        size_known = total > 0
        transferred = 0
        if size_known:
            self._report(transferred, total, direction, filename, started)
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                break
            dest.write(chunk)
            transferred += len(chunk)
            if size_known:
                self._report(transferred, total, direction, filename, started)
        if not size_known:
            self._report(transferred, transferred, direction, filename, started)
        return transferred

    def _report(self, transferred, total, direction, filename, started) -> None:
        if self.progress_handler is None:
            return
        elapsed = time.monotonic() - started
        speed = transferred / elapsed if elapsed > 0 and transferred else None
        remaining = max(total - transferred, 0) / speed if speed else None
        progress = TransferProgress(
            transferred_bytes=transferred,
            total_bytes=total,
            direction=direction,
            filename=filename,
            speed=speed,
            remaining_time=remaining,
        )
        self._emit("progress", self.progress_handler, progress)

    def _discard_partial(self, part: Path) -> None:
        try:
            part.unlink(missing_ok=True)
        except OSError as e:
            self._log.warning("Could not remove partial download %s: %s", part, e)

    def _emit(self, name: str, handler, value) -> None:
        if handler is None:
            return
        try:
            handler(value)
        except Exception:
            self._log.exception("Exception in %s handler", name)
