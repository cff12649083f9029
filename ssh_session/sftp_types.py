"""
Value types for the SFTP session: directory entries, progress reports and
transfer outcomes.
"""

import posixpath
import stat
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import paramiko

DEFAULT_PERMISSIONS = "rw-r--r--"
UNKNOWN_OWNER = "unknown"


class FileType(Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    BLOCK = "block"
    CHAR = "char"
    FIFO = "fifo"
    SOCKET = "socket"
    UNKNOWN = "unknown"

    @classmethod
    def from_mode(cls, mode: int | None) -> "FileType":
        if mode is None:
            return cls.UNKNOWN
        if stat.S_ISREG(mode):
            return cls.FILE
        if stat.S_ISDIR(mode):
            return cls.DIRECTORY
        if stat.S_ISLNK(mode):
            return cls.SYMLINK
        if stat.S_ISBLK(mode):
            return cls.BLOCK
        if stat.S_ISCHR(mode):
            return cls.CHAR
        if stat.S_ISFIFO(mode):
            return cls.FIFO
        if stat.S_ISSOCK(mode):
            return cls.SOCKET
        return cls.UNKNOWN


@dataclass(frozen=True)
class RemoteEntry:
    """
    One entry of a remote directory listing.

    Entries whose attributes the server did not send carry the defaults
    (size 0, DEFAULT_PERMISSIONS, UNKNOWN_OWNER) and has_full_attributes=False.
    """

    name: str
    path: str
    size: int = 0
    file_type: FileType = FileType.UNKNOWN
    permissions: str = DEFAULT_PERMISSIONS
    owner: str = UNKNOWN_OWNER
    group: str = UNKNOWN_OWNER
    modification_time: datetime | None = None
    access_time: datetime | None = None
    creation_time: datetime | None = None
    has_full_attributes: bool = False

    @classmethod
    def from_attributes(
        cls, attr: paramiko.SFTPAttributes, path: str, name: str | None = None
    ) -> "RemoteEntry":
        """
        Build an entry from paramiko attributes.

        Args:
            attr: Attributes from listdir_attr() or stat().
            path: Absolute remote path of the entry.
            name: Entry name; defaults to attr.filename, then the path's basename.
        """
        if name is None:
            name = getattr(attr, "filename", None) or posixpath.basename(path.rstrip("/")) or "/"

        mode = attr.st_mode
        if mode is not None:
            file_type = FileType.from_mode(mode)
            permissions = stat.filemode(mode)[1:]
        else:
            file_type = FileType.DIRECTORY if name.endswith("/") else FileType.UNKNOWN
            permissions = DEFAULT_PERMISSIONS

        owner, group = _ownership(attr)
        mtime = attr.st_mtime
        atime = attr.st_atime

        complete = (
            mode is not None
            and attr.st_size is not None
            and mtime is not None
            and owner != UNKNOWN_OWNER
        )

        return cls(
            name=name.rstrip("/") or name,
            path=path,
            size=attr.st_size or 0,
            file_type=file_type,
            permissions=permissions,
            owner=owner,
            group=group,
            modification_time=datetime.fromtimestamp(mtime) if mtime is not None else None,
            access_time=datetime.fromtimestamp(atime) if atime is not None else None,
            has_full_attributes=complete,
        )

    @property
    def is_degraded(self) -> bool:
        return not self.has_full_attributes

    @property
    def is_directory(self) -> bool:
        return self.file_type is FileType.DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.file_type is FileType.FILE

    @property
    def is_symlink(self) -> bool:
        return self.file_type is FileType.SYMLINK

    def __str__(self) -> str:
        mtime = (
            self.modification_time.isoformat(sep=" ", timespec="minutes")
            if self.modification_time
            else "-"
        )
        return f"{self.permissions} {self.owner} {self.group} {self.size:>10} {mtime} {self.name}"


def _ownership(attr: paramiko.SFTPAttributes) -> tuple[str, str]:
    # Long name is "ls -l" style: perms, links, owner, group, size, ...
    longname = getattr(attr, "longname", None)
    if longname:
        parts = longname.split()
        if len(parts) >= 4:
            return parts[2], parts[3]

    owner = str(attr.st_uid) if attr.st_uid is not None else UNKNOWN_OWNER
    group = str(attr.st_gid) if attr.st_gid is not None else UNKNOWN_OWNER
    return owner, group


class TransferDirection(Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class TransferProgress:
    transferred_bytes: int
    total_bytes: int
    direction: TransferDirection
    filename: str
    speed: float | None = None  # bytes per second
    remaining_time: float | None = None  # seconds

    @property
    def progress(self) -> float:
        """Fraction done in [0, 1]; 0.0 when the total is unknown or zero."""
        if self.total_bytes <= 0:
            return 0.0
        return min(max(self.transferred_bytes / self.total_bytes, 0.0), 1.0)

    @property
    def progress_percentage(self) -> int:
        return int(self.progress * 100)

    @property
    def is_completed(self) -> bool:
        return self.transferred_bytes >= self.total_bytes


class TransferOperation(Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"
    RENAME = "rename"
    MKDIR = "mkdir"
    RMDIR = "rmdir"


@dataclass(frozen=True)
class TransferResult:
    operation: TransferOperation
    local_path: str
    remote_path: str
    file_size: int
    transferred_bytes: int
    execution_time: float
    success: bool
    error_message: str | None = None

    @property
    def average_speed(self) -> float:
        if self.execution_time <= 0:
            return 0.0
        return self.transferred_bytes / self.execution_time

    @property
    def completion_rate(self) -> float:
        if self.file_size <= 0:
            return 0.0
        return self.transferred_bytes / self.file_size

    @property
    def summary(self) -> str:
        status = "succeeded" if self.success else f"failed ({self.error_message or 'unknown error'})"
        return (
            f"{self.operation.value} {self.local_path} <-> {self.remote_path}: {status}, "
            f"{self.transferred_bytes}/{self.file_size} bytes in {self.execution_time:.2f}s"
        )

    def __str__(self) -> str:
        return self.summary
