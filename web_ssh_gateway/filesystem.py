"""
Filesystem capability interface

The local workspace and a remote SFTP host expose the same operations so the
HTTP layer and the transfer orchestrator never branch on where a path lives.
The backend is chosen by the presence of a connection slot id.
"""

import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional
from urllib.parse import quote

from .errors import FileTooLarge, IsADirectory
from .models import DirectoryEntry, DirectoryListing, FileContent
from .utils import MIB, safe_filename

CHUNK_SIZE = 64 * 1024


@dataclass
class Download:
    """A file or archive streamed back to the browser"""

    filename: str
    media_type: str
    chunks: AsyncIterator[bytes]
    size: Optional[int] = None
    # Runs after the response, whether or not the body was consumed.
    cleanup: Optional[Callable[[], None]] = None

    def content_disposition(self) -> str:
        name = safe_filename(self.filename)
        fallback = name.encode("ascii", errors="replace").decode("ascii").replace("?", "_")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


class Filesystem(ABC):
    """Directory and file operations common to every backend.

    Paths are POSIX strings. Local paths are rooted at the workspace
    (``/docs/a.txt``), remote paths are absolute on the remote host.
    """

    is_remote = False

    def __init__(self, preview_limit: int = MIB):
        self.preview_limit = preview_limit

    @staticmethod
    def join(directory: str, name: str) -> str:
        return posixpath.join(directory or "/", name)

    @staticmethod
    def basename(path: str) -> str:
        return posixpath.basename(path.rstrip("/")) or path

    @abstractmethod
    async def list_directory(self, path: str) -> DirectoryListing:
        """List a directory, hiding dot entries."""

    @abstractmethod
    async def scandir(self, path: str) -> List[DirectoryEntry]:
        """All entries of a directory, hidden ones included."""

    @abstractmethod
    async def stat(self, path: str) -> DirectoryEntry:
        ...

    @abstractmethod
    async def read_bytes(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def write_bytes(self, path: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a file, or a directory recursively."""

    @abstractmethod
    async def rename(self, old_path: str, new_path: str) -> None:
        ...

    @abstractmethod
    async def make_directory(self, path: str) -> None:
        """Create a directory and its parents; existing directories are fine."""

    @abstractmethod
    async def copy_into(self, source: str, destination_dir: str) -> str:
        """Copy ``source`` into ``destination_dir`` on the same host, return the new path."""

    @abstractmethod
    async def move_into(self, source: str, destination_dir: str) -> str:
        """Move ``source`` into ``destination_dir`` on the same host, return the new path."""

    @abstractmethod
    async def ensure_directory(self, path: str) -> None:
        """Batch precondition: ``path`` must be an existing directory."""

    @abstractmethod
    async def open_download(self, path: str) -> Download:
        ...

    async def read_file(self, path: str) -> FileContent:
        """Read a file for preview. Size is checked before any byte is transferred."""
        entry = await self.stat(path)
        if entry.is_directory:
            raise IsADirectory("Cannot read a directory")
        if entry.size > self.preview_limit:
            raise FileTooLarge(
                f"File too large to preview (max {self.preview_limit // MIB}MB)"
            )
        data = await self.read_bytes(path)
        return FileContent(
            path=path,
            content=data.decode("utf-8", errors="replace"),
            size=entry.size,
            modified=entry.modified,
        )
