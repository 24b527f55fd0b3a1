"""
Local workspace filesystem

Every user-supplied path goes through ``WorkspaceResolver.normalize`` first;
after that the adapter trusts the resolved path completely.
"""

import functools
import logging
import os
import posixpath
import shutil
import stat
import tempfile
import zipfile
from typing import List

from .errors import GatewayError, NotADirectory, PathTraversal, from_os_error
from .filesystem import CHUNK_SIZE, Download, Filesystem
from .models import DirectoryEntry, DirectoryListing
from .utils import MIB, format_permissions, iso_timestamp, run_blocking

logger = logging.getLogger(__name__)


class WorkspaceResolver:
    """Maps workspace-rooted paths (``/a/b``) onto the local disk"""

    def __init__(self, root: str):
        self.root = os.path.realpath(root)

    def _inside(self, absolute: str) -> bool:
        return absolute == self.root or absolute.startswith(self.root + os.sep)

    def normalize(self, user_path: str) -> str:
        """Resolve ``.``, ``..`` and symlinks; refuse anything outside the root."""
        if not user_path or user_path == "/":
            return self.root

        clean = posixpath.normpath(user_path.lstrip("/"))
        resolved = os.path.normpath(os.path.join(self.root, clean))
        if not self._inside(resolved):
            raise PathTraversal("Path traversal not allowed")

        real = os.path.realpath(resolved)
        if not self._inside(real):
            raise PathTraversal("Symlink traversal not allowed")
        return real

    def to_rooted(self, absolute: str) -> str:
        relative = os.path.relpath(absolute, self.root)
        if relative == ".":
            return "/"
        return "/" + relative.replace(os.sep, "/")


def _entry_from_stat(name: str, path: str, st: os.stat_result) -> DirectoryEntry:
    return DirectoryEntry(
        name=name,
        path=path,
        is_directory=stat.S_ISDIR(st.st_mode),
        size=st.st_size,
        modified=iso_timestamp(st.st_mtime),
        permissions=format_permissions(st.st_mode),
    )


def _zip_directory(src_dir: str, zip_path: str, root_name: str) -> None:
    """Write ``src_dir`` into a zip archive with ``root_name`` as the top folder."""
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED, allowZip64=True) as zf:
        zf.writestr(root_name + "/", b"")
        for dirpath, dirnames, filenames in os.walk(src_dir):
            rel_dir = os.path.relpath(dirpath, src_dir)
            arc_dir = root_name if rel_dir == "." else posixpath.join(
                root_name, rel_dir.replace(os.sep, "/")
            )
            if not filenames and not dirnames and rel_dir != ".":
                zf.writestr(arc_dir + "/", b"")
            for filename in filenames:
                full = os.path.join(dirpath, filename)
                if os.path.islink(full):
                    continue
                zf.write(full, posixpath.join(arc_dir, filename))


async def _iter_local_file(path: str, remove_after: bool = False):
    handle = await run_blocking(open, path, "rb")
    try:
        while True:
            chunk = await run_blocking(handle.read, CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        handle.close()
        if remove_after:
            _remove_archive(path)


def _remove_archive(path: str):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary archive {path}: {e}")


class LocalFilesystem(Filesystem):
    """Filesystem backend for the local workspace"""

    def __init__(self, resolver: WorkspaceResolver, preview_limit: int = MIB):
        super().__init__(preview_limit)
        self.resolver = resolver

    async def _run(self, func, *args, path: str = ""):
        try:
            return await run_blocking(func, *args)
        except OSError as e:
            raise from_os_error(e, path)

    def _scan(self, absolute: str, include_hidden: bool) -> List[DirectoryEntry]:
        entries = []
        with os.scandir(absolute) as items:
            for item in items:
                if not include_hidden and item.name.startswith("."):
                    continue
                try:
                    st = os.stat(item.path)
                except OSError:
                    # Broken links and unreadable entries are skipped.
                    continue
                entries.append(
                    _entry_from_stat(item.name, self.resolver.to_rooted(item.path), st)
                )
        return entries

    async def list_directory(self, path: str) -> DirectoryListing:
        absolute = self.resolver.normalize(path)
        entries = await self._run(self._scan, absolute, False, path=path)
        rooted = self.resolver.to_rooted(absolute)
        parent = None if rooted == "/" else self.resolver.to_rooted(os.path.dirname(absolute))
        return DirectoryListing(path=rooted, entries=entries, parent=parent)

    async def scandir(self, path: str) -> List[DirectoryEntry]:
        absolute = self.resolver.normalize(path)
        return await self._run(self._scan, absolute, True, path=path)

    async def stat(self, path: str) -> DirectoryEntry:
        absolute = self.resolver.normalize(path)
        st = await self._run(os.stat, absolute, path=path)
        rooted = self.resolver.to_rooted(absolute)
        return _entry_from_stat(self.basename(rooted), rooted, st)

    async def read_bytes(self, path: str) -> bytes:
        absolute = self.resolver.normalize(path)

        def _read():
            with open(absolute, "rb") as handle:
                return handle.read()

        return await self._run(_read, path=path)

    async def write_bytes(self, path: str, data: bytes) -> None:
        absolute = self.resolver.normalize(path)

        def _write():
            os.makedirs(os.path.dirname(absolute), exist_ok=True)
            with open(absolute, "wb") as handle:
                handle.write(data)

        await self._run(_write, path=path)

    async def delete(self, path: str) -> None:
        absolute = self.resolver.normalize(path)
        if absolute == self.resolver.root:
            raise GatewayError("Refusing to delete the workspace root")

        def _delete():
            if stat.S_ISDIR(os.lstat(absolute).st_mode):
                shutil.rmtree(absolute)
            else:
                os.unlink(absolute)

        await self._run(_delete, path=path)

    async def rename(self, old_path: str, new_path: str) -> None:
        old_absolute = self.resolver.normalize(old_path)
        new_absolute = self.resolver.normalize(new_path)
        await self._run(os.rename, old_absolute, new_absolute, path=old_path)

    async def make_directory(self, path: str) -> None:
        absolute = self.resolver.normalize(path)

        def _mkdir():
            os.makedirs(absolute, exist_ok=True)

        await self._run(_mkdir, path=path)

    async def ensure_directory(self, path: str) -> None:
        entry = await self.stat(path)
        if not entry.is_directory:
            raise NotADirectory("Destination must be a directory")

    def _target(self, source: str, destination_dir: str):
        source_absolute = self.resolver.normalize(source)
        destination_absolute = self.resolver.normalize(destination_dir)
        target = os.path.join(destination_absolute, os.path.basename(source_absolute))
        return source_absolute, target

    async def copy_into(self, source: str, destination_dir: str) -> str:
        source_absolute, target = self._target(source, destination_dir)

        def _copy():
            if os.path.isdir(source_absolute):
                shutil.copytree(source_absolute, target, symlinks=True, dirs_exist_ok=True)
            else:
                shutil.copy2(source_absolute, target)

        await self._run(_copy, path=source)
        return self.resolver.to_rooted(target)

    async def move_into(self, source: str, destination_dir: str) -> str:
        source_absolute, target = self._target(source, destination_dir)
        # rename when possible, copy + delete across devices
        await self._run(shutil.move, source_absolute, target, path=source)
        return self.resolver.to_rooted(target)

    async def open_download(self, path: str) -> Download:
        absolute = self.resolver.normalize(path)
        st = await self._run(os.stat, absolute, path=path)
        name = os.path.basename(absolute) or "workspace"

        if not stat.S_ISDIR(st.st_mode):
            return Download(
                filename=name,
                media_type="application/octet-stream",
                chunks=_iter_local_file(absolute),
                size=st.st_size,
            )

        handle, zip_path = tempfile.mkstemp(prefix="web-ssh-gateway-", suffix=".zip")
        os.close(handle)
        try:
            await self._run(_zip_directory, absolute, zip_path, name, path=path)
        except GatewayError:
            os.unlink(zip_path)
            raise
        logger.info(f"Packed {self.resolver.to_rooted(absolute)} into zip archive")
        return Download(
            filename=f"{name}.zip",
            media_type="application/zip",
            chunks=_iter_local_file(zip_path, remove_after=True),
            size=os.path.getsize(zip_path),
            cleanup=functools.partial(_remove_archive, zip_path),
        )
