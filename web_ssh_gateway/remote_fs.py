"""
Remote filesystem over SFTP

Single-entry operations go through the slot's SFTP channel. SFTP has no
recursive primitives, so directory delete, recursive copy and ``mkdir -p``
run as shell commands on the same transport with every path passed through
``shell_quote``. Directory downloads are tarred on the remote side and
streamed while the archive grows.
"""

import logging
import posixpath
from typing import List

import paramiko

from .errors import GatewayError, TransportError, from_os_error
from .filesystem import CHUNK_SIZE, Download, Filesystem
from .models import DirectoryEntry, DirectoryListing
from .ssh_manager import ConnectionRegistry
from .utils import MIB, format_permissions, is_directory_mode, iso_timestamp, run_blocking, shell_quote

logger = logging.getLogger(__name__)


def _entry_from_attrs(name: str, path: str, attrs: paramiko.SFTPAttributes) -> DirectoryEntry:
    return DirectoryEntry(
        name=name,
        path=path,
        is_directory=is_directory_mode(attrs.st_mode),
        size=attrs.st_size or 0,
        modified=iso_timestamp(attrs.st_mtime),
        permissions=format_permissions(attrs.st_mode),
    )


def _read_remote(sftp: paramiko.SFTPClient, path: str) -> bytes:
    with sftp.open(path, "rb") as handle:
        handle.prefetch()
        return handle.read()


def _write_remote(sftp: paramiko.SFTPClient, path: str, data: bytes) -> None:
    with sftp.open(path, "wb") as handle:
        handle.set_pipelined(True)
        handle.write(data)


class RemoteFilesystem(Filesystem):
    """Filesystem backend bound to one connection slot"""

    is_remote = True

    def __init__(self, registry: ConnectionRegistry, slot_id: str, preview_limit: int = MIB):
        super().__init__(preview_limit)
        self.registry = registry
        self.slot_id = slot_id

    async def _sftp(self, method: str, path: str, *args):
        async with self.registry.session(self.slot_id) as connection:
            try:
                return await run_blocking(getattr(connection.sftp, method), path, *args)
            except OSError as e:
                raise from_os_error(e, path)
            except paramiko.SSHException as e:
                raise TransportError(f"SFTP {method} failed on {self.slot_id}: {e}")

    async def _transfer(self, func, path: str, *args):
        async with self.registry.session(self.slot_id) as connection:
            try:
                return await run_blocking(func, connection.sftp, path, *args)
            except OSError as e:
                raise from_os_error(e, path)
            except paramiko.SSHException as e:
                raise TransportError(f"SFTP transfer failed on {self.slot_id}: {e}")

    async def execute(self, command: str) -> str:
        async with self.registry.session(self.slot_id) as connection:
            return await run_blocking(connection.execute_command, command)

    async def home_directory(self) -> str:
        try:
            return await self._sftp("normalize", ".")
        except GatewayError as e:
            config = self.registry.config_for(self.slot_id)
            if config is None:
                raise
            logger.debug(f"Could not resolve home on {self.slot_id}: {e}")
            return f"/home/{config.username}"

    async def list_directory(self, path: str) -> DirectoryListing:
        remote_path = path
        if not path or path == "/":
            remote_path = await self.home_directory()

        attrs_list = await self._sftp("listdir_attr", remote_path)
        entries = [
            _entry_from_attrs(attrs.filename, posixpath.join(remote_path, attrs.filename), attrs)
            for attrs in attrs_list
            if not attrs.filename.startswith(".")
        ]
        parent = None if remote_path == "/" else posixpath.dirname(remote_path)
        return DirectoryListing(path=remote_path, entries=entries, parent=parent)

    async def scandir(self, path: str) -> List[DirectoryEntry]:
        attrs_list = await self._sftp("listdir_attr", path)
        return [
            _entry_from_attrs(attrs.filename, posixpath.join(path, attrs.filename), attrs)
            for attrs in attrs_list
            if attrs.filename not in (".", "..")
        ]

    async def stat(self, path: str) -> DirectoryEntry:
        attrs = await self._sftp("stat", path)
        return _entry_from_attrs(self.basename(path), path, attrs)

    async def read_bytes(self, path: str) -> bytes:
        # Whole file in gateway memory; bounded by the 100 MiB upload ceiling.
        return await self._transfer(_read_remote, path)

    async def write_bytes(self, path: str, data: bytes) -> None:
        await self._transfer(_write_remote, path, data)

    async def delete(self, path: str) -> None:
        entry = await self.stat(path)
        if entry.is_directory:
            await self.execute(f"rm -rf {shell_quote(path)}")
        else:
            await self._sftp("remove", path)

    async def rename(self, old_path: str, new_path: str) -> None:
        await self._sftp("rename", old_path, new_path)

    async def make_directory(self, path: str) -> None:
        await self.execute(f"mkdir -p {shell_quote(path)}")

    async def ensure_directory(self, path: str) -> None:
        # Only the slot is checked up front; a missing destination fails per item.
        await self.registry.get(self.slot_id)

    async def copy_into(self, source: str, destination_dir: str) -> str:
        target = self.join(destination_dir, self.basename(source))
        await self.execute(f"cp -r {shell_quote(source)} {shell_quote(target)}")
        return target

    async def move_into(self, source: str, destination_dir: str) -> str:
        target = self.join(destination_dir, self.basename(source))
        await self._sftp("rename", source, target)
        return target

    async def open_download(self, path: str) -> Download:
        entry = await self.stat(path)
        if entry.is_directory:
            parent = posixpath.dirname(path.rstrip("/")) or "/"
            name = self.basename(path)
            command = f"tar cz -C {shell_quote(parent)} {shell_quote(name)}"
            return Download(
                filename=f"{name}.tar.gz",
                media_type="application/gzip",
                chunks=self._iter_command(command),
            )
        return Download(
            filename=entry.name,
            media_type="application/octet-stream",
            chunks=self._iter_file(path),
            size=entry.size,
        )

    async def _iter_file(self, path: str):
        async with self.registry.session(self.slot_id) as connection:
            handle = await run_blocking(connection.sftp.open, path, "rb")
            try:
                while True:
                    chunk = await run_blocking(handle.read, CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
            finally:
                await run_blocking(handle.close)

    async def _iter_command(self, command: str):
        async with self.registry.session(self.slot_id) as connection:
            stdin, stdout, stderr = await run_blocking(connection.client.exec_command, command)
            stdin.close()
            channel = stdout.channel
            try:
                while True:
                    chunk = await run_blocking(channel.recv, CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
                exit_code = await run_blocking(channel.recv_exit_status)
                if exit_code != 0:
                    detail = stderr.read().decode("utf-8", errors="replace").strip()
                    logger.warning(f"Archive command on {self.slot_id} exited {exit_code}: {detail}")
            finally:
                await run_blocking(channel.close)
