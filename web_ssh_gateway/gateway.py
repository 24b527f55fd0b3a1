"""
Gateway

The one object that owns the process-wide state (credential store,
connection registry, terminal sessions) and exposes the operations the HTTP
layer calls. Built once at start-up and torn down by ``shutdown()``.
"""

import logging
from typing import Any, Callable, List, Optional

from .config import AppConfig
from .credentials import CredentialStore
from .errors import FileTooLarge, InvalidRequest
from .filesystem import Download, Filesystem
from .local_fs import LocalFilesystem, WorkspaceResolver
from .models import (
    DirectoryListing,
    FileContent,
    SlotStatus,
    TransferOperation,
    TransferResult,
    UploadResult,
)
from .remote_fs import RemoteFilesystem
from .session_manager import SessionManager
from .ssh_manager import ConnectionRegistry, SSHConfig, load_private_key
from .terminal import TerminalBridge
from .transfer import TransferOrchestrator
from .utils import safe_filename

logger = logging.getLogger(__name__)


class Gateway:
    """Remote-session and remote-filesystem gateway"""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        key_loader: Callable[[bytes], Any] = load_private_key,
    ):
        self.config = config or AppConfig()
        files = self.config.files
        ssh = self.config.ssh

        self.credentials = CredentialStore()
        self.registry = ConnectionRegistry(
            self.credentials,
            connect_timeout=ssh.connect_timeout,
            idle_timeout=ssh.idle_timeout,
            reap_interval=ssh.reap_interval,
            client_factory=client_factory,
            key_loader=key_loader,
        )
        self.resolver = WorkspaceResolver(files.workspace_root)
        self.local = LocalFilesystem(self.resolver, preview_limit=files.preview_limit)
        self.transfers = TransferOrchestrator(self.filesystem)
        self.sessions = SessionManager()
        self.terminals = TerminalBridge(
            self.registry,
            self.sessions,
            workspace_root=self.resolver.root,
            local_shell=self.config.terminal.local_shell,
            terminal_type=ssh.terminal_type,
        )

    def filesystem(self, slot_id: Optional[str] = None) -> Filesystem:
        """Local workspace when no slot is named, the slot's SFTP host otherwise"""
        if slot_id:
            return RemoteFilesystem(
                self.registry, slot_id, preview_limit=self.config.files.preview_limit
            )
        return self.local

    async def start(self):
        self.registry.start_reaper()
        logger.info(f"Gateway started, workspace: {self.resolver.root}")

    async def shutdown(self):
        await self.sessions.close_all()
        await self.registry.shutdown()
        logger.info("Gateway shut down")

    # --- credentials and connections ---

    def store_credential(self, slot_id: str, key_bytes: bytes):
        if not slot_id:
            raise InvalidRequest("connectionId is required")
        limit = self.config.files.key_upload_limit
        if len(key_bytes) > limit:
            raise FileTooLarge(f"Key file too large (max {limit // 1024}KB)")
        self.credentials.store(slot_id, key_bytes)

    async def connect(self, slot_id: str, host: str, port: int, username: str):
        await self.registry.connect(slot_id, SSHConfig(host=host, username=username, port=port))

    async def disconnect(self, slot_id: str):
        await self.registry.disconnect(slot_id)

    def status(self, slot_id: str) -> SlotStatus:
        return SlotStatus(
            connected=self.registry.is_connected(slot_id),
            has_pem_key=self.credentials.has(slot_id),
        )

    # --- single-entry file operations ---

    async def list_directory(self, path: str, slot_id: Optional[str] = None) -> DirectoryListing:
        return await self.filesystem(slot_id).list_directory(path or "/")

    async def read_file(self, path: str, slot_id: Optional[str] = None) -> FileContent:
        return await self.filesystem(slot_id).read_file(path)

    async def delete_entry(self, path: str, slot_id: Optional[str] = None):
        await self.filesystem(slot_id).delete(path)
        logger.info(f"Deleted {path} ({slot_id or 'local'})")

    async def rename_entry(self, old_path: str, new_path: str, slot_id: Optional[str] = None):
        await self.filesystem(slot_id).rename(old_path, new_path)

    async def make_directory(self, path: str, slot_id: Optional[str] = None):
        await self.filesystem(slot_id).make_directory(path)

    # --- batch operations ---

    async def copy_entries(
        self, sources: List[str], destination: str, slot_id: Optional[str] = None
    ) -> List[TransferResult]:
        return await self.transfers.copy(sources, destination, slot_id)

    async def move_entries(
        self, sources: List[str], destination: str, slot_id: Optional[str] = None
    ) -> List[TransferResult]:
        return await self.transfers.move(sources, destination, slot_id)

    async def transfer_entries(
        self,
        sources: List[str],
        destination: str,
        source_slot: Optional[str] = None,
        dest_slot: Optional[str] = None,
        operation: str = TransferOperation.COPY.value,
    ) -> List[TransferResult]:
        return await self.transfers.transfer(sources, destination, source_slot, dest_slot, operation)

    # --- upload / download ---

    async def upload_file(
        self,
        data: bytes,
        filename: str,
        destination_dir: str = "/",
        slot_id: Optional[str] = None,
    ) -> UploadResult:
        limit = self.config.files.upload_limit
        if len(data) > limit:
            raise FileTooLarge(f"File too large (max {limit // (1024 * 1024)}MB)")

        name = safe_filename(filename, default="")
        if not name or name in (".", ".."):
            raise InvalidRequest("A file name is required")

        fs = self.filesystem(slot_id)
        target = fs.join(destination_dir or "/", name)
        await fs.write_bytes(target, data)
        if not fs.is_remote:
            target = self.resolver.to_rooted(self.resolver.normalize(target))
        logger.info(f"Uploaded {name} ({len(data)} bytes) to {target} ({slot_id or 'local'})")
        return UploadResult(path=target, filename=name, size=len(data))

    async def download_entry(self, path: str, slot_id: Optional[str] = None) -> Download:
        return await self.filesystem(slot_id).open_download(path)
