"""
SSH connection registry

Owns the authenticated SSH transports, one per connection slot ("left" /
"right" panel). Each connection carries a companion SFTP channel; remote
helper commands (rm -rf, cp -r, mkdir -p, tar) run over exec channels of the
same transport. Idle connections are reaped by a background sweep.
"""

import asyncio
import contextlib
import io
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import paramiko

from .credentials import CredentialStore
from .errors import (
    AuthenticationFailed,
    CommandExecutionFailed,
    CredentialMissing,
    NotConnected,
    TransportError,
)
from .utils import run_blocking

logger = logging.getLogger(__name__)

_KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


@dataclass
class SSHConfig:
    """SSH connection target"""

    host: str
    username: str
    port: int = 22

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


def load_private_key(key_bytes: bytes) -> paramiko.PKey:
    """Parse PEM / OpenSSH key material held in memory."""
    text = key_bytes.decode("utf-8", errors="replace")
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text))
        except paramiko.PasswordRequiredException:
            raise AuthenticationFailed("Encrypted private keys are not supported")
        except (paramiko.SSHException, ValueError):
            continue
    raise AuthenticationFailed("Invalid or unsupported private key")


class RemoteConnection:
    """A live SSH transport plus its SFTP channel"""

    def __init__(
        self,
        slot_id: str,
        config: SSHConfig,
        client: paramiko.SSHClient,
        sftp: paramiko.SFTPClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.slot_id = slot_id
        self.config = config
        self.client = client
        self.sftp = sftp
        self._clock = clock
        self.last_used = clock()
        self.leases = 0

    def touch(self):
        self.last_used = self._clock()

    def is_active(self) -> bool:
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def execute_command(self, command: str) -> str:
        """Run a command on the remote host and return its stdout (blocking)."""
        try:
            stdin, stdout, stderr = self.client.exec_command(command)
            stdin.close()
            out = stdout.read()
            err = stderr.read()
            exit_code = stdout.channel.recv_exit_status()
        except paramiko.SSHException as e:
            raise TransportError(f"Remote command failed on {self.slot_id}: {e}")

        if exit_code != 0:
            raise CommandExecutionFailed(
                command,
                exit_code,
                stderr=err.decode("utf-8", errors="replace"),
                stdout=out.decode("utf-8", errors="replace"),
            )
        return out.decode("utf-8", errors="replace")

    def open_shell(self, term: str) -> paramiko.Channel:
        try:
            channel = self.client.invoke_shell(term=term)
        except paramiko.SSHException as e:
            raise TransportError(f"Failed to open shell on {self.slot_id}: {e}")
        channel.set_combine_stderr(True)
        return channel

    def close(self):
        """Close SFTP and transport; errors while closing are ignored."""
        for closable in (self.sftp, self.client):
            try:
                closable.close()
            except Exception as e:
                logger.debug(f"Error while closing {self.slot_id}: {e}")


class ConnectionRegistry:
    """Tracks at most one RemoteConnection per slot id.

    Bookkeeping (connect / get / disconnect / reap) is serialised by one
    asyncio lock. Adapter calls that need the connection for a while should
    use ``session()``: a leased connection is never reaped for idleness.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        connect_timeout: float = 10,
        idle_timeout: float = 15 * 60,
        reap_interval: float = 5 * 60,
        client_factory: Optional[Callable[[], Any]] = None,
        key_loader: Callable[[bytes], Any] = load_private_key,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.reap_interval = reap_interval
        self.connections: Dict[str, RemoteConnection] = {}
        self._client_factory = client_factory or paramiko.SSHClient
        self._key_loader = key_loader
        self._clock = clock
        self._lock = asyncio.Lock()
        self._reaper_task: Optional[asyncio.Task] = None

    async def connect(self, slot_id: str, config: SSHConfig) -> RemoteConnection:
        """Open an authenticated connection for a slot, replacing any existing one."""
        key_bytes = self.credentials.private_key(slot_id)
        if key_bytes is None:
            raise CredentialMissing(slot_id)

        await self.disconnect(slot_id)

        pkey = self._key_loader(key_bytes)
        connection = await run_blocking(self._open, slot_id, config, pkey)

        async with self._lock:
            previous = self.connections.pop(slot_id, None)
            self.connections[slot_id] = connection
        if previous is not None:
            await run_blocking(previous.close)

        logger.info(f"Connected: {slot_id} -> {config.describe()}")
        return connection

    def _open(self, slot_id: str, config: SSHConfig, pkey) -> RemoteConnection:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=config.host,
                port=config.port,
                username=config.username,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
            sftp = client.open_sftp()
        except paramiko.AuthenticationException as e:
            client.close()
            logger.warning(f"Authentication failed for {slot_id} ({config.describe()}): {e}")
            raise AuthenticationFailed(
                f"Authentication failed for {config.username}@{config.host}: {e}"
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            logger.warning(f"SSH connection failed for {slot_id} ({config.describe()}): {e}")
            raise TransportError(f"SSH connection to {config.host}:{config.port} failed: {e}")

        return RemoteConnection(slot_id, config, client, sftp, clock=self._clock)

    def _checkout(self, slot_id: str) -> RemoteConnection:
        # Caller holds self._lock.
        connection = self.connections.get(slot_id)
        if connection is None:
            raise NotConnected(slot_id)
        if not connection.is_active():
            del self.connections[slot_id]
            connection.close()
            logger.warning(f"Connection closed by remote end: {slot_id}")
            raise NotConnected(slot_id)
        connection.touch()
        return connection

    async def get(self, slot_id: str) -> RemoteConnection:
        """Return the live connection for a slot and refresh its idle clock."""
        async with self._lock:
            return self._checkout(slot_id)

    @contextlib.asynccontextmanager
    async def session(self, slot_id: str):
        """Lease a connection for the duration of an operation."""
        async with self._lock:
            connection = self._checkout(slot_id)
            connection.leases += 1
        try:
            yield connection
        finally:
            connection.leases -= 1
            connection.touch()

    def is_connected(self, slot_id: str) -> bool:
        connection = self.connections.get(slot_id)
        return connection is not None and connection.is_active()

    def config_for(self, slot_id: str) -> Optional[SSHConfig]:
        connection = self.connections.get(slot_id)
        return connection.config if connection else None

    def list_connections(self) -> Dict[str, Dict[str, Any]]:
        """Connection status by slot"""
        return {
            slot_id: {
                "host": conn.config.host,
                "port": conn.config.port,
                "username": conn.config.username,
                "is_connected": conn.is_active(),
                "idle_seconds": round(self._clock() - conn.last_used, 1),
            }
            for slot_id, conn in list(self.connections.items())
        }

    async def disconnect(self, slot_id: str) -> bool:
        """Close a slot's connection. Disconnecting an absent slot is a no-op."""
        async with self._lock:
            connection = self.connections.pop(slot_id, None)
        if connection is None:
            return False
        await run_blocking(connection.close)
        logger.info(f"Disconnected: {slot_id}")
        return True

    async def disconnect_all(self):
        for slot_id in list(self.connections):
            await self.disconnect(slot_id)

    async def reap_idle(self) -> List[str]:
        """Drop dead connections and those idle longer than ``idle_timeout``."""
        now = self._clock()
        async with self._lock:
            expired = [
                slot_id
                for slot_id, conn in self.connections.items()
                if conn.leases == 0
                and (now - conn.last_used > self.idle_timeout or not conn.is_active())
            ]
            victims = [self.connections.pop(slot_id) for slot_id in expired]

        for connection in victims:
            await run_blocking(connection.close)
            logger.info(f"Disconnecting idle connection: {connection.slot_id}")
        return expired

    def start_reaper(self):
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.get_running_loop().create_task(self._reaper_loop())

    async def _reaper_loop(self):
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                await self.reap_idle()
            except Exception as e:
                logger.error(f"Idle connection sweep failed: {e}")

    async def stop_reaper(self):
        task, self._reaper_task = self._reaper_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def shutdown(self):
        """Stop the reaper and close every connection"""
        await self.stop_reaper()
        await self.disconnect_all()
        logger.info("SSH connection registry shut down")
