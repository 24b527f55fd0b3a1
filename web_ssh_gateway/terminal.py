"""
Terminal bridge

Relays raw bytes between a browser WebSocket and an execution unit: a local
login shell (plain pipes, no pseudo-terminal) or an interactive shell
channel on a remote slot. A JSON ``{"type": "resize", "cols", "rows"}``
message resizes the remote pty and is never forwarded as input; everything
else is terminal input.
"""

import asyncio
import codecs
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

import paramiko
from pydantic import ValidationError
from starlette.websockets import WebSocket, WebSocketState

from .errors import GatewayError, NotConnected
from .models import ResizeMessage
from .session_manager import SessionManager, TerminalSession
from .ssh_manager import ConnectionRegistry, RemoteConnection
from .utils import run_blocking

logger = logging.getLogger(__name__)

READ_SIZE = 32 * 1024

CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


def parse_control_message(text: str) -> Optional[ResizeMessage]:
    """Return a ResizeMessage if ``text`` is one, otherwise None (plain input)."""
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    if not isinstance(payload, dict) or payload.get("type") != "resize":
        return None
    try:
        return ResizeMessage(**payload)
    except ValidationError:
        return None


class ExecutionUnit(ABC):
    """A process or channel that backs one terminal session"""

    @abstractmethod
    async def read(self) -> bytes:
        """Next chunk of output, ``b""`` once the unit has exited."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def resize(self, cols: int, rows: int) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class LocalShell(ExecutionUnit):
    """Local interactive shell on pipes. Full-screen programs degrade without a pty."""

    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process

    @classmethod
    async def spawn(cls, argv: List[str], cwd: str, term: str) -> "LocalShell":
        env = dict(os.environ)
        env.update({"TERM": term, "COLORTERM": "truecolor", "SHELL": argv[0]})
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        return cls(process)

    async def read(self) -> bytes:
        return await self.process.stdout.read(READ_SIZE)

    async def write(self, data: bytes) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Shell stdin closed: {e}")

    async def resize(self, cols: int, rows: int) -> None:
        # No pseudo-terminal to resize.
        return None

    async def close(self) -> None:
        if self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
        await self.process.wait()


class RemoteShell(ExecutionUnit):
    """Interactive shell channel on an SSH transport"""

    def __init__(self, channel: paramiko.Channel):
        self.channel = channel

    @classmethod
    async def open(cls, connection: RemoteConnection, term: str) -> "RemoteShell":
        channel = await run_blocking(connection.open_shell, term)
        return cls(channel)

    async def read(self) -> bytes:
        try:
            return await run_blocking(self.channel.recv, READ_SIZE)
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.debug(f"Shell channel read ended: {e}")
            return b""

    async def write(self, data: bytes) -> None:
        try:
            await run_blocking(self.channel.sendall, data)
        except (OSError, paramiko.SSHException) as e:
            logger.debug(f"Shell channel write failed: {e}")

    async def resize(self, cols: int, rows: int) -> None:
        try:
            await run_blocking(self.channel.resize_pty, width=cols, height=rows)
        except (OSError, paramiko.SSHException) as e:
            logger.warning(f"Failed to resize remote pty: {e}")

    async def close(self) -> None:
        await run_blocking(self.channel.close)


class TerminalBridge:
    """Attaches WebSocket connections to execution units"""

    def __init__(
        self,
        registry: ConnectionRegistry,
        sessions: SessionManager,
        workspace_root: str,
        local_shell: List[str],
        terminal_type: str = "xterm-256color",
    ):
        self.registry = registry
        self.sessions = sessions
        self.workspace_root = workspace_root
        self.local_shell = local_shell
        self.terminal_type = terminal_type

    async def open_unit(self, connection: Optional[RemoteConnection]) -> ExecutionUnit:
        if connection is not None:
            return await RemoteShell.open(connection, self.terminal_type)
        return await LocalShell.spawn(self.local_shell, self.workspace_root, self.terminal_type)

    async def serve(self, websocket: WebSocket, session_id: str, slot_id: Optional[str] = None):
        """Run one terminal connection until either side closes.

        A remote terminal holds a lease on its slot while it is open, so the
        idle reaper never closes the transport under a live shell.
        """
        await websocket.accept()
        where = f"remote: {slot_id}" if slot_id else "local"

        # The previous unit for this id must be gone before a new one starts.
        await self.sessions.evict(session_id)

        async with contextlib.AsyncExitStack() as stack:
            try:
                connection = None
                if slot_id:
                    connection = await stack.enter_async_context(self.registry.session(slot_id))
                unit = await self.open_unit(connection)
            except NotConnected:
                logger.warning(f"Terminal session {session_id} refused: {slot_id} not connected")
                await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="SSH connection not established")
                return
            except (GatewayError, OSError) as e:
                logger.error(f"Failed to start terminal session {session_id} ({where}): {e}")
                await websocket.close(code=CLOSE_INTERNAL_ERROR, reason=str(e)[:120])
                return

            session = TerminalSession(id=session_id, unit=unit, slot_id=slot_id)
            await self.sessions.bind(session)
            logger.info(f"Terminal session started: {session_id} ({where})")

            tasks = [
                asyncio.create_task(self._pump_output(websocket, unit)),
                asyncio.create_task(self._pump_input(websocket, unit)),
            ]
            try:
                await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                # Runs to completion even if the handler itself is cancelled.
                await asyncio.shield(self._teardown(websocket, session, tasks))

    async def _teardown(self, websocket: WebSocket, session: TerminalSession, tasks):
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.debug(f"Terminal session {session.id} relay ended: {result}")

        try:
            await session.unit.close()
        finally:
            await self.sessions.release(session)
            await self._close_socket(websocket)
        logger.info(f"Terminal session ended: {session.id}")

    async def _pump_output(self, websocket: WebSocket, unit: ExecutionUnit):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await unit.read()
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await websocket.send_text(tail)
                return
            text = decoder.decode(chunk)
            if text:
                await websocket.send_text(text)

    async def _pump_input(self, websocket: WebSocket, unit: ExecutionUnit):
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

            data = message.get("bytes")
            text = message.get("text")
            if text is not None:
                control = parse_control_message(text)
                if control is not None:
                    await unit.resize(control.cols, control.rows)
                    continue
                data = text.encode("utf-8")
            if data:
                await unit.write(data)

    async def _close_socket(self, websocket: WebSocket):
        if (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        ):
            with contextlib.suppress(RuntimeError, OSError):
                await websocket.close()
