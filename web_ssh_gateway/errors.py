"""
Gateway error taxonomy

Every operation exposed to the browser either returns a payload or raises
one of these. The HTTP layer turns them into ``{"error": message}``.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.message}


class InvalidRequest(GatewayError):
    """Missing or malformed request parameters"""


class CredentialMissing(GatewayError):
    def __init__(self, slot_id: str):
        super().__init__(
            f"No PEM key uploaded for connection '{slot_id}'. Upload a .pem file first."
        )
        self.slot_id = slot_id


class AuthenticationFailed(GatewayError):
    pass


class TransportError(GatewayError):
    status_code = 502


class NotConnected(GatewayError):
    status_code = 409

    def __init__(self, slot_id: str):
        super().__init__(
            f'SSH connection "{slot_id}" is not established. Connect first.'
        )
        self.slot_id = slot_id


class NotFound(GatewayError):
    status_code = 404


class IsADirectory(GatewayError):
    pass


class NotADirectory(GatewayError):
    pass


class FileTooLarge(GatewayError):
    status_code = 413


class PathTraversal(GatewayError):
    status_code = 403


class CommandExecutionFailed(GatewayError):
    """A remote helper command exited non-zero"""

    status_code = 500

    def __init__(self, command: str, exit_code: int, stderr: str = "", stdout: str = ""):
        detail = (stderr or stdout).strip()
        super().__init__(f"Command exited with code {exit_code}: {detail}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


def from_os_error(exc: OSError, path: Optional[str] = None) -> GatewayError:
    """Map an OSError from local disk or SFTP onto the gateway taxonomy."""
    target = path or getattr(exc, "filename", None) or ""
    reason = exc.strerror or str(exc) or exc.__class__.__name__
    if isinstance(exc, FileNotFoundError):
        return NotFound(f"No such file or directory: {target}")
    if isinstance(exc, IsADirectoryError):
        return IsADirectory(f"Is a directory: {target}")
    if isinstance(exc, NotADirectoryError):
        return NotADirectory(f"Not a directory: {target}")
    if target:
        return GatewayError(f"{reason}: {target}")
    return GatewayError(reason)
