"""
Web SSH Gateway

Browser file manager and terminal backend: two named SSH connection slots,
a sandboxed local workspace, cross-host transfers, and a WebSocket shell.
"""

__version__ = "0.1.0"

from .gateway import Gateway

__all__ = ["Gateway", "__version__"]
