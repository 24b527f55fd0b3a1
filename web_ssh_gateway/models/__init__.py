from .connection import (
    ConnectRequest,
    CredentialUploadResult,
    SlotRequest,
    SlotStatus,
)
from .file import (
    BatchRequest,
    DirectoryEntry,
    DirectoryListing,
    FileContent,
    MkdirRequest,
    RenameRequest,
    TransferOperation,
    TransferRequest,
    TransferResult,
    UploadResult,
)
from .terminal import ResizeMessage

__all__ = [
    "ConnectRequest",
    "CredentialUploadResult",
    "SlotRequest",
    "SlotStatus",
    "BatchRequest",
    "DirectoryEntry",
    "DirectoryListing",
    "FileContent",
    "MkdirRequest",
    "RenameRequest",
    "TransferOperation",
    "TransferRequest",
    "TransferResult",
    "UploadResult",
    "ResizeMessage",
]
