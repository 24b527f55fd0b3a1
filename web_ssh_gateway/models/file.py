from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class TransferOperation(str, Enum):
    COPY = "copy"
    MOVE = "move"


class DirectoryEntry(BaseModel):
    name: str = Field(..., description="Entry name")
    path: str = Field(..., description="Absolute (remote) or workspace-rooted (local) path")
    is_directory: bool = Field(..., alias="isDirectory")
    size: int = Field(default=0, description="Size in bytes")
    modified: str = Field(..., description="Last modified time, ISO 8601")
    permissions: str = Field(default="", description="Low 9 mode bits in octal, e.g. '755'")

    class Config:
        populate_by_name = True


class DirectoryListing(BaseModel):
    path: str = Field(..., description="Listed directory")
    entries: List[DirectoryEntry] = Field(default_factory=list)
    parent: Optional[str] = Field(
        default=None, description="Parent directory, None only at the root"
    )


class FileContent(BaseModel):
    path: str
    content: str = Field(..., description="File text, decoded as UTF-8")
    size: int
    modified: str


class UploadResult(BaseModel):
    success: bool = True
    path: str
    filename: str
    size: int


class TransferResult(BaseModel):
    source: str = Field(..., description="Requested source path")
    dest: str = Field(default="", description="Resolved destination, empty on failure")
    success: bool
    error: Optional[str] = Field(default=None, description="Error message if failed")


class RenameRequest(BaseModel):
    old_path: str = Field(..., alias="oldPath", min_length=1)
    new_path: str = Field(..., alias="newPath", min_length=1)
    connection_id: Optional[str] = Field(default=None, alias="connectionId")

    class Config:
        populate_by_name = True


class MkdirRequest(BaseModel):
    path: str = Field(..., min_length=1)
    connection_id: Optional[str] = Field(default=None, alias="connectionId")

    class Config:
        populate_by_name = True


class BatchRequest(BaseModel):
    sources: List[str] = Field(default_factory=list, description="Source paths")
    destination: str = Field(default="", description="Destination directory")
    connection_id: Optional[str] = Field(default=None, alias="connectionId")

    class Config:
        populate_by_name = True


class TransferRequest(BaseModel):
    sources: List[str] = Field(default_factory=list, description="Source paths")
    destination: str = Field(default="", description="Destination directory")
    source_connection_id: Optional[str] = Field(default=None, alias="sourceConnectionId")
    dest_connection_id: Optional[str] = Field(default=None, alias="destConnectionId")
    operation: TransferOperation = Field(default=TransferOperation.COPY)

    class Config:
        populate_by_name = True
        use_enum_values = True
