from typing import Optional
from pydantic import BaseModel, Field


class ConnectRequest(BaseModel):
    connection_id: str = Field(
        ..., alias="connectionId", min_length=1, description="Connection slot id"
    )
    host: str = Field(..., min_length=1, description="Remote server hostname or IP")
    port: int = Field(default=22, ge=1, le=65535, description="SSH port")
    username: str = Field(..., min_length=1, description="SSH username")

    class Config:
        populate_by_name = True


class SlotRequest(BaseModel):
    connection_id: str = Field(
        ..., alias="connectionId", min_length=1, description="Connection slot id"
    )

    class Config:
        populate_by_name = True


class SlotStatus(BaseModel):
    connected: bool = Field(..., description="Whether the slot has a live transport")
    has_pem_key: bool = Field(
        ..., alias="hasPemKey", description="Whether a key was uploaded for the slot"
    )

    class Config:
        populate_by_name = True


class CredentialUploadResult(BaseModel):
    success: bool = True
    connection_id: str = Field(..., alias="connectionId")
    file_name: Optional[str] = Field(default=None, alias="fileName")

    class Config:
        populate_by_name = True
