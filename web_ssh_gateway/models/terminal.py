from typing import Literal
from pydantic import BaseModel, Field


class ResizeMessage(BaseModel):
    type: Literal["resize"]
    cols: int = Field(..., gt=0, description="Terminal width in columns")
    rows: int = Field(..., gt=0, description="Terminal height in rows")
