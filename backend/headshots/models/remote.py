"""
Remote enhancement result model
"""
from typing import Optional

from pydantic import BaseModel


class RemoteResult(BaseModel):
    """Outcome of one remote call; failures never raise"""
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, url: Optional[str] = None) -> "RemoteResult":
        return cls(success=True, url=url)

    @classmethod
    def failure(cls, error: str) -> "RemoteResult":
        return cls(success=False, error=error)
