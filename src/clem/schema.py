from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel


class RunRequest(BaseModel):
    text: str
    indent_width: Optional[int] = None
    indent_mode: Optional[str] = None
    timeout_ms: Optional[int] = None
    call_limit: Optional[int] = None


class LineResultDTO(BaseModel):
    line: int
    value: str
    is_error: bool = False


class RunResponse(BaseModel):
    state: str
    results: List[LineResultDTO] = []
    errors: List[str] = []
