from __future__ import annotations

from fastapi import HTTPException


# ──────────────────────────────────────────────────────────────
# Pipeline errors
# ──────────────────────────────────────────────────────────────

class PipelineError(Exception):
    """Base for everything raised below the poll-cycle boundary."""


class FetchError(PipelineError):
    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class RenderError(PipelineError):
    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class ParseError(PipelineError):
    pass


class GeocodeError(PipelineError):
    def __init__(self, query: str, message: str, *, retryable: bool = False):
        super().__init__(f"{query!r}: {message}")
        self.query = query
        self.retryable = retryable


class DispatchError(PipelineError):
    def __init__(self, session_id: str, message: str):
        super().__init__(f"session={session_id}: {message}")
        self.session_id = session_id


# ──────────────────────────────────────────────────────────────
# HTTP helpers
# ──────────────────────────────────────────────────────────────

def bad_request(code: str, message: str):
    raise HTTPException(status_code=400, detail={"code": code, "message": message})


def not_found(code: str, message: str):
    raise HTTPException(status_code=404, detail={"code": code, "message": message})
