"""Error taxonomy for the sheet engine.

- MalformedInput: unparseable ranges, non-rectangular pastes, invalid rules
- UnsupportedContainer: bytes that are neither delimited text nor XLSX
- ServerErrorMasquerade: an error response handed over as a file
- PartialApplyFailure: a batch edit that could not be committed as a whole
"""
from __future__ import annotations

from typing import Optional


class SheetEngineError(Exception):
    """Base class for all engine errors."""


class MalformedInput(SheetEngineError, ValueError):
    """Input could not be interpreted (range text, paste block, rule definition)."""


class UnsupportedContainer(SheetEngineError):
    """Decode found neither delimited text nor a readable XLSX container."""


class ServerErrorMasquerade(SheetEngineError):
    """Decode input is an error response (JSON body or HTML page), not a file."""

    def __init__(self, kind: str, message: str, server_message: Optional[str] = None):
        super().__init__(message)
        self.kind = kind  # "json" or "html"
        self.server_message = server_message


class PartialApplyFailure(SheetEngineError):
    """A batch mutation failed part way; nothing was committed."""
