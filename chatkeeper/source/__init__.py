from __future__ import annotations

from .paths import GLOBAL_KEY, discover_locations, global_location
from .reader import ReadOutcome, SourceLocation, SourceReader, SourceSnapshot
from .writer import SourceWriter

__all__ = [
    "GLOBAL_KEY",
    "ReadOutcome",
    "SourceLocation",
    "SourceReader",
    "SourceSnapshot",
    "SourceWriter",
    "discover_locations",
    "global_location",
]
