from .backup import BackupDocument, Block, Scene, Section, dump_backup, load_backup
from .builder import BuildOptions, build, build_from_chapters, extend, merge
from .chapters import extract_chapter_units, flatten_chapter_to_text, segment_imported_text
from .errors import (
    ArchiveError,
    EmptySelectionError,
    InvalidPatternError,
    NoActiveMatchError,
    NovelistError,
    RecoverableParseError,
    ValidationError,
)
from .search import Cursor, FindReplaceSession, Match

__all__ = [
    "BackupDocument",
    "Block",
    "Scene",
    "Section",
    "load_backup",
    "dump_backup",
    "BuildOptions",
    "build",
    "build_from_chapters",
    "extend",
    "merge",
    "segment_imported_text",
    "flatten_chapter_to_text",
    "extract_chapter_units",
    "Cursor",
    "Match",
    "FindReplaceSession",
    "NovelistError",
    "ValidationError",
    "InvalidPatternError",
    "NoActiveMatchError",
    "EmptySelectionError",
    "ArchiveError",
    "RecoverableParseError",
]
