from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from .backup import BackupDocument, Block, get_blocks, spacer_block, text_block
from .errors import EmptySelectionError, RecoverableParseError, ValidationError

CHAPTER_DIVIDER = "\n---------------- END ----------------\n"
CHAPTER_JOINER = "\n\n" + CHAPTER_DIVIDER + "\n\n"
DEFAULT_CHAPTER_PREFIX = "chapter"
CHAPTER_MODES = ("single", "grouped")

_PARAGRAPH_BREAK_RE = re.compile(r"\n{2,}")
_DIGITS_RE = re.compile(r"(\d+)")


@dataclass
class ChapterText:
    title: str
    text: str
    source: str | None = None


@dataclass(frozen=True)
class ChapterUnit:
    name: str
    content: str


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def segment_imported_text(raw_text: str) -> list[Block]:
    """
    Split a chapter's prose into backup blocks.

    Every paragraph (separated by one or more blank lines) becomes a text
    block followed by an empty spacer block, which is how the backup format
    renders paragraph spacing. The result always holds at least one block.
    """
    normalized = normalize_newlines(raw_text)
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK_RE.split(normalized)]
    blocks: list[Block] = []
    for paragraph in paragraphs:
        if not paragraph:
            continue
        blocks.append(text_block(paragraph))
        blocks.append(spacer_block())
    if blocks:
        return blocks
    if raw_text:
        return [spacer_block()]
    return [text_block("")]


def flatten_chapter_to_text(blocks: Iterable[Block]) -> str:
    return "\n".join(block.content for block in blocks).rstrip("\n")


def join_chapters(texts: Iterable[str]) -> str:
    return CHAPTER_JOINER.join(texts)


def natural_sort_key(name: str) -> list[object]:
    parts = _DIGITS_RE.split(name)
    return [int(part) if part.isdigit() else part.casefold() for part in parts]


def _chapter_number(value: int) -> str:
    return f"{value:02d}"


def extract_chapter_units(
    chapters: Sequence[str],
    *,
    prefix: str = DEFAULT_CHAPTER_PREFIX,
    start_number: int = 1,
    offset: int = 0,
    mode: str = "single",
    group_size: int = 1,
) -> list[ChapterUnit]:
    """
    Turn ordered chapter texts into named output files.

    ``offset`` chapters are skipped from the front; the first kept chapter is
    numbered ``start_number``. ``single`` mode emits ``{prefix}{NN}.txt`` per
    chapter, ``grouped`` mode bundles ``group_size`` chapters into
    ``{prefix} C{start}-{end}.txt`` joined by the END divider.
    """
    if mode not in CHAPTER_MODES:
        raise ValidationError(f"Unknown chapter mode: {mode!r} (expected one of {', '.join(CHAPTER_MODES)}).")
    offset = max(0, offset)
    usable = list(chapters[offset:])
    if not usable:
        raise EmptySelectionError(
            f"No chapters left to export: offset {offset} skips all {len(chapters)} chapter(s)."
        )

    units: list[ChapterUnit] = []
    if mode == "single":
        for index, text in enumerate(usable):
            name = f"{prefix}{_chapter_number(start_number + index)}.txt"
            units.append(ChapterUnit(name=name, content=text))
        return units

    group_size = max(1, group_size)
    last_number = start_number + len(usable) - 1
    for index in range(0, len(usable), group_size):
        group = usable[index : index + group_size]
        first = start_number + index
        last = min(first + group_size - 1, last_number)
        if first == last:
            name = f"{prefix} C{_chapter_number(first)}.txt"
        else:
            name = f"{prefix} C{_chapter_number(first)}-{_chapter_number(last)}.txt"
        units.append(ChapterUnit(name=name, content=join_chapters(group)))
    return units


def document_chapter_texts(
    document: BackupDocument,
) -> tuple[list[ChapterText], list[RecoverableParseError]]:
    warnings: list[RecoverableParseError] = []
    chapters: list[ChapterText] = []
    ordered = sorted(enumerate(document.scenes), key=lambda item: item[1].ranking)
    for index, scene in ordered:
        blocks, problem = get_blocks(scene)
        if problem is not None:
            warnings.append(problem.with_scene(index, scene.title))
        chapters.append(
            ChapterText(title=scene.title, text=flatten_chapter_to_text(blocks), source=scene.code)
        )
    return chapters, warnings
