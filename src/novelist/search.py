from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .backup import BackupDocument, Block, Scene, get_blocks, set_blocks
from .errors import InvalidPatternError, NoActiveMatchError, RecoverableParseError
from .logging_utils import debug_log


@dataclass(frozen=True)
class MatchSpan:
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length


class Matcher(Protocol):
    @property
    def is_empty(self) -> bool: ...

    def find_from(self, text: str, offset: int) -> MatchSpan | None: ...

    def find_all_before(self, text: str, ceiling: int) -> list[MatchSpan]: ...

    def replace_all(self, text: str, replacement: str) -> tuple[str, int]: ...


class LiteralMatcher:
    """Exact, case-sensitive substring matching."""

    def __init__(self, needle: str) -> None:
        self.needle = needle

    @property
    def is_empty(self) -> bool:
        return not self.needle

    def find_from(self, text: str, offset: int) -> MatchSpan | None:
        if not self.needle:
            return None
        index = text.find(self.needle, offset)
        if index < 0:
            return None
        return MatchSpan(index, len(self.needle))

    def find_all_before(self, text: str, ceiling: int) -> list[MatchSpan]:
        spans: list[MatchSpan] = []
        if not self.needle:
            return spans
        index = text.find(self.needle)
        while 0 <= index < ceiling:
            spans.append(MatchSpan(index, len(self.needle)))
            index = text.find(self.needle, index + 1)
        return spans

    def replace_all(self, text: str, replacement: str) -> tuple[str, int]:
        if not self.needle:
            return text, 0
        count = text.count(self.needle)
        if not count:
            return text, 0
        return text.replace(self.needle, replacement), count


class PatternMatcher:
    """Regular expression matching backed by :mod:`re`."""

    def __init__(self, pattern: str) -> None:
        try:
            self.regex = re.compile(pattern)
        except re.error as exc:
            raise InvalidPatternError(f"Invalid regular expression: {exc}") from exc
        self.pattern = pattern

    @property
    def is_empty(self) -> bool:
        return not self.pattern

    def find_from(self, text: str, offset: int) -> MatchSpan | None:
        if offset > len(text):
            return None
        found = self.regex.search(text, offset)
        if found is None:
            return None
        return MatchSpan(found.start(), found.end() - found.start())

    def find_all_before(self, text: str, ceiling: int) -> list[MatchSpan]:
        # Scans from the block start like a global search, so overlapping candidates are not listed.
        spans: list[MatchSpan] = []
        for found in self.regex.finditer(text):
            if found.start() >= ceiling:
                break
            spans.append(MatchSpan(found.start(), found.end() - found.start()))
        return spans

    def check_replacement(self, replacement: str) -> None:
        # Group references in the template are validated before any block is touched.
        try:
            self.regex.sub(replacement, "")
        except (re.error, IndexError) as exc:
            raise InvalidPatternError(
                f"Invalid replacement template: {exc} (write a literal backslash as \\\\)"
            ) from exc

    def replace_all(self, text: str, replacement: str) -> tuple[str, int]:
        return self.regex.subn(replacement, text)


def make_matcher(pattern: str, is_regex: bool) -> LiteralMatcher | PatternMatcher:
    if is_regex:
        return PatternMatcher(pattern)
    return LiteralMatcher(pattern)


class CursorState(str, Enum):
    ACTIVE = "active"
    EXHAUSTED_FORWARD = "exhausted_forward"
    EXHAUSTED_BACKWARD = "exhausted_backward"


@dataclass
class Cursor:
    scene_index: int = 0
    block_index: int = 0
    char_offset: int = 0

    def state(self, scene_count: int) -> CursorState:
        if self.scene_index < 0:
            return CursorState.EXHAUSTED_BACKWARD
        if self.scene_index >= scene_count:
            return CursorState.EXHAUSTED_FORWARD
        return CursorState.ACTIVE

    def is_origin(self) -> bool:
        return self.scene_index == 0 and self.block_index == 0 and self.char_offset == 0

    def as_payload(self) -> dict[str, int]:
        return {
            "scene_index": self.scene_index,
            "block_index": self.block_index,
            "char_offset": self.char_offset,
        }


@dataclass(frozen=True)
class Match:
    scene_index: int
    block_index: int
    match_start: int
    match_length: int
    chapter_title: str
    match_line_text: str
    matched_text: str = ""

    @property
    def match_end(self) -> int:
        return self.match_start + self.match_length

    def as_payload(self) -> dict[str, object]:
        return {
            "scene_index": self.scene_index,
            "block_index": self.block_index,
            "match_start": self.match_start,
            "match_length": self.match_length,
            "chapter_title": self.chapter_title,
            "match_line_text": self.match_line_text,
            "matched_text": self.matched_text,
        }


@dataclass
class SearchResult:
    match: Match | None = None
    error: InvalidPatternError | None = None
    warnings: list[RecoverableParseError] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.match is not None


@dataclass
class ReplaceAllResult:
    count: int = 0
    warnings: list[RecoverableParseError] = field(default_factory=list)


def line_containing(text: str, index: int) -> str:
    line_start = text.rfind("\n", 0, index) + 1
    line_end = text.find("\n", index)
    if line_end < 0:
        line_end = len(text)
    return text[line_start:line_end]


class FindReplaceSession:
    """
    Resumable find & replace over the first revision of a backup document.

    The session owns the document, the cursor and the last match. Forward
    searches leave the cursor just after the match, backward searches leave it
    on the match start, so alternating directions walks the document one match
    at a time.
    """

    def __init__(self, document: BackupDocument) -> None:
        self.document = document
        self.cursor = Cursor()
        self.match: Match | None = None

    @property
    def scenes(self) -> list[Scene]:
        return self.document.scenes

    @property
    def state(self) -> CursorState:
        return self.cursor.state(len(self.scenes))

    def load(self, document: BackupDocument) -> None:
        self.document = document
        self.rewind()

    def rewind(self) -> None:
        self.cursor = Cursor()
        self.match = None

    def _scene_blocks(
        self, index: int, warnings: list[RecoverableParseError]
    ) -> list[Block]:
        scene = self.scenes[index]
        blocks, problem = get_blocks(scene)
        if problem is not None:
            debug_log(f"skipping scene {index} ({scene.title or 'Untitled'}): {problem.message}")
            warnings.append(problem.with_scene(index, scene.title))
        return blocks

    def _record(self, scene_index: int, block_index: int, text: str, span: MatchSpan) -> Match:
        match = Match(
            scene_index=scene_index,
            block_index=block_index,
            match_start=span.start,
            match_length=span.length,
            chapter_title=self.scenes[scene_index].title,
            match_line_text=line_containing(text, span.start),
            matched_text=text[span.start : span.end],
        )
        self.match = match
        return match

    def find_next(self, pattern: str, is_regex: bool = False) -> SearchResult:
        result = SearchResult()
        if not is_regex and not pattern:
            return result
        try:
            matcher = make_matcher(pattern, is_regex)
        except InvalidPatternError as exc:
            result.error = exc
            return result

        scenes = self.scenes
        if self.cursor.scene_index < 0:
            self.cursor = Cursor()
        start = self.cursor
        debug_log(f"find_next {pattern!r} regex={is_regex} from {start.as_payload()}")

        for scene_index in range(start.scene_index, len(scenes)):
            blocks = self._scene_blocks(scene_index, result.warnings)
            first_block = start.block_index if scene_index == start.scene_index else 0
            for block_index in range(max(first_block, 0), len(blocks)):
                text = blocks[block_index].content
                offset = 0
                if scene_index == start.scene_index and block_index == start.block_index:
                    offset = start.char_offset
                if text and offset >= len(text):
                    continue
                if not text and not matcher.is_empty:
                    continue
                span = matcher.find_from(text, offset)
                if span is None:
                    continue
                match = self._record(scene_index, block_index, text, span)
                # A zero-length match must still move the cursor forward.
                self.cursor = Cursor(scene_index, block_index, span.end + (0 if span.length else 1))
                result.match = match
                return result

        self.cursor = Cursor(len(scenes), 0, 0)
        self.match = None
        return result

    def _end_cursor(self) -> Cursor:
        last_scene = len(self.scenes) - 1
        blocks, _ = get_blocks(self.scenes[last_scene])
        if not blocks:
            return Cursor(last_scene, 0, 0)
        return Cursor(last_scene, len(blocks) - 1, len(blocks[-1].content))

    def find_previous(self, pattern: str, is_regex: bool = False) -> SearchResult:
        result = SearchResult()
        if not is_regex and not pattern:
            return result
        try:
            matcher = make_matcher(pattern, is_regex)
        except InvalidPatternError as exc:
            result.error = exc
            return result

        scenes = self.scenes
        if not scenes:
            self.cursor = Cursor(-1, 0, 0)
            self.match = None
            return result
        if self.cursor.scene_index >= len(scenes) or (self.match is None and self.cursor.is_origin()):
            self.cursor = self._end_cursor()
        start = self.cursor
        debug_log(f"find_previous {pattern!r} regex={is_regex} from {start.as_payload()}")

        for scene_index in range(start.scene_index, -1, -1):
            blocks = self._scene_blocks(scene_index, result.warnings)
            if not blocks:
                continue
            if scene_index == start.scene_index:
                first_block = min(start.block_index, len(blocks) - 1)
            else:
                first_block = len(blocks) - 1
            for block_index in range(first_block, -1, -1):
                text = blocks[block_index].content
                if scene_index == start.scene_index and block_index == start.block_index:
                    ceiling = start.char_offset
                else:
                    ceiling = len(text)
                if text and ceiling <= 0:
                    continue
                if not text and not matcher.is_empty:
                    continue
                spans = matcher.find_all_before(text, ceiling)
                if not spans:
                    continue
                span = spans[-1]
                result.match = self._record(scene_index, block_index, text, span)
                self.cursor = Cursor(scene_index, block_index, span.start)
                return result

        self.cursor = Cursor(-1, 0, 0)
        self.match = None
        return result

    def replace_current(self, replacement: str) -> Match:
        match = self.match
        if match is None:
            raise NoActiveMatchError('No current match to replace. Use "find next" first.')
        scenes = self.scenes
        if not 0 <= match.scene_index < len(scenes):
            self.match = None
            raise NoActiveMatchError("Current match points outside the document.")
        scene = scenes[match.scene_index]
        blocks, problem = get_blocks(scene)
        if problem is not None or not 0 <= match.block_index < len(blocks):
            self.match = None
            raise NoActiveMatchError("Current match points outside the document.")
        block = blocks[match.block_index]
        original = block.content
        if original[match.match_start : match.match_end] != match.matched_text:
            self.match = None
            raise NoActiveMatchError("Current match is no longer present in the document.")
        block.text = original[: match.match_start] + replacement + original[match.match_end :]
        set_blocks(scene, blocks)
        self.document.touch()
        self.cursor = Cursor(match.scene_index, match.block_index, match.match_start + len(replacement))
        self.match = None
        return match

    def replace_all(self, pattern: str, replacement: str, is_regex: bool = False) -> ReplaceAllResult:
        result = ReplaceAllResult()
        if not is_regex and not pattern:
            return result
        matcher = make_matcher(pattern, is_regex)
        if isinstance(matcher, PatternMatcher):
            matcher.check_replacement(replacement)

        for scene_index, scene in enumerate(self.scenes):
            blocks = self._scene_blocks(scene_index, result.warnings)
            changed = 0
            for block in blocks:
                if not block.is_text() or block.text is None:
                    continue
                new_text, count = matcher.replace_all(block.text, replacement)
                if count:
                    block.text = new_text
                    changed += count
            if changed:
                set_blocks(scene, blocks)
                result.count += changed

        debug_log(f"replace_all {pattern!r} regex={is_regex}: {result.count} replacement(s)")
        self.document.touch()
        self.rewind()
        return result
