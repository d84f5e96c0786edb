from __future__ import annotations

import io
import zipfile
from pathlib import PurePosixPath
from typing import Iterable

from .chapters import ChapterText, ChapterUnit, natural_sort_key
from .errors import ArchiveError


def _decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("utf-8", errors="replace")


def read_text_chapters(data: bytes) -> list[ChapterText]:
    """
    Read every ``.txt`` entry of a ZIP archive as a chapter.

    Entries are ordered by a numeric-aware sort of their names, so
    ``chapter2.txt`` comes before ``chapter10.txt``. Titles are the file names
    without the ``.txt`` suffix.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"Not a valid ZIP archive: {exc}") from exc
    with zf:
        names = [
            info.filename
            for info in zf.infolist()
            if not info.is_dir() and info.filename.lower().endswith(".txt")
        ]
        names.sort(key=natural_sort_key)
        chapters: list[ChapterText] = []
        for name in names:
            title = PurePosixPath(name).name[: -len(".txt")]
            chapters.append(ChapterText(title=title, text=_decode_text(zf.read(name)), source=name))
        return chapters


def write_text_files(files: Iterable[tuple[str, str]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in files:
            zf.writestr(name, content.encode("utf-8"))
    return buffer.getvalue()


def write_chapter_units(units: Iterable[ChapterUnit]) -> bytes:
    return write_text_files((unit.name, unit.content) for unit in units)
