from __future__ import annotations

from dataclasses import dataclass

from .archive import read_text_chapters, write_chapter_units, write_text_files
from .backup import BackupDocument
from .builder import BuildOptions, build_from_chapters
from .chapters import (
    DEFAULT_CHAPTER_PREFIX,
    ChapterText,
    ChapterUnit,
    document_chapter_texts,
    extract_chapter_units,
)
from .epub import CoverImage, EpubMetadata, build_epub, epub_section_chapters, epub_toc_chapters
from .errors import EmptySelectionError, RecoverableParseError
from .logging_utils import debug_log


@dataclass
class SplitSettings:
    prefix: str = DEFAULT_CHAPTER_PREFIX
    start_number: int = 1
    offset: int = 0
    mode: str = "single"
    group_size: int = 1


@dataclass
class ConversionResult:
    data: bytes
    chapter_count: int
    skipped: int = 0
    units: list[ChapterUnit] | None = None
    warnings: list[RecoverableParseError] | None = None


def _units(texts: list[str], settings: SplitSettings) -> list[ChapterUnit]:
    return extract_chapter_units(
        texts,
        prefix=settings.prefix or DEFAULT_CHAPTER_PREFIX,
        start_number=settings.start_number,
        offset=settings.offset,
        mode=settings.mode,
        group_size=settings.group_size,
    )


def split_epub(data: bytes, settings: SplitSettings | None = None) -> ConversionResult:
    """EPUB -> ZIP of chapter text files, chapters found by markup."""
    settings = settings or SplitSettings()
    chapters = epub_section_chapters(data)
    if not chapters:
        raise EmptySelectionError("No chapters found. Check EPUB structure.")
    units = _units(chapters, settings)
    skipped = min(max(0, settings.offset), len(chapters))
    debug_log(f"split EPUB into {len(units)} file(s), skipped {skipped} chapter(s)")
    return ConversionResult(
        data=write_chapter_units(units),
        chapter_count=len(chapters) - skipped,
        skipped=skipped,
        units=units,
    )


def epub_to_text_zip(data: bytes) -> ConversionResult:
    """EPUB -> ZIP with one ``C{NN}.txt`` per table-of-contents entry."""
    chapters = epub_toc_chapters(data)
    if not chapters:
        raise EmptySelectionError("Extraction complete, but no chapter content was retrieved.")
    files = [(f"C{index:02d}.txt", chapter.text) for index, chapter in enumerate(chapters, start=1)]
    return ConversionResult(data=write_text_files(files), chapter_count=len(files))


def zip_to_epub(
    data: bytes,
    metadata: EpubMetadata | None = None,
    cover: CoverImage | None = None,
) -> ConversionResult:
    """ZIP of ``.txt`` chapters -> EPUB, chapter titles taken from file names."""
    chapters = read_text_chapters(data)
    if not chapters:
        raise EmptySelectionError("No .txt files found in the uploaded ZIP.")
    book_chapters = [
        ChapterText(title=chapter.title.replace("_", " "), text=chapter.text, source=chapter.title)
        for chapter in chapters
    ]
    return ConversionResult(data=build_epub(book_chapters, metadata, cover), chapter_count=len(chapters))


def zip_to_backup(
    data: bytes,
    title: str,
    description: str = "",
    options: BuildOptions | None = None,
) -> BackupDocument:
    """ZIP of ``.txt`` chapters -> new backup document."""
    return build_from_chapters(title, description, read_text_chapters(data), options)


def backup_to_text_zip(
    document: BackupDocument, settings: SplitSettings | None = None
) -> ConversionResult:
    """Backup document -> ZIP of chapter text files, chapters in ranking order."""
    settings = settings or SplitSettings()
    chapters, warnings = document_chapter_texts(document)
    units = _units([chapter.text for chapter in chapters], settings)
    skipped = min(max(0, settings.offset), len(chapters))
    return ConversionResult(
        data=write_chapter_units(units),
        chapter_count=len(chapters) - skipped,
        skipped=skipped,
        units=units,
        warnings=warnings,
    )
