from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from typing import Iterable, Sequence

from .backup import (
    BackupDocument,
    Block,
    BookProgress,
    Revision,
    Scene,
    Section,
    SectionScene,
    Status,
    count_words,
    default_statuses,
    generate_code,
    now_ms,
    set_blocks,
    text_block,
)
from .chapters import ChapterText, segment_imported_text
from .errors import EmptySelectionError, ValidationError


@dataclass
class BuildOptions:
    code: str | None = None
    show_table_of_contents: bool = True
    apply_automatic_indentation: bool = True
    now: int | None = None


def chapter_title(prefix: str | None, number: int) -> str:
    return f"{prefix}{number}" if prefix else str(number)


def _scene_pair(
    number: int, title: str, blocks: Iterable[Block] | None = None
) -> tuple[Scene, Section]:
    scene_code = f"scene{number}"
    scene = Scene(code=scene_code, title=title, ranking=number)
    set_blocks(scene, blocks if blocks is not None else [text_block("")])
    section = Section(
        code=f"section{number}",
        title=title,
        ranking=number,
        section_scenes=[SectionScene(code=scene_code, ranking=1)],
    )
    return scene, section


def _new_document(
    title: str,
    description: str,
    scenes: list[Scene],
    sections: list[Section],
    options: BuildOptions,
    *,
    statuses: list[Status] | None = None,
) -> BackupDocument:
    stamp = now_ms() if options.now is None else options.now
    revision = Revision(
        number=1,
        date=stamp,
        book_progresses=[BookProgress.for_day(count_words(scenes))],
        statuses=statuses if statuses else default_statuses(),
        scenes=scenes,
        sections=sections,
    )
    document = BackupDocument(
        title=title,
        code=options.code or generate_code(),
        description=description,
        show_table_of_contents=options.show_table_of_contents,
        apply_automatic_indentation=options.apply_automatic_indentation,
        revisions=[revision],
    )
    document.touch(stamp)
    return document


def build(
    title: str,
    description: str = "",
    chapter_count: int = 1,
    prefix: str = "",
    options: BuildOptions | None = None,
) -> BackupDocument:
    """Create a fresh backup with ``chapter_count`` empty chapters."""
    if not title or not title.strip():
        raise ValidationError("Project title is required.")
    if chapter_count < 1:
        raise ValidationError("At least 1 chapter is required.")
    scenes: list[Scene] = []
    sections: list[Section] = []
    for number in range(1, chapter_count + 1):
        scene, section = _scene_pair(number, chapter_title(prefix, number))
        scenes.append(scene)
        sections.append(section)
    return _new_document(title, description, scenes, sections, options or BuildOptions())


def build_from_chapters(
    title: str,
    description: str,
    chapters: Sequence[ChapterText],
    options: BuildOptions | None = None,
) -> BackupDocument:
    """Create a backup whose scenes hold the segmented text of ``chapters``."""
    if not title or not title.strip():
        raise ValidationError("Project title is required.")
    if not chapters:
        raise EmptySelectionError("No .txt chapters found to import.")
    scenes: list[Scene] = []
    sections: list[Section] = []
    for number, chapter in enumerate(chapters, start=1):
        scene, section = _scene_pair(number, chapter.title, segment_imported_text(chapter.text))
        scenes.append(scene)
        sections.append(section)
    return _new_document(title, description, scenes, sections, options or BuildOptions())


def extend(
    document: BackupDocument, extra_count: int, prefix: str = "", *, now: int | None = None
) -> BackupDocument:
    """Append ``extra_count`` empty chapters, numbering on from the existing scenes."""
    if extra_count < 0:
        raise ValidationError("Number of extra chapters cannot be negative.")
    revision = document.active_revision
    scenes = revision.scenes
    sections = revision.sections
    # Scenes that never had a table-of-contents entry get one first.
    for index in range(len(sections), len(scenes)):
        scene = scenes[index]
        sections.append(
            Section(
                code=f"section{index + 1}",
                title=scene.title,
                ranking=index + 1,
                section_scenes=[SectionScene(code=scene.code, ranking=1)],
            )
        )
    existing = len(scenes)
    for offset in range(1, extra_count + 1):
        number = existing + offset
        scene, section = _scene_pair(number, chapter_title(prefix, number))
        scenes.append(scene)
        sections.append(section)
    document.touch(now)
    return document


def _paired_sections(scenes: list[Scene], sections: list[Section]) -> list[Section]:
    paired = list(sections[: len(scenes)])
    for index in range(len(paired), len(scenes)):
        scene = scenes[index]
        paired.append(Section(code="", title=scene.title, section_scenes=[SectionScene(code=scene.code)]))
    return paired


def merge(
    documents: Sequence[BackupDocument],
    prefix: str = "",
    *,
    title: str | None = None,
    description: str = "",
    options: BuildOptions | None = None,
) -> BackupDocument:
    """
    Concatenate the chapters of several backups and renumber them from 1.

    Scenes keep their text; codes, titles and rankings are reassigned and
    every section is re-linked to the renumbered scene it sits beside.
    Statuses come from the first document that defines any.
    """
    combined_scenes: list[Scene] = []
    combined_sections: list[Section] = []
    statuses: list[Status] | None = None
    for document in documents:
        if not document.revisions:
            continue
        revision = document.revisions[0]
        scenes = deepcopy(revision.scenes)
        combined_scenes.extend(scenes)
        combined_sections.extend(_paired_sections(scenes, deepcopy(revision.sections)))
        if statuses is None and revision.statuses:
            statuses = deepcopy(revision.statuses)
    if not combined_scenes:
        raise EmptySelectionError("No valid chapters found in the selected files to merge.")

    for number, (scene, section) in enumerate(zip(combined_scenes, combined_sections), start=1):
        name = chapter_title(prefix, number)
        scene.code = f"scene{number}"
        scene.title = name
        scene.ranking = number
        section.code = f"section{number}"
        section.title = name
        section.ranking = number
        if section.section_scenes:
            section.section_scenes[0].code = scene.code
            section.section_scenes[0].ranking = 1
        else:
            section.section_scenes.append(SectionScene(code=scene.code, ranking=1))

    if title is None:
        title = documents[0].title if documents else ""
    return _new_document(
        title,
        description,
        combined_scenes,
        combined_sections,
        options or BuildOptions(),
        statuses=statuses,
    )
