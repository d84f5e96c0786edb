from __future__ import annotations

import json
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Mapping

from .errors import RecoverableParseError, ValidationError

BACKUP_VERSION = 4
DEFAULT_STATUS_CODE = "1"
DEFAULT_STATUS_COLOR = -2697255
BLOCK_TYPE_TEXT = "text"
BLOCK_ALIGN_LEFT = "left"

_UNSAFE_FILENAME_RE = re.compile(r"[^a-z0-9_\-\s]", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_code() -> str:
    return uuid.uuid4().hex[:8]


def _extra_fields(payload: Mapping[str, object], known: Iterable[str]) -> dict[str, object]:
    known_keys = set(known)
    return {key: value for key, value in payload.items() if key not in known_keys}


def _int_or(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _str_or(value: object, default: str = "") -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return default
    return str(value)


@dataclass
class Block:
    type: str = BLOCK_TYPE_TEXT
    align: str = BLOCK_ALIGN_LEFT
    text: str | None = None
    extra: dict[str, object] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return self.text or ""

    def is_text(self) -> bool:
        return self.type == BLOCK_TYPE_TEXT

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "Block":
        text = payload.get("text")
        return cls(
            type=_str_or(payload.get("type"), BLOCK_TYPE_TEXT),
            align=_str_or(payload.get("align"), BLOCK_ALIGN_LEFT),
            text=text if isinstance(text, str) else None,
            extra=_extra_fields(payload, ("type", "align", "text")),
        )

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"type": self.type, "align": self.align}
        if self.text is not None:
            payload["text"] = self.text
        payload.update(self.extra)
        return payload


def text_block(text: str | None = "") -> Block:
    return Block(text=text)


def spacer_block() -> Block:
    return Block(text=None)


@dataclass
class SceneBody:
    blocks: list[Block] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(
            {"blocks": [block.as_payload() for block in self.blocks]},
            ensure_ascii=False,
            separators=(",", ":"),
        )


def parse_scene_body(text: object) -> SceneBody | RecoverableParseError:
    """
    Parse a scene's serialized ``{"blocks": [...]}`` payload.

    Blank or non-string text is an empty body. Malformed JSON or a payload
    without a ``blocks`` list comes back as a ``RecoverableParseError`` instead
    of raising, so every caller handles broken scenes the same way.
    """
    if not isinstance(text, str) or not text.strip():
        return SceneBody()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        return RecoverableParseError(f"Invalid scene JSON: {exc.msg} (position {exc.pos})")
    if not isinstance(payload, Mapping):
        return RecoverableParseError("Scene text is not a JSON object.")
    raw_blocks = payload.get("blocks")
    if not isinstance(raw_blocks, list):
        return RecoverableParseError("Scene text has no 'blocks' list.")
    blocks = [Block.from_payload(item) for item in raw_blocks if isinstance(item, Mapping)]
    return SceneBody(blocks=blocks)


@dataclass
class Scene:
    code: str
    title: str
    text: str | None = None
    ranking: int = 0
    status: str = DEFAULT_STATUS_CODE
    extra: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "Scene":
        text = payload.get("text")
        return cls(
            code=_str_or(payload.get("code")),
            title=_str_or(payload.get("title")),
            text=text if isinstance(text, str) else None,
            ranking=_int_or(payload.get("ranking"), 0),
            status=_str_or(payload.get("status"), DEFAULT_STATUS_CODE),
            extra=_extra_fields(payload, ("code", "title", "text", "ranking", "status")),
        )

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"code": self.code, "title": self.title}
        if self.text is not None:
            payload["text"] = self.text
        payload["ranking"] = self.ranking
        payload["status"] = self.status
        payload.update(self.extra)
        return payload


def get_blocks(scene: Scene) -> tuple[list[Block], RecoverableParseError | None]:
    parsed = parse_scene_body(scene.text)
    if isinstance(parsed, RecoverableParseError):
        return [], parsed
    return parsed.blocks, None


def set_blocks(scene: Scene, blocks: Iterable[Block]) -> None:
    scene.text = SceneBody(blocks=list(blocks)).to_json()


@dataclass
class SectionScene:
    code: str
    ranking: int = 1

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "SectionScene":
        return cls(code=_str_or(payload.get("code")), ranking=_int_or(payload.get("ranking"), 1))

    def as_payload(self) -> dict[str, object]:
        return {"code": self.code, "ranking": self.ranking}


@dataclass
class Section:
    code: str
    title: str
    synopsis: str = ""
    ranking: int = 0
    section_scenes: list[SectionScene] = field(default_factory=list)
    extra: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "Section":
        raw_links = payload.get("section_scenes")
        links: list[SectionScene] = []
        if isinstance(raw_links, list):
            links = [SectionScene.from_payload(item) for item in raw_links if isinstance(item, Mapping)]
        return cls(
            code=_str_or(payload.get("code")),
            title=_str_or(payload.get("title")),
            synopsis=_str_or(payload.get("synopsis")),
            ranking=_int_or(payload.get("ranking"), 0),
            section_scenes=links,
            extra=_extra_fields(payload, ("code", "title", "synopsis", "ranking", "section_scenes")),
        )

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "title": self.title,
            "synopsis": self.synopsis,
            "ranking": self.ranking,
            "section_scenes": [link.as_payload() for link in self.section_scenes],
        }
        payload.update(self.extra)
        return payload


@dataclass
class Status:
    code: str
    title: str
    color: int = DEFAULT_STATUS_COLOR
    ranking: int = 1

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "Status":
        return cls(
            code=_str_or(payload.get("code")),
            title=_str_or(payload.get("title")),
            color=_int_or(payload.get("color"), DEFAULT_STATUS_COLOR),
            ranking=_int_or(payload.get("ranking"), 1),
        )

    def as_payload(self) -> dict[str, object]:
        return {"code": self.code, "title": self.title, "color": self.color, "ranking": self.ranking}


def default_statuses() -> list[Status]:
    return [Status(code=DEFAULT_STATUS_CODE, title="Todo", color=DEFAULT_STATUS_COLOR, ranking=1)]


@dataclass
class BookProgress:
    year: int
    month: int
    day: int
    word_count: int = 0

    @classmethod
    def for_day(cls, word_count: int = 0, day: date | None = None) -> "BookProgress":
        day = day or date.today()
        return cls(year=day.year, month=day.month, day=day.day, word_count=word_count)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "BookProgress":
        return cls(
            year=_int_or(payload.get("year"), 0),
            month=_int_or(payload.get("month"), 0),
            day=_int_or(payload.get("day"), 0),
            word_count=_int_or(payload.get("word_count"), 0),
        )

    def as_payload(self) -> dict[str, int]:
        return {"year": self.year, "month": self.month, "day": self.day, "word_count": self.word_count}


def _payload_list(payload: Mapping[str, object], key: str) -> list[Mapping[str, object]]:
    raw = payload.get(key)
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, Mapping)]


@dataclass
class Revision:
    number: int = 1
    date: int = 0
    book_progresses: list[BookProgress] = field(default_factory=list)
    statuses: list[Status] = field(default_factory=default_statuses)
    scenes: list[Scene] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)
    extra: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "Revision":
        return cls(
            number=_int_or(payload.get("number"), 1),
            date=_int_or(payload.get("date"), 0),
            book_progresses=[BookProgress.from_payload(p) for p in _payload_list(payload, "book_progresses")],
            statuses=[Status.from_payload(s) for s in _payload_list(payload, "statuses")],
            scenes=[Scene.from_payload(s) for s in _payload_list(payload, "scenes")],
            sections=[Section.from_payload(s) for s in _payload_list(payload, "sections")],
            extra=_extra_fields(
                payload,
                ("number", "date", "book_progresses", "statuses", "scenes", "sections"),
            ),
        )

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "number": self.number,
            "date": self.date,
            "book_progresses": [p.as_payload() for p in self.book_progresses],
            "statuses": [s.as_payload() for s in self.statuses],
            "scenes": [s.as_payload() for s in self.scenes],
            "sections": [s.as_payload() for s in self.sections],
        }
        payload.update(self.extra)
        return payload


@dataclass
class BackupDocument:
    title: str
    code: str = field(default_factory=generate_code)
    description: str = ""
    version: int = BACKUP_VERSION
    show_table_of_contents: bool = True
    apply_automatic_indentation: bool = True
    last_update_date: int = 0
    last_backup_date: int = 0
    revisions: list[Revision] = field(default_factory=lambda: [Revision()])
    extra: dict[str, object] = field(default_factory=dict)

    @property
    def active_revision(self) -> Revision:
        if not self.revisions:
            raise ValidationError("Backup document has no revisions.")
        return self.revisions[0]

    @property
    def scenes(self) -> list[Scene]:
        return self.active_revision.scenes

    @property
    def sections(self) -> list[Section]:
        return self.active_revision.sections

    def touch(self, now: int | None = None) -> None:
        stamp = now_ms() if now is None else now
        self.last_update_date = stamp
        self.last_backup_date = stamp
        if self.revisions:
            self.revisions[0].date = stamp

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "BackupDocument":
        revisions = [Revision.from_payload(r) for r in _payload_list(payload, "revisions")]
        return cls(
            version=_int_or(payload.get("version"), BACKUP_VERSION),
            code=_str_or(payload.get("code")),
            title=_str_or(payload.get("title")),
            description=_str_or(payload.get("description")),
            show_table_of_contents=bool(payload.get("show_table_of_contents", True)),
            apply_automatic_indentation=bool(payload.get("apply_automatic_indentation", True)),
            last_update_date=_int_or(payload.get("last_update_date"), 0),
            last_backup_date=_int_or(payload.get("last_backup_date"), 0),
            revisions=revisions,
            extra=_extra_fields(
                payload,
                (
                    "version",
                    "code",
                    "title",
                    "description",
                    "show_table_of_contents",
                    "apply_automatic_indentation",
                    "last_update_date",
                    "last_backup_date",
                    "revisions",
                ),
            ),
        )

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "version": self.version,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "show_table_of_contents": self.show_table_of_contents,
            "apply_automatic_indentation": self.apply_automatic_indentation,
            "last_update_date": self.last_update_date,
            "last_backup_date": self.last_backup_date,
            "revisions": [r.as_payload() for r in self.revisions],
        }
        payload.update(self.extra)
        return payload


def load_backup(data: bytes | str) -> BackupDocument:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ValidationError(f"Backup file is not valid UTF-8: {exc}") from exc
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Backup file is not valid JSON: {exc.msg}") from exc
    return backup_from_payload(payload)


def backup_from_payload(payload: object) -> BackupDocument:
    if not isinstance(payload, Mapping):
        raise ValidationError("Backup file must contain a JSON object.")
    revisions = payload.get("revisions")
    if (
        not isinstance(revisions, list)
        or not revisions
        or not isinstance(revisions[0], Mapping)
        or not isinstance(revisions[0].get("scenes"), list)
    ):
        raise ValidationError("Invalid backup structure: expected revisions[0].scenes.")
    return BackupDocument.from_payload(payload)


def dump_backup(document: BackupDocument) -> bytes:
    return json.dumps(document.as_payload(), ensure_ascii=False, indent=2).encode("utf-8")


def count_words(scenes: Iterable[Scene]) -> int:
    total = 0
    for scene in scenes:
        blocks, _ = get_blocks(scene)
        for block in blocks:
            if block.is_text() and block.text and block.text.strip():
                total += len(block.text.split())
    return total


def safe_filename(title: str | None, fallback: str) -> str:
    cleaned = _UNSAFE_FILENAME_RE.sub("_", title or "")
    cleaned = _WHITESPACE_RE.sub("_", cleaned)
    return cleaned or fallback
