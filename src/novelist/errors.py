from __future__ import annotations

from dataclasses import dataclass


class NovelistError(Exception):
    """Base class for errors reported to the caller as ``kind`` + ``message``."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_payload(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(NovelistError, ValueError):
    """Raised when user input (title, chapter count, document shape) is invalid."""

    kind = "validation"


class InvalidPatternError(NovelistError, ValueError):
    """Raised when a regular expression search pattern does not compile."""

    kind = "invalid_pattern"


class NoActiveMatchError(NovelistError, RuntimeError):
    """Raised when a replacement is requested without a live match."""

    kind = "no_active_match"


class EmptySelectionError(NovelistError, ValueError):
    """Raised when an export or merge would produce nothing."""

    kind = "empty_selection"


class ArchiveError(NovelistError, RuntimeError):
    """Raised when a ZIP or EPUB container cannot be read."""

    kind = "archive"


@dataclass(frozen=True)
class RecoverableParseError:
    """A scene whose stored text could not be parsed; the scene is treated as empty."""

    message: str
    scene_index: int | None = None
    scene_title: str | None = None
    kind: str = "recoverable_parse"

    def with_scene(self, index: int, title: str | None) -> "RecoverableParseError":
        return RecoverableParseError(
            message=self.message,
            scene_index=index,
            scene_title=title,
        )

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"kind": self.kind, "message": self.message}
        if self.scene_index is not None:
            payload["scene_index"] = self.scene_index
        if self.scene_title is not None:
            payload["scene_title"] = self.scene_title
        return payload
