from __future__ import annotations

import asyncio
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from functools import partial
from typing import Callable, Mapping, TypeVar

from fastapi import Body, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response

from .backup import BackupDocument, backup_from_payload, dump_backup, safe_filename
from .builder import BuildOptions, build, extend, merge
from .convert import (
    SplitSettings,
    backup_to_text_zip,
    epub_to_text_zip,
    split_epub,
    zip_to_backup,
    zip_to_epub,
)
from .epub import CoverImage, EpubMetadata
from .errors import NoActiveMatchError, NovelistError, ValidationError
from .search import FindReplaceSession, SearchResult

JSON_MEDIA_TYPE = "application/json"
ZIP_MEDIA_TYPE = "application/zip"
EPUB_MEDIA_TYPE = "application/epub+zip"


@dataclass(slots=True)
class WebConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    max_sessions: int = 32


class EditSession:
    """A loaded document plus its find & replace state, guarded by one lock."""

    def __init__(self, document: BackupDocument) -> None:
        self.id = uuid.uuid4().hex
        self.finder = FindReplaceSession(document)
        self.lock = threading.Lock()
        self.created_at = time.time()
        self.updated_at = self.created_at

    def touch(self) -> None:
        self.updated_at = time.time()

    def to_payload(self) -> dict[str, object]:
        document = self.finder.document
        match = self.finder.match
        return {
            "session_id": self.id,
            "title": document.title,
            "scenes": len(document.scenes),
            "cursor": self.finder.cursor.as_payload(),
            "state": self.finder.state.value,
            "match": match.as_payload() if match else None,
        }


class SessionStore:
    def __init__(self, max_sessions: int = 32) -> None:
        self.max_sessions = max(1, max_sessions)
        self._sessions: OrderedDict[str, EditSession] = OrderedDict()
        self._lock = threading.Lock()

    def create(self, document: BackupDocument) -> EditSession:
        session = EditSession(document)
        with self._lock:
            self._sessions[session.id] = session
            while len(self._sessions) > self.max_sessions:
                self._sessions.popitem(last=False)
        return session

    def get(self, session_id: str) -> EditSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(session_id)
            self._sessions.move_to_end(session_id)
            return session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


def _http_error(exc: NovelistError) -> HTTPException:
    if isinstance(exc, ValidationError):
        status = 422
    elif isinstance(exc, NoActiveMatchError):
        status = 409
    else:
        status = 400
    return HTTPException(status_code=status, detail=exc.as_payload())


T = TypeVar("T")


async def _run_blocking(func: Callable[..., T], *args: object) -> T:
    # Archive and markup parsing stay off the event loop thread.
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, partial(func, *args))
    except NovelistError as exc:
        raise _http_error(exc) from exc


def _require_mapping(payload: object) -> Mapping[str, object]:
    if not isinstance(payload, Mapping):
        raise HTTPException(status_code=400, detail="Invalid payload.")
    return payload


def _payload_str(payload: Mapping[str, object], key: str, default: str = "") -> str:
    value = payload.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{key} must be a string.")
    return value


def _payload_int(payload: Mapping[str, object], key: str, default: int) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer.")
    return value


def _payload_bool(payload: Mapping[str, object], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{key} must be a boolean.")
    return value


def _document_from(payload: object) -> BackupDocument:
    try:
        return backup_from_payload(payload)
    except NovelistError as exc:
        raise _http_error(exc) from exc


def _build_options(payload: Mapping[str, object]) -> BuildOptions:
    return BuildOptions(
        code=_payload_str(payload, "code").strip() or None,
        show_table_of_contents=_payload_bool(payload, "show_table_of_contents", True),
        apply_automatic_indentation=_payload_bool(payload, "apply_automatic_indentation", True),
    )


def _split_settings(payload: Mapping[str, object]) -> SplitSettings:
    return SplitSettings(
        prefix=_payload_str(payload, "prefix"),
        start_number=_payload_int(payload, "start_number", 1),
        offset=_payload_int(payload, "offset", 0),
        mode=_payload_str(payload, "mode", "single"),
        group_size=_payload_int(payload, "group_size", 1),
    )


def _attachment(data: bytes, filename: str, media_type: str) -> Response:
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _backup_response(document: BackupDocument, fallback: str) -> Response:
    filename = f"{safe_filename(document.title, fallback)}.json"
    return _attachment(dump_backup(document), filename, JSON_MEDIA_TYPE)


def _search_payload(session: EditSession, result: SearchResult) -> dict[str, object]:
    payload = session.to_payload()
    payload["found"] = result.found
    payload["warnings"] = [warning.as_payload() for warning in result.warnings]
    payload["error"] = result.error.as_payload() if result.error else None
    return payload


def create_app(config: WebConfig | None = None) -> FastAPI:
    config = config or WebConfig()
    app = FastAPI(title="novelist")
    app.state.config = config
    sessions = SessionStore(config.max_sessions)
    app.state.sessions = sessions

    def _session(session_id: str) -> EditSession:
        try:
            return sessions.get(session_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Session not found") from None

    @app.post("/api/sessions")
    def api_open_session(payload: dict[str, object] = Body(...)) -> JSONResponse:
        session = sessions.create(_document_from(payload))
        return JSONResponse(session.to_payload())

    @app.get("/api/sessions/{session_id}")
    def api_session(session_id: str) -> JSONResponse:
        session = _session(session_id)
        with session.lock:
            return JSONResponse(session.to_payload())

    @app.delete("/api/sessions/{session_id}")
    def api_close_session(session_id: str) -> JSONResponse:
        if not sessions.delete(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return JSONResponse({"deleted": True, "session_id": session_id})

    @app.get("/api/sessions/{session_id}/document")
    def api_session_document(session_id: str) -> Response:
        session = _session(session_id)
        with session.lock:
            return _backup_response(session.finder.document, "replaced_backup")

    @app.post("/api/sessions/{session_id}/find")
    def api_find(session_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        session = _session(session_id)
        payload = _require_mapping(payload)
        pattern = _payload_str(payload, "pattern")
        regex = _payload_bool(payload, "regex", False)
        direction = _payload_str(payload, "direction", "next")
        if direction not in ("next", "previous"):
            raise HTTPException(status_code=400, detail="direction must be 'next' or 'previous'.")
        with session.lock:
            if direction == "next":
                result = session.finder.find_next(pattern, regex)
            else:
                result = session.finder.find_previous(pattern, regex)
            session.touch()
            return JSONResponse(_search_payload(session, result))

    @app.post("/api/sessions/{session_id}/replace")
    def api_replace(session_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        session = _session(session_id)
        payload = _require_mapping(payload)
        replacement = _payload_str(payload, "replacement")
        pattern = _payload_str(payload, "pattern")
        regex = _payload_bool(payload, "regex", False)
        with session.lock:
            try:
                replaced = session.finder.replace_current(replacement)
            except NovelistError as exc:
                raise _http_error(exc) from exc
            # Move on to the next occurrence, as the find & replace panel does.
            result = session.finder.find_next(pattern, regex) if pattern or regex else SearchResult()
            session.touch()
            body = _search_payload(session, result)
            body["replaced"] = replaced.as_payload()
            return JSONResponse(body)

    @app.post("/api/sessions/{session_id}/replace-all")
    def api_replace_all(session_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        session = _session(session_id)
        payload = _require_mapping(payload)
        pattern = _payload_str(payload, "pattern")
        replacement = _payload_str(payload, "replacement")
        regex = _payload_bool(payload, "regex", False)
        with session.lock:
            try:
                result = session.finder.replace_all(pattern, replacement, regex)
            except NovelistError as exc:
                raise _http_error(exc) from exc
            session.touch()
            body = session.to_payload()
            body["count"] = result.count
            body["warnings"] = [warning.as_payload() for warning in result.warnings]
            return JSONResponse(body)

    @app.post("/api/sessions/{session_id}/rewind")
    def api_rewind(session_id: str) -> JSONResponse:
        session = _session(session_id)
        with session.lock:
            session.finder.rewind()
            session.touch()
            return JSONResponse(session.to_payload())

    @app.post("/api/backups/create")
    def api_create_backup(payload: dict[str, object] = Body(...)) -> Response:
        payload = _require_mapping(payload)
        try:
            document = build(
                _payload_str(payload, "title"),
                _payload_str(payload, "description"),
                _payload_int(payload, "chapters", 1),
                _payload_str(payload, "prefix"),
                _build_options(payload),
            )
        except NovelistError as exc:
            raise _http_error(exc) from exc
        return _backup_response(document, "new_backup")

    @app.post("/api/backups/extend")
    def api_extend_backup(payload: dict[str, object] = Body(...)) -> Response:
        payload = _require_mapping(payload)
        document = _document_from(payload.get("document"))
        try:
            extend(document, _payload_int(payload, "extra_chapters", 0), _payload_str(payload, "prefix"))
        except NovelistError as exc:
            raise _http_error(exc) from exc
        return _backup_response(document, "extended_backup")

    @app.post("/api/backups/merge")
    def api_merge_backups(payload: dict[str, object] = Body(...)) -> Response:
        payload = _require_mapping(payload)
        raw_documents = payload.get("documents")
        if not isinstance(raw_documents, list) or not raw_documents:
            raise HTTPException(status_code=400, detail="Select at least one backup file to merge.")
        title = _payload_str(payload, "title")
        if not title:
            raise HTTPException(status_code=422, detail="Merged project title is required.")
        documents = [_document_from(item) for item in raw_documents]
        try:
            merged = merge(
                documents,
                _payload_str(payload, "prefix"),
                title=title,
                description=_payload_str(payload, "description"),
            )
        except NovelistError as exc:
            raise _http_error(exc) from exc
        return _backup_response(merged, "merged_backup")

    @app.post("/api/backups/export")
    def api_export_backup(payload: dict[str, object] = Body(...)) -> Response:
        payload = _require_mapping(payload)
        document = _document_from(payload.get("document"))
        try:
            result = backup_to_text_zip(document, _split_settings(payload))
        except NovelistError as exc:
            raise _http_error(exc) from exc
        return _attachment(result.data, f"{safe_filename(document.title, 'chapters')}.zip", ZIP_MEDIA_TYPE)

    @app.post("/api/backups/from-zip")
    async def api_backup_from_zip(
        file: UploadFile = File(...),
        title: str = Form(...),
        description: str = Form(""),
        code: str = Form(""),
        show_table_of_contents: bool = Form(True),
        apply_automatic_indentation: bool = Form(True),
    ) -> Response:
        data = await file.read()
        await file.close()
        options = BuildOptions(
            code=code.strip() or None,
            show_table_of_contents=show_table_of_contents,
            apply_automatic_indentation=apply_automatic_indentation,
        )
        document = await _run_blocking(zip_to_backup, data, title, description, options)
        return _backup_response(document, "backup_from_zip")

    @app.post("/api/epub/split")
    async def api_split_epub(
        file: UploadFile = File(...),
        prefix: str = Form("chapter"),
        start_number: int = Form(1),
        offset: int = Form(0),
        mode: str = Form("single"),
        group_size: int = Form(1),
    ) -> Response:
        data = await file.read()
        await file.close()
        settings = SplitSettings(
            prefix=prefix.strip() or "chapter",
            start_number=start_number,
            offset=offset,
            mode=mode,
            group_size=group_size,
        )
        result = await _run_blocking(split_epub, data, settings)
        response = _attachment(result.data, f"{safe_filename(settings.prefix, 'chapter')}_chapters.zip", ZIP_MEDIA_TYPE)
        response.headers["X-Chapter-Count"] = str(result.chapter_count)
        response.headers["X-Chapters-Skipped"] = str(result.skipped)
        return response

    @app.post("/api/epub/to-zip")
    async def api_epub_to_zip(file: UploadFile = File(...)) -> Response:
        data = await file.read()
        filename = file.filename or "epub_content.epub"
        await file.close()
        result = await _run_blocking(epub_to_text_zip, data)
        stem = filename[:-5] if filename.lower().endswith(".epub") else filename
        response = _attachment(result.data, f"{safe_filename(stem, 'epub_content')}.zip", ZIP_MEDIA_TYPE)
        response.headers["X-Chapter-Count"] = str(result.chapter_count)
        return response

    @app.post("/api/zip/to-epub")
    async def api_zip_to_epub(
        file: UploadFile = File(...),
        title: str = Form(""),
        author: str = Form(""),
        language: str = Form(""),
        cover: UploadFile | None = File(None),
    ) -> Response:
        data = await file.read()
        await file.close()
        cover_image = None
        if cover is not None:
            cover_image = CoverImage(
                path=cover.filename or "cover.png",
                media_type=cover.content_type,
                data=await cover.read(),
            )
            await cover.close()
        metadata = EpubMetadata(
            title=title.strip() or "Untitled EPUB",
            author=author.strip() or "Unknown Author",
            language=language.strip() or "en",
        )
        result = await _run_blocking(zip_to_epub, data, metadata, cover_image)
        filename = f"{safe_filename(metadata.title, 'generated_epub')}.epub"
        return _attachment(result.data, filename, EPUB_MEDIA_TYPE)

    return app
