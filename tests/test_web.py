from __future__ import annotations

import asyncio
import io
import json
import threading
import zipfile

import pytest

pytest.importorskip("fastapi")
from fastapi import HTTPException, UploadFile

from novelist import web
from novelist.backup import dump_backup, get_blocks, load_backup
from novelist.builder import build_from_chapters
from novelist.chapters import ChapterText
from novelist.convert import ConversionResult
from novelist.epub import build_epub, epub_toc_chapters
from novelist.web import SessionStore, WebConfig, create_app


def _find_route(app, path: str, method: str):
    method = method.upper()
    for route in app.router.routes:
        if getattr(route, "path", None) == path and method in getattr(route, "methods", set()):
            return route.endpoint
    raise RuntimeError(f"Route {method} {path} not found")


def _backup_payload(*texts: str) -> dict[str, object]:
    chapters = [ChapterText(title=f"ch{n}", text=text) for n, text in enumerate(texts, start=1)]
    document = build_from_chapters("Web Book", "", chapters)
    return json.loads(dump_backup(document))


def _json(response) -> dict[str, object]:
    return json.loads(response.body)


def _upload(data: bytes, filename: str) -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=filename)


def _zip(files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def _open_session(app, *texts: str) -> str:
    response = _find_route(app, "/api/sessions", "POST")(_backup_payload(*texts))
    payload = _json(response)
    assert payload["scenes"] == len(texts)
    assert payload["state"] == "active"
    return payload["session_id"]


def test_find_replace_session_flow() -> None:
    app = create_app(WebConfig())
    session_id = _open_session(app, "the cat sat", "a cat too")
    find = _find_route(app, "/api/sessions/{session_id}/find", "POST")
    replace = _find_route(app, "/api/sessions/{session_id}/replace", "POST")

    first = _json(find(session_id, {"pattern": "cat", "regex": False, "direction": "next"}))
    assert first["found"] is True
    assert first["match"]["scene_index"] == 0
    assert first["match"]["match_start"] == 4
    assert first["match"]["chapter_title"] == "ch1"
    assert first["match"]["match_line_text"] == "the cat sat"

    replaced = _json(replace(session_id, {"replacement": "dog", "pattern": "cat"}))
    assert replaced["replaced"]["scene_index"] == 0
    assert replaced["found"] is True
    assert replaced["match"]["scene_index"] == 1

    done = _json(replace(session_id, {"replacement": "dog", "pattern": "cat"}))
    assert done["found"] is False
    assert done["state"] == "exhausted_forward"

    document_route = _find_route(app, "/api/sessions/{session_id}/document", "GET")
    response = document_route(session_id)
    assert response.headers["content-disposition"] == 'attachment; filename="Web_Book.json"'
    document = load_backup(response.body)
    assert [get_blocks(scene)[0][0].text for scene in document.scenes] == ["the dog sat", "a dog too"]


def test_replace_without_match_is_conflict() -> None:
    app = create_app()
    session_id = _open_session(app, "text")
    replace = _find_route(app, "/api/sessions/{session_id}/replace", "POST")
    with pytest.raises(HTTPException) as excinfo:
        replace(session_id, {"replacement": "x"})
    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["kind"] == "no_active_match"


def test_find_reports_invalid_regex_and_previous_direction() -> None:
    app = create_app()
    session_id = _open_session(app, "one cat", "two cat")
    find = _find_route(app, "/api/sessions/{session_id}/find", "POST")

    bad = _json(find(session_id, {"pattern": "(", "regex": True}))
    assert bad["found"] is False
    assert bad["error"]["kind"] == "invalid_pattern"

    back = _json(find(session_id, {"pattern": "cat", "direction": "previous"}))
    assert back["match"]["scene_index"] == 1

    with pytest.raises(HTTPException) as excinfo:
        find(session_id, {"pattern": "cat", "direction": "sideways"})
    assert excinfo.value.status_code == 400


def test_replace_all_and_rewind() -> None:
    app = create_app()
    session_id = _open_session(app, "cat cat", "cat")
    find = _find_route(app, "/api/sessions/{session_id}/find", "POST")
    find(session_id, {"pattern": "cat"})

    replace_all = _find_route(app, "/api/sessions/{session_id}/replace-all", "POST")
    payload = _json(replace_all(session_id, {"pattern": "c(a)t", "replacement": r"b\1t", "regex": True}))
    assert payload["count"] == 3
    assert payload["cursor"] == {"scene_index": 0, "block_index": 0, "char_offset": 0}
    assert payload["warnings"] == []

    with pytest.raises(HTTPException) as excinfo:
        replace_all(session_id, {"pattern": "(", "replacement": "x", "regex": True})
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["kind"] == "invalid_pattern"

    find(session_id, {"pattern": "bat"})
    rewind = _find_route(app, "/api/sessions/{session_id}/rewind", "POST")
    state = _json(rewind(session_id))
    assert state["match"] is None
    assert state["cursor"]["char_offset"] == 0


def test_unknown_and_deleted_sessions_are_not_found() -> None:
    app = create_app()
    session_id = _open_session(app, "x")
    delete = _find_route(app, "/api/sessions/{session_id}", "DELETE")
    assert _json(delete(session_id))["deleted"] is True
    get = _find_route(app, "/api/sessions/{session_id}", "GET")
    for call in (lambda: get(session_id), lambda: delete(session_id), lambda: get("missing")):
        with pytest.raises(HTTPException) as excinfo:
            call()
        assert excinfo.value.status_code == 404


def test_open_session_rejects_invalid_backup() -> None:
    app = create_app()
    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/sessions", "POST")({"revisions": []})
    assert excinfo.value.status_code == 422
    assert excinfo.value.detail["kind"] == "validation"


def test_session_store_evicts_oldest() -> None:
    store = SessionStore(max_sessions=2)
    document = load_backup(json.dumps(_backup_payload("a")))
    first = store.create(document)
    second = store.create(document)
    store.get(first.id)
    third = store.create(document)
    assert len(store) == 2
    with pytest.raises(KeyError):
        store.get(second.id)
    assert store.get(first.id) is first
    assert store.get(third.id) is third


def test_create_extend_merge_and_export_backups() -> None:
    app = create_app()
    created = _find_route(app, "/api/backups/create", "POST")(
        {"title": "Fresh", "chapters": 2, "prefix": "Ch", "code": "12345678"}
    )
    assert created.headers["content-disposition"] == 'attachment; filename="Fresh.json"'
    fresh = json.loads(created.body)
    assert fresh["code"] == "12345678"
    assert [scene["title"] for scene in fresh["revisions"][0]["scenes"]] == ["Ch1", "Ch2"]

    extended = json.loads(
        _find_route(app, "/api/backups/extend", "POST")({"document": fresh, "extra_chapters": 1, "prefix": "Ch"}).body
    )
    assert [scene["code"] for scene in extended["revisions"][0]["scenes"]] == ["scene1", "scene2", "scene3"]

    merged = json.loads(
        _find_route(app, "/api/backups/merge", "POST")(
            {"documents": [fresh, _backup_payload("more text")], "title": "Both", "prefix": "P"}
        ).body
    )
    assert merged["title"] == "Both"
    assert [scene["title"] for scene in merged["revisions"][0]["scenes"]] == ["P1", "P2", "P3"]

    exported = _find_route(app, "/api/backups/export", "POST")(
        {"document": _backup_payload("one", "two"), "prefix": "part", "mode": "grouped", "group_size": 2}
    )
    assert exported.media_type == "application/zip"
    with zipfile.ZipFile(io.BytesIO(exported.body)) as zf:
        assert zf.namelist() == ["part C01-02.txt"]


def test_backup_endpoints_validate_input() -> None:
    app = create_app()
    create = _find_route(app, "/api/backups/create", "POST")
    with pytest.raises(HTTPException) as excinfo:
        create({"title": "", "chapters": 1})
    assert excinfo.value.status_code == 422
    with pytest.raises(HTTPException) as excinfo:
        create({"title": "T", "chapters": "many"})
    assert excinfo.value.status_code == 400
    merge = _find_route(app, "/api/backups/merge", "POST")
    with pytest.raises(HTTPException) as excinfo:
        merge({"documents": [], "title": "T"})
    assert excinfo.value.status_code == 400


def test_backup_from_zip_upload() -> None:
    app = create_app()
    route = _find_route(app, "/api/backups/from-zip", "POST")
    response = asyncio.run(
        route(
            file=_upload(_zip({"b.txt": "Second", "a.txt": "First"}), "chapters.zip"),
            title="Zipped",
            description="",
            code="",
            show_table_of_contents=False,
            apply_automatic_indentation=True,
        )
    )
    payload = json.loads(response.body)
    assert payload["show_table_of_contents"] is False
    assert [scene["title"] for scene in payload["revisions"][0]["scenes"]] == ["a", "b"]


def test_epub_conversion_uploads() -> None:
    pytest.importorskip("bs4")
    app = create_app()
    epub = build_epub([ChapterText(title=f"T{n}", text=f"body {n}") for n in range(1, 4)])

    split = asyncio.run(
        _find_route(app, "/api/epub/split", "POST")(
            file=_upload(epub, "book.epub"),
            prefix="novel",
            start_number=1,
            offset=1,
            mode="single",
            group_size=1,
        )
    )
    assert split.headers["x-chapter-count"] == "2"
    assert split.headers["x-chapters-skipped"] == "1"
    with zipfile.ZipFile(io.BytesIO(split.body)) as zf:
        assert zf.namelist() == ["novel01.txt", "novel02.txt"]
        assert zf.read("novel01.txt").decode("utf-8") == "body 2"

    to_zip = asyncio.run(_find_route(app, "/api/epub/to-zip", "POST")(file=_upload(epub, "My Book.epub")))
    assert to_zip.headers["content-disposition"] == 'attachment; filename="My_Book.zip"'
    with zipfile.ZipFile(io.BytesIO(to_zip.body)) as zf:
        assert zf.namelist() == ["C01.txt", "C02.txt", "C03.txt"]

    to_epub = asyncio.run(
        _find_route(app, "/api/zip/to-epub", "POST")(
            file=_upload(_zip({"01_Intro.txt": "Hi."}), "text.zip"),
            title="Packed",
            author="",
            language="",
            cover=None,
        )
    )
    assert to_epub.media_type == "application/epub+zip"
    assert [chapter.title for chapter in epub_toc_chapters(to_epub.body)] == ["01 Intro"]


def test_upload_errors_map_to_http_errors() -> None:
    app = create_app()
    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(_find_route(app, "/api/epub/to-zip", "POST")(file=_upload(b"nope", "bad.epub")))
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["kind"] == "archive"


def test_upload_conversions_run_off_the_event_loop_thread(monkeypatch) -> None:
    threads: list[int] = []

    def fake_epub_to_text_zip(data: bytes) -> ConversionResult:
        threads.append(threading.get_ident())
        return ConversionResult(data=_zip({"C01.txt": data.decode("utf-8")}), chapter_count=1)

    monkeypatch.setattr(web, "epub_to_text_zip", fake_epub_to_text_zip)
    app = create_app()
    route = _find_route(app, "/api/epub/to-zip", "POST")

    async def call() -> tuple[int, object]:
        response = await route(file=_upload(b"body", "book.epub"))
        return threading.get_ident(), response

    loop_thread, response = asyncio.run(call())
    assert threads and threads[0] != loop_thread
    assert response.headers["x-chapter-count"] == "1"
