from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest

pytest.importorskip("uvicorn")

from novelist import cli
from novelist.backup import dump_backup, get_blocks, load_backup
from novelist.builder import build_from_chapters
from novelist.chapters import ChapterText


def _write_backup(path: Path, *texts: str, title: str = "Sample") -> Path:
    chapters = [ChapterText(title=f"c{n}", text=text) for n, text in enumerate(texts, start=1)]
    path.write_bytes(dump_backup(build_from_chapters(title, "", chapters)))
    return path


def _write_zip(path: Path, files: dict[str, str]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return path


def test_create_writes_backup(tmp_path: Path) -> None:
    output = tmp_path / "out" / "novel.json"
    assert cli.main(["create", "My Book", "-n", "3", "--prefix", "Ch", "--code", "abcdef01", "-o", str(output)]) == 0
    document = load_backup(output.read_bytes())
    assert document.title == "My Book"
    assert document.code == "abcdef01"
    assert [scene.title for scene in document.scenes] == ["Ch1", "Ch2", "Ch3"]


def test_create_reports_validation_errors(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["create", "Title", "-n", "0", "-o", str(tmp_path / "x.json")])
    assert str(excinfo.value.code).startswith("validation:")
    assert not (tmp_path / "x.json").exists()


def test_find_lists_matches(tmp_path: Path, capsys) -> None:
    backup = _write_backup(tmp_path / "book.json", "a cat here", "no match", "cat and cat")
    assert cli.main(["find", str(backup), "cat"]) == 0
    out = capsys.readouterr().out
    assert "3 match(es)." in out

    assert cli.main(["find", str(backup), "cat", "--previous", "--limit", "1"]) == 0
    assert "1 match(es)." in capsys.readouterr().out


def test_find_invalid_regex_exits(tmp_path: Path) -> None:
    backup = _write_backup(tmp_path / "book.json", "text")
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["find", str(backup), "(", "--regex"])
    assert str(excinfo.value.code).startswith("invalid_pattern:")


def test_replace_writes_next_to_input(tmp_path: Path) -> None:
    backup = _write_backup(tmp_path / "book.json", "a cat here", "cat and cat", title="Tale")
    assert cli.main(["replace", str(backup), "cat", "dog"]) == 0
    output = tmp_path / "Tale_replaced.json"
    document = load_backup(output.read_bytes())
    texts = [get_blocks(scene)[0][0].text for scene in document.scenes]
    assert texts == ["a dog here", "dog and dog"]
    # The input is left untouched.
    assert "cat" in backup.read_text(encoding="utf-8")


def test_replace_without_matches_writes_nothing(tmp_path: Path) -> None:
    backup = _write_backup(tmp_path / "book.json", "text", title="Tale")
    assert cli.main(["replace", str(backup), "zebra", "horse"]) == 0
    assert not (tmp_path / "Tale_replaced.json").exists()


def test_extend_and_merge(tmp_path: Path) -> None:
    first = _write_backup(tmp_path / "one.json", "first")
    second = _write_backup(tmp_path / "two.json", "second", "third")
    extended = tmp_path / "extended.json"
    assert cli.main(["extend", str(first), "-n", "2", "--prefix", "E", "-o", str(extended)]) == 0
    assert [scene.title for scene in load_backup(extended.read_bytes()).scenes] == ["c1", "E2", "E3"]

    merged = tmp_path / "merged.json"
    assert cli.main(["merge", str(first), str(second), "--title", "All", "--prefix", "M", "-o", str(merged)]) == 0
    document = load_backup(merged.read_bytes())
    assert document.title == "All"
    assert [scene.code for scene in document.scenes] == ["scene1", "scene2", "scene3"]
    assert [scene.title for scene in document.scenes] == ["M1", "M2", "M3"]


def test_from_zip_and_export(tmp_path: Path) -> None:
    archive = _write_zip(tmp_path / "chapters.zip", {"ch2.txt": "Two", "ch10.txt": "Ten", "ch1.txt": "One"})
    assert cli.main(["from-zip", str(archive), "--title", "Zipped Book"]) == 0
    backup = tmp_path / "Zipped_Book.json"
    document = load_backup(backup.read_bytes())
    assert [scene.title for scene in document.scenes] == ["ch1", "ch2", "ch10"]

    exported = tmp_path / "export.zip"
    assert cli.main(["export", str(backup), "--prefix", "part", "--offset", "1", "-o", str(exported)]) == 0
    with zipfile.ZipFile(exported) as zf:
        assert zf.namelist() == ["part01.txt", "part02.txt"]
        assert zf.read("part01.txt").decode("utf-8") == "Two"


def test_zip_to_epub_and_back(tmp_path: Path) -> None:
    pytest.importorskip("bs4")
    archive = _write_zip(tmp_path / "chapters.zip", {"01_Start.txt": "Hello.", "02_End.txt": "Bye."})
    cover = tmp_path / "cover.png"
    cover.write_bytes(b"\x89PNG\r\n\x1a\n")
    epub = tmp_path / "book.epub"
    assert cli.main(["zip-to-epub", str(archive), "--title", "Round", "--cover", str(cover), "-o", str(epub)]) == 0
    with zipfile.ZipFile(epub) as zf:
        assert "OEBPS/images/cover.png" in zf.namelist()

    assert cli.main(["epub-to-zip", str(epub)]) == 0
    with zipfile.ZipFile(tmp_path / "book.zip") as zf:
        assert zf.namelist() == ["C01.txt", "C02.txt"]

    assert cli.main(["split", str(epub), "--prefix", "s", "--mode", "grouped", "--group-size", "2"]) == 0
    with zipfile.ZipFile(tmp_path / "s_chapters.zip") as zf:
        assert zf.namelist() == ["s C01-02.txt"]


def test_missing_input_exits(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["find", str(tmp_path / "missing.json"), "x"])
    assert "Input path not found" in str(excinfo.value.code)


def test_no_arguments_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "novelist" in capsys.readouterr().out


def test_unknown_command_is_an_error() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["frobnicate"])
    assert excinfo.value.code == 2


def test_web_parser_defaults() -> None:
    args = cli.build_web_parser().parse_args([])
    assert (args.host, args.port, args.max_sessions, args.debug) == ("127.0.0.1", 8000, 32, False)
