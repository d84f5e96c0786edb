from __future__ import annotations

import argparse
import mimetypes
import sys
from importlib import metadata
from pathlib import Path

import tomllib
import uvicorn
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .backup import BackupDocument, dump_backup, load_backup, safe_filename
from .builder import BuildOptions, build, extend, merge
from .chapters import CHAPTER_MODES, DEFAULT_CHAPTER_PREFIX
from .convert import (
    SplitSettings,
    backup_to_text_zip,
    epub_to_text_zip,
    split_epub,
    zip_to_backup,
    zip_to_epub,
)
from .epub import CoverImage, EpubMetadata
from .errors import NovelistError, RecoverableParseError
from .logging_utils import build_uvicorn_log_config, set_debug_logging
from .search import FindReplaceSession
from .web import WebConfig, create_app

console = Console()
err_console = Console(stderr=True)


def _read_local_version() -> str | None:
    try:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    except IndexError:  # pragma: no cover
        return None
    try:
        with pyproject_path.open("rb") as fh:
            data = tomllib.load(fh)
    except (FileNotFoundError, tomllib.TOMLDecodeError):
        return None
    return data.get("project", {}).get("version")


try:
    __version__ = metadata.version("novelist")
except metadata.PackageNotFoundError:
    __version__ = _read_local_version() or "0.0.0+unknown"


COMMANDS = (
    "create",
    "from-zip",
    "extend",
    "merge",
    "find",
    "replace",
    "export",
    "split",
    "epub-to-zip",
    "zip-to-epub",
    "web",
)


def _add_version_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"novelist {__version__}",
    )


def _add_output_flag(parser: argparse.ArgumentParser, default_hint: str) -> None:
    parser.add_argument(
        "-o",
        "--output",
        help=f"Output file path (default: {default_hint}).",
    )


def _add_build_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--code",
        help="Project code to store in the backup (default: random 8-digit hex).",
    )
    parser.add_argument(
        "--no-toc",
        action="store_true",
        help="Disable the table of contents flag in the generated backup.",
    )
    parser.add_argument(
        "--no-indent",
        action="store_true",
        help="Disable automatic paragraph indentation in the generated backup.",
    )


def _add_split_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--prefix",
        default=DEFAULT_CHAPTER_PREFIX,
        help=f"File name prefix for chapter files (default: {DEFAULT_CHAPTER_PREFIX}).",
    )
    parser.add_argument(
        "--start",
        type=int,
        default=1,
        help="Number given to the first exported chapter (default: 1).",
    )
    parser.add_argument(
        "--offset",
        type=int,
        default=0,
        help="Skip this many chapters from the start (default: 0).",
    )
    parser.add_argument(
        "--mode",
        choices=list(CHAPTER_MODES),
        default="single",
        help="'single' writes one file per chapter; 'grouped' joins --group-size chapters per file.",
    )
    parser.add_argument(
        "--group-size",
        type=int,
        default=1,
        help="Chapters per file in grouped mode (default: 1).",
    )


def build_create_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist create",
        description="Create a new backup file with empty chapters.",
    )
    _add_version_flag(ap)
    ap.add_argument("title", help="Project title.")
    ap.add_argument("--description", default="", help="Project description.")
    ap.add_argument(
        "-n",
        "--chapters",
        type=int,
        default=1,
        help="Number of chapters to create (default: 1).",
    )
    ap.add_argument("--prefix", default="", help="Chapter title prefix, e.g. 'Chapter '.")
    _add_build_flags(ap)
    _add_output_flag(ap, "<title>.json in the current directory")
    return ap


def build_from_zip_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist from-zip",
        description="Create a backup file from a ZIP of .txt chapters.",
    )
    _add_version_flag(ap)
    ap.add_argument("zip_path", help="ZIP archive containing .txt chapter files.")
    ap.add_argument("--title", required=True, help="Project title.")
    ap.add_argument("--description", default="", help="Project description.")
    _add_build_flags(ap)
    _add_output_flag(ap, "<title>.json next to the ZIP")
    return ap


def build_extend_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist extend",
        description="Append empty chapters to an existing backup file.",
    )
    _add_version_flag(ap)
    ap.add_argument("backup_path", help="Backup .json file to extend.")
    ap.add_argument(
        "-n",
        "--chapters",
        type=int,
        required=True,
        help="Number of chapters to append.",
    )
    ap.add_argument("--prefix", default="", help="Chapter title prefix for new chapters.")
    _add_output_flag(ap, "<title>_extended.json next to the input")
    return ap


def build_merge_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist merge",
        description="Merge several backup files into one, renumbering chapters.",
    )
    _add_version_flag(ap)
    ap.add_argument("backup_paths", nargs="+", help="Backup .json files, in merge order.")
    ap.add_argument("--title", required=True, help="Title of the merged project.")
    ap.add_argument("--description", default="", help="Description of the merged project.")
    ap.add_argument("--prefix", default="", help="Chapter title prefix for renumbered chapters.")
    _add_build_flags(ap)
    _add_output_flag(ap, "<title>.json next to the first input")
    return ap


def build_find_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist find",
        description="List occurrences of a pattern in a backup file.",
    )
    _add_version_flag(ap)
    ap.add_argument("backup_path", help="Backup .json file to search.")
    ap.add_argument("pattern", help="Text (or regular expression with --regex) to find.")
    ap.add_argument("--regex", action="store_true", help="Treat the pattern as a regular expression.")
    ap.add_argument(
        "--previous",
        action="store_true",
        help="Walk the document backwards, from the end to the start.",
    )
    ap.add_argument(
        "--limit",
        type=int,
        default=0,
        help="Stop after this many matches (default: 0, no limit).",
    )
    ap.add_argument("--debug", action="store_true", help="Print search debug output.")
    return ap


def build_replace_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist replace",
        description="Replace every occurrence of a pattern in a backup file.",
    )
    _add_version_flag(ap)
    ap.add_argument("backup_path", help="Backup .json file to edit.")
    ap.add_argument("pattern", help="Text (or regular expression with --regex) to replace.")
    ap.add_argument(
        "replacement",
        help=(
            "Replacement text. With --regex it is a re.sub template: \\1 or \\g<name> insert groups "
            "and a literal backslash must be written as \\\\."
        ),
    )
    ap.add_argument("--regex", action="store_true", help="Treat the pattern as a regular expression.")
    ap.add_argument("--debug", action="store_true", help="Print search debug output.")
    _add_output_flag(ap, "<title>_replaced.json next to the input")
    return ap


def build_export_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist export",
        description="Export the chapters of a backup file as a ZIP of .txt files.",
    )
    _add_version_flag(ap)
    ap.add_argument("backup_path", help="Backup .json file to export.")
    _add_split_flags(ap)
    _add_output_flag(ap, "<title>.zip next to the input")
    return ap


def build_split_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist split",
        description="Split an EPUB into chapter .txt files packed in a ZIP.",
    )
    _add_version_flag(ap)
    ap.add_argument("epub_path", help="Input .epub file.")
    _add_split_flags(ap)
    _add_output_flag(ap, "<prefix>_chapters.zip next to the EPUB")
    return ap


def build_epub_to_zip_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist epub-to-zip",
        description="Extract one .txt per table-of-contents entry from an EPUB.",
    )
    _add_version_flag(ap)
    ap.add_argument("epub_path", help="Input .epub file.")
    _add_output_flag(ap, "<epub name>.zip next to the EPUB")
    return ap


def build_zip_to_epub_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist zip-to-epub",
        description="Package a ZIP of .txt chapters as an EPUB.",
    )
    _add_version_flag(ap)
    ap.add_argument("zip_path", help="ZIP archive containing .txt chapter files.")
    ap.add_argument("--title", default="", help="Book title (default: Untitled EPUB).")
    ap.add_argument("--author", default="", help="Book author (default: Unknown Author).")
    ap.add_argument("--language", default="", help="Book language code (default: en).")
    ap.add_argument("--cover", help="Optional cover image file.")
    _add_output_flag(ap, "<title>.epub next to the ZIP")
    return ap


def build_web_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist web",
        description="Serve the find & replace and conversion API over HTTP.",
    )
    _add_version_flag(ap)
    defaults = WebConfig()
    ap.add_argument(
        "--host",
        default=defaults.host,
        help=f"Host interface for the web server (default: {defaults.host}).",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=defaults.port,
        help=f"Port for the web server (default: {defaults.port}).",
    )
    ap.add_argument(
        "--max-sessions",
        type=int,
        default=defaults.max_sessions,
        help=f"Open editing sessions kept in memory (default: {defaults.max_sessions}).",
    )
    ap.add_argument("--debug", action="store_true", help="Enable verbose debug logging.")
    return ap


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="novelist",
        description="Manuscript backup tools: find & replace, chapter import/export, EPUB conversion.",
        epilog="Commands: " + ", ".join(COMMANDS) + ". Run `novelist <command> --help` for options.",
    )
    _add_version_flag(ap)
    ap.add_argument("command", choices=COMMANDS, help="Subcommand to run.")
    ap.add_argument("args", nargs=argparse.REMAINDER, help=argparse.SUPPRESS)
    return ap


def _input_file(value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_file():
        raise SystemExit(f"Input path not found: {path}")
    return path


def _output_path(value: str | None, default: Path) -> Path:
    if value:
        return Path(value).expanduser()
    return default


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    console.print(f"Wrote {escape(str(path))}")


def _load_backup_file(path: Path) -> BackupDocument:
    return load_backup(path.read_bytes())


def _build_options(args: argparse.Namespace) -> BuildOptions:
    return BuildOptions(
        code=args.code or None,
        show_table_of_contents=not args.no_toc,
        apply_automatic_indentation=not args.no_indent,
    )


def _split_settings(args: argparse.Namespace) -> SplitSettings:
    return SplitSettings(
        prefix=args.prefix.strip() or DEFAULT_CHAPTER_PREFIX,
        start_number=args.start,
        offset=args.offset,
        mode=args.mode,
        group_size=args.group_size,
    )


def _report_warnings(warnings: list[RecoverableParseError] | None) -> None:
    for warning in warnings or []:
        label = warning.scene_title or "Untitled"
        err_console.print(
            f"[yellow]warning[/yellow]: scene {warning.scene_index} ({escape(label)}): {escape(warning.message)}"
        )


def _run_create(args: argparse.Namespace) -> int:
    document = build(args.title, args.description, args.chapters, args.prefix, _build_options(args))
    default = Path.cwd() / f"{safe_filename(document.title, 'new_backup')}.json"
    _write_bytes(_output_path(args.output, default), dump_backup(document))
    console.print(f"Created {len(document.scenes)} chapter(s).")
    return 0


def _run_from_zip(args: argparse.Namespace) -> int:
    zip_path = _input_file(args.zip_path)
    document = zip_to_backup(zip_path.read_bytes(), args.title, args.description, _build_options(args))
    default = zip_path.with_name(f"{safe_filename(document.title, 'backup_from_zip')}.json")
    _write_bytes(_output_path(args.output, default), dump_backup(document))
    console.print(f"Imported {len(document.scenes)} chapter(s).")
    return 0


def _run_extend(args: argparse.Namespace) -> int:
    backup_path = _input_file(args.backup_path)
    document = _load_backup_file(backup_path)
    before = len(document.scenes)
    extend(document, args.chapters, args.prefix)
    default = backup_path.with_name(f"{safe_filename(document.title, 'extended_backup')}_extended.json")
    _write_bytes(_output_path(args.output, default), dump_backup(document))
    console.print(f"Added {len(document.scenes) - before} chapter(s); {len(document.scenes)} total.")
    return 0


def _run_merge(args: argparse.Namespace) -> int:
    paths = [_input_file(value) for value in args.backup_paths]
    documents = [_load_backup_file(path) for path in paths]
    merged = merge(
        documents,
        args.prefix,
        title=args.title,
        description=args.description,
        options=_build_options(args),
    )
    default = paths[0].with_name(f"{safe_filename(merged.title, 'merged_backup')}.json")
    _write_bytes(_output_path(args.output, default), dump_backup(merged))
    console.print(f"Merged {len(documents)} file(s) into {len(merged.scenes)} chapter(s).")
    return 0


def _run_find(args: argparse.Namespace) -> int:
    set_debug_logging(args.debug)
    document = _load_backup_file(_input_file(args.backup_path))
    session = FindReplaceSession(document)
    table = Table("Chapter", "Block", "Offset", "Line")
    found = 0
    while True:
        if args.previous:
            result = session.find_previous(args.pattern, args.regex)
        else:
            result = session.find_next(args.pattern, args.regex)
        if found == 0:
            _report_warnings(result.warnings)
        if result.error is not None:
            raise SystemExit(f"{result.error.kind}: {result.error.message}")
        if result.match is None:
            break
        match = result.match
        table.add_row(
            escape(match.chapter_title or "Untitled"),
            str(match.block_index),
            str(match.match_start),
            escape(match.match_line_text),
        )
        found += 1
        if args.limit and found >= args.limit:
            break
    if found:
        console.print(table)
    console.print(f"{found} match(es).")
    return 0


def _run_replace(args: argparse.Namespace) -> int:
    set_debug_logging(args.debug)
    backup_path = _input_file(args.backup_path)
    document = _load_backup_file(backup_path)
    result = FindReplaceSession(document).replace_all(args.pattern, args.replacement, args.regex)
    _report_warnings(result.warnings)
    if result.count == 0:
        console.print("No matches found. Nothing written.")
        return 0
    default = backup_path.with_name(f"{safe_filename(document.title, 'replaced_backup')}_replaced.json")
    _write_bytes(_output_path(args.output, default), dump_backup(document))
    console.print(f"Replaced {result.count} occurrence(s).")
    return 0


def _run_export(args: argparse.Namespace) -> int:
    backup_path = _input_file(args.backup_path)
    document = _load_backup_file(backup_path)
    result = backup_to_text_zip(document, _split_settings(args))
    _report_warnings(result.warnings)
    default = backup_path.with_name(f"{safe_filename(document.title, 'chapters')}.zip")
    _write_bytes(_output_path(args.output, default), result.data)
    console.print(f"Exported {result.chapter_count} chapter(s) into {len(result.units or [])} file(s).")
    return 0


def _run_split(args: argparse.Namespace) -> int:
    epub_path = _input_file(args.epub_path)
    settings = _split_settings(args)
    result = split_epub(epub_path.read_bytes(), settings)
    default = epub_path.with_name(f"{safe_filename(settings.prefix, 'chapter')}_chapters.zip")
    _write_bytes(_output_path(args.output, default), result.data)
    console.print(
        f"Extracted {result.chapter_count} chapter(s) into {len(result.units or [])} file(s)"
        f" (skipped {result.skipped})."
    )
    return 0


def _run_epub_to_zip(args: argparse.Namespace) -> int:
    epub_path = _input_file(args.epub_path)
    result = epub_to_text_zip(epub_path.read_bytes())
    default = epub_path.with_name(f"{safe_filename(epub_path.stem, 'epub_content')}.zip")
    _write_bytes(_output_path(args.output, default), result.data)
    console.print(f"Extracted {result.chapter_count} chapter(s).")
    return 0


def _run_zip_to_epub(args: argparse.Namespace) -> int:
    zip_path = _input_file(args.zip_path)
    cover = None
    if args.cover:
        cover_path = _input_file(args.cover)
        media_type, _ = mimetypes.guess_type(cover_path.name)
        cover = CoverImage(path=cover_path.name, media_type=media_type, data=cover_path.read_bytes())
    book = EpubMetadata(
        title=args.title.strip() or "Untitled EPUB",
        author=args.author.strip() or "Unknown Author",
        language=args.language.strip() or "en",
    )
    result = zip_to_epub(zip_path.read_bytes(), book, cover)
    default = zip_path.with_name(f"{safe_filename(book.title, 'generated_epub')}.epub")
    _write_bytes(_output_path(args.output, default), result.data)
    console.print(f"Packaged {result.chapter_count} chapter(s).")
    return 0


def _run_web(args: argparse.Namespace) -> None:
    set_debug_logging(args.debug)
    config = WebConfig(host=args.host, port=args.port, max_sessions=args.max_sessions)
    app = create_app(config)
    console.print(f"novelist web listening on http://{config.host}:{config.port}/")
    console.print("Press Ctrl+C to stop.\n")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="debug" if args.debug else "info",
        log_config=build_uvicorn_log_config(debug=args.debug),
    )


_PARSERS = {
    "create": (build_create_parser, _run_create),
    "from-zip": (build_from_zip_parser, _run_from_zip),
    "extend": (build_extend_parser, _run_extend),
    "merge": (build_merge_parser, _run_merge),
    "find": (build_find_parser, _run_find),
    "replace": (build_replace_parser, _run_replace),
    "export": (build_export_parser, _run_export),
    "split": (build_split_parser, _run_split),
    "epub-to-zip": (build_epub_to_zip_parser, _run_epub_to_zip),
    "zip-to-epub": (build_zip_to_epub_parser, _run_zip_to_epub),
}


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if argv and argv[0] == "web":
        web_args = build_web_parser().parse_args(argv[1:])
        _run_web(web_args)
        return 0
    if argv and argv[0] in _PARSERS:
        build_subparser, run = _PARSERS[argv[0]]
        args = build_subparser().parse_args(argv[1:])
        try:
            return run(args)
        except NovelistError as exc:
            raise SystemExit(f"{exc.kind}: {exc.message}") from exc

    parser = build_parser()
    if not argv:
        parser.print_help()
        return 0
    parser.parse_args(argv)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
