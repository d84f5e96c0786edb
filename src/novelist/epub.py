from __future__ import annotations

import html
import io
import re
import uuid
import warnings
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Sequence
from urllib.parse import unquote

from bs4 import BeautifulSoup, FeatureNotFound, NavigableString, Tag, XMLParsedAsHTMLWarning

from .chapters import ChapterText, normalize_newlines
from .errors import ArchiveError
from .logging_utils import debug_log

HTML_EXTS = (".xhtml", ".html", ".htm")
EPUB_MIMETYPE = "application/epub+zip"

# Elements whose end marks a paragraph break when collapsing XHTML to text.
PARAGRAPH_TAGS = {
    "p", "h1", "h2", "h3", "h4", "h5", "h6", "div", "li", "blockquote", "pre",
    "section", "article", "aside", "header", "footer", "nav", "figure",
    "figcaption", "table", "tr", "th", "td",
}
CHAPTER_CONTAINER_TAGS = ("section", "div")
CHAPTER_HEADING_TAGS = ("h1", "h2", "h3")
_CHAPTER_TITLE_CLASSES = {"title", "chapter-title"}

STYLE_CSS = """body { font-family: sans-serif; line-height: 1.5; margin: 1em; }
h1, h2, h3 { text-align: center; }
p { text-indent: 1.5em; margin-top: 0; margin-bottom: 0.5em; }
.cover { text-align: center; margin-top: 20%; }
.cover img { max-width: 80%; max-height: 80vh; }"""

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>"""


@dataclass
class TocEntry:
    title: str
    href: str


@dataclass
class CoverImage:
    path: str
    media_type: str | None
    data: bytes


@dataclass
class EpubMetadata:
    title: str = "Untitled EPUB"
    author: str = "Unknown Author"
    language: str = "en"
    identifier: str = field(default_factory=lambda: f"urn:uuid:{uuid.uuid4()}")


@dataclass
class _ManifestItem:
    href: str
    media_type: str
    properties: str


@dataclass
class _Package:
    opf_path: str
    manifest: dict[str, _ManifestItem]
    spine: list[str]
    toc_id: str | None


# ---------- reading ----------


def open_epub(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"Not a valid EPUB/ZIP archive: {exc}") from exc


def _zip_read_text(zf: zipfile.ZipFile, name: str) -> str:
    raw = zf.read(name)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("utf-8", errors="replace")


def _strip_tag(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _namespace(root: ET.Element) -> dict[str, str]:
    if root.tag.startswith("{"):
        return {"ns": root.tag.split("}")[0].strip("{")}
    return {"ns": ""}


def _find_opf_path(zf: zipfile.ZipFile) -> str:
    # META-INF/container.xml -> rootfiles/rootfile@full-path
    try:
        container = _zip_read_text(zf, "META-INF/container.xml")
        root = ET.fromstring(container)
        ns = {"c": "urn:oasis:names:tc:opendocument:xmlns:container"}
        for rf in root.findall(".//c:rootfile", ns):
            full = rf.attrib.get("full-path")
            if full:
                return full
    except (KeyError, ET.ParseError):
        pass
    for n in zf.namelist():
        if n.lower().endswith(".opf"):
            return n
    raise ArchiveError("OPF file not found in EPUB")


def _resolve_relative_path(base_file: str, href: str) -> str:
    href = unquote(href)
    if href.startswith("/"):
        return href.lstrip("/")
    base = PurePosixPath(base_file).parent
    combined = PurePosixPath(href) if str(base) in ("", ".") else base / href
    parts: list[str] = []
    for part in combined.parts:
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


def _split_href_fragment(href: str) -> tuple[str, str | None]:
    if "#" in href:
        base, frag = href.split("#", 1)
        return base, unquote(frag)
    return href, None


def _read_package(zf: zipfile.ZipFile) -> _Package:
    opf_path = _find_opf_path(zf)
    try:
        root = ET.fromstring(_zip_read_text(zf, opf_path))
    except KeyError as exc:
        raise ArchiveError(f"Could not read OPF file at {opf_path}") from exc
    except ET.ParseError as exc:
        raise ArchiveError(f"Could not parse OPF XML at {opf_path}: {exc}") from exc
    nsmap = _namespace(root)
    prefix = "ns:" if nsmap["ns"] else ""
    manifest: dict[str, _ManifestItem] = {}
    for item in root.findall(f".//{prefix}manifest/{prefix}item", nsmap):
        item_id = item.attrib.get("id")
        href = item.attrib.get("href")
        if not item_id or not href:
            continue
        manifest[item_id] = _ManifestItem(
            href=_resolve_relative_path(opf_path, _split_href_fragment(href)[0]),
            media_type=(item.attrib.get("media-type") or "").lower(),
            properties=(item.attrib.get("properties") or "").lower(),
        )
    spine: list[str] = []
    toc_id: str | None = None
    spine_elem = root.find(f".//{prefix}spine", nsmap)
    if spine_elem is not None:
        toc_id = spine_elem.attrib.get("toc")
        for ref in spine_elem.findall(f"{prefix}itemref", nsmap):
            item = manifest.get(ref.attrib.get("idref") or "")
            if item is not None:
                spine.append(item.href)
    if not spine:
        spine = [n for n in zf.namelist() if n.lower().endswith(HTML_EXTS)]
    return _Package(opf_path=opf_path, manifest=manifest, spine=spine, toc_id=toc_id)


def _soup_from_html(markup: str) -> BeautifulSoup:
    for parser in ("lxml", "html.parser"):
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
                return BeautifulSoup(markup, parser)
        except FeatureNotFound:
            continue
    return BeautifulSoup(markup, "html.parser")


def _attr_tokens(tag: Tag, name: str) -> list[str]:
    value = tag.get(name)
    if value is None:
        return []
    if isinstance(value, list):
        return [v.lower() for v in value]
    return str(value).lower().split()


def _parse_nav_document(markup: str, nav_path: str) -> list[TocEntry]:
    soup = _soup_from_html(markup)
    toc_list: Tag | None = None
    for nav in soup.find_all("nav"):
        if "toc" in _attr_tokens(nav, "epub:type") or nav.get("id") == "toc" or "toc" in _attr_tokens(nav, "class"):
            toc_list = nav.find("ol")
            if toc_list is not None:
                break
    if toc_list is None and soup.body is not None:
        toc_list = soup.body.find("ol")
    if toc_list is None:
        return []
    entries: list[TocEntry] = []
    # Only top-level entries; nested lists are sub-chapters of the same file.
    for item in toc_list.find_all("li", recursive=False):
        anchor = item.find("a", href=True, recursive=False)
        if anchor is None:
            continue
        label = " ".join(anchor.get_text().split())
        base, _ = _split_href_fragment(str(anchor["href"]))
        if label and base:
            entries.append(TocEntry(title=label, href=_resolve_relative_path(nav_path, base)))
    return entries


def _parse_ncx_document(xml_text: str, ncx_path: str) -> list[TocEntry]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return []
    ns = _namespace(root)
    prefix = "ns:" if ns["ns"] else ""

    def _collect_points(elem: ET.Element, acc: list[TocEntry]) -> None:
        for nav_point in elem.findall(f"{prefix}navPoint", ns):
            label_elem = nav_point.find(f"{prefix}navLabel/{prefix}text", ns)
            content_elem = nav_point.find(f"{prefix}content", ns)
            label = "".join(label_elem.itertext()).strip() if label_elem is not None else ""
            src = content_elem.attrib.get("src") if content_elem is not None else None
            if label and src:
                base, _ = _split_href_fragment(src)
                acc.append(TocEntry(title=label, href=_resolve_relative_path(ncx_path, base)))
            _collect_points(nav_point, acc)

    entries: list[TocEntry] = []
    nav_map = root.find(f"{prefix}navMap", ns)
    if nav_map is None:
        return entries
    _collect_points(nav_map, entries)
    return entries


def _deduplicate(entries: list[TocEntry]) -> list[TocEntry]:
    seen: set[str] = set()
    unique: list[TocEntry] = []
    for entry in entries:
        if not entry.href or entry.href in seen:
            debug_log(f"dropping duplicate TOC entry {entry.title!r} -> {entry.href}")
            continue
        seen.add(entry.href)
        unique.append(entry)
    return unique


def toc_entries(zf: zipfile.ZipFile, package: _Package | None = None) -> list[TocEntry]:
    """Table of contents from the EPUB3 nav document, falling back to the EPUB2 NCX."""
    package = package or _read_package(zf)
    nav_item = next((item for item in package.manifest.values() if "nav" in item.properties.split()), None)
    ncx_item = package.manifest.get(package.toc_id or "")
    if ncx_item is None:
        ncx_item = next(
            (item for item in package.manifest.values() if item.media_type == "application/x-dtbncx+xml"),
            None,
        )
    entries: list[TocEntry] = []
    if nav_item is not None:
        try:
            entries = _parse_nav_document(_zip_read_text(zf, nav_item.href), nav_item.href)
        except KeyError:
            debug_log(f"nav document missing: {nav_item.href}")
    if not entries and ncx_item is not None:
        try:
            entries = _parse_ncx_document(_zip_read_text(zf, ncx_item.href), ncx_item.href)
        except KeyError:
            debug_log(f"NCX document missing: {ncx_item.href}")
    return _deduplicate(entries)


def extract_text_from_html(markup: str) -> str:
    """
    Collapse an XHTML content document to plain text.

    Block-level elements end with a blank line and ``<br>`` becomes a single
    newline, so paragraphs survive as blank-line separated runs.
    """
    soup = _soup_from_html(markup)
    root = soup.body or soup
    for tag in root.find_all(["script", "style", "title"]):
        tag.decompose()
    for br in root.find_all("br"):
        br.replace_with("\n")
    for tag in root.find_all(PARAGRAPH_TAGS):
        tag.insert_after("\n\n")
    text = root.get_text(separator="")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _first_heading(soup: BeautifulSoup) -> str | None:
    for name in ("title", *CHAPTER_HEADING_TAGS):
        tag = soup.find(name)
        if tag is not None:
            label = " ".join(tag.get_text().split())
            if label:
                return label
    return None


def epub_toc_chapters(data: bytes) -> list[ChapterText]:
    """
    One chapter per table-of-contents entry, in TOC order.

    EPUBs without a usable TOC fall back to the spine, one chapter per
    content document. Entries whose file is missing or empty are skipped.
    """
    with open_epub(data) as zf:
        package = _read_package(zf)
        entries = toc_entries(zf, package)
        names = set(zf.namelist())
        if not entries:
            debug_log("no TOC entries found; falling back to spine order")
            entries = []
            for path in package.spine:
                if path in names and path.lower().endswith(HTML_EXTS):
                    title = _first_heading(_soup_from_html(_zip_read_text(zf, path)))
                    entries.append(TocEntry(title=title or PurePosixPath(path).stem, href=path))
        chapters: list[ChapterText] = []
        for entry in entries:
            if entry.href not in names:
                debug_log(f"chapter file not found in EPUB: {entry.href}")
                continue
            text = extract_text_from_html(_zip_read_text(zf, entry.href))
            if not text:
                debug_log(f"no text content extracted from {entry.href}")
                continue
            chapters.append(ChapterText(title=entry.title, text=text, source=entry.href))
        return chapters


def _is_chapter_container(tag: Tag) -> bool:
    if tag.name not in CHAPTER_CONTAINER_TAGS:
        return False
    return (
        "chapter" in _attr_tokens(tag, "epub:type")
        or "chapter" in _attr_tokens(tag, "class")
        or "chapter" in _attr_tokens(tag, "role")
    )


def _section_text(section: Tag) -> str:
    for heading in section.find_all(CHAPTER_HEADING_TAGS):
        heading.decompose()
    for tag in section.find_all(True):
        if tag.decomposed:
            continue
        if _CHAPTER_TITLE_CLASSES.intersection(_attr_tokens(tag, "class")):
            tag.decompose()
    paragraphs = [p.get_text().strip() for p in section.find_all("p")]
    if paragraphs:
        return "\n".join(p for p in paragraphs if p)
    return re.sub(r"\s*\n\s*", "\n", section.get_text()).strip()


def _heading_split_texts(soup: BeautifulSoup) -> list[str]:
    headings = soup.find_all(CHAPTER_HEADING_TAGS)
    if len(headings) <= 1:
        return []
    texts: list[str] = []
    for heading in headings:
        content = ""
        for node in heading.next_siblings:
            if isinstance(node, Tag):
                if node.name in CHAPTER_HEADING_TAGS:
                    break
                content += node.get_text() + "\n"
            elif isinstance(node, NavigableString):
                content += str(node)
        content = re.sub(r"\n{3,}", "\n", content).strip()
        if content:
            texts.append(content)
    return texts


def document_section_texts(markup: str) -> list[str]:
    soup = _soup_from_html(markup)
    sections = [
        tag
        for tag in soup.find_all(_is_chapter_container)
        if tag.find_parent(_is_chapter_container) is None
    ]
    if sections:
        texts = [_section_text(section) for section in sections]
        return [text for text in texts if text]
    return _heading_split_texts(soup)


def epub_section_chapters(data: bytes) -> list[str]:
    """
    Chapter texts found by markup rather than by the TOC.

    Chapters are ``section``/``div`` elements typed as chapters; documents
    without them are split at ``h1``-``h3`` headings when they hold more than
    one. Content documents are visited in spine order.
    """
    with open_epub(data) as zf:
        try:
            order = _read_package(zf).spine
        except ArchiveError:
            order = []
        names = zf.namelist()
        remaining = [n for n in names if n.lower().endswith((".xhtml", ".html")) and n not in order]
        chapters: list[str] = []
        for path in [*order, *remaining]:
            if path not in names or not path.lower().endswith((".xhtml", ".html")):
                continue
            markup = _zip_read_text(zf, path)
            if not markup:
                continue
            chapters.extend(document_section_texts(markup))
        return chapters


# ---------- writing ----------


def _escape(value: str) -> str:
    return html.escape(value, quote=True)


def sanitize_xml_name(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", value)


def text_to_xhtml(text: str, chapter_title: str, language: str = "en") -> str:
    body = [f"<h2>{_escape(chapter_title)}</h2>"]
    for paragraph in re.split(r"\n\n+", normalize_newlines(text)):
        paragraph = paragraph.strip()
        if paragraph:
            body.append(f"    <p>{_escape(paragraph)}</p>")
    content = "\n".join(body)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" xml:lang="{_escape(language)}">
<head>
  <title>{_escape(chapter_title)}</title>
  <link rel="stylesheet" type="text/css" href="../css/style.css" />
</head>
<body>
  <section epub:type="chapter">
{content}
  </section>
</body>
</html>"""


def _cover_xhtml(image_name: str, language: str) -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" xml:lang="{_escape(language)}">
<head>
  <title>Cover</title>
  <link rel="stylesheet" type="text/css" href="../css/style.css" />
</head>
<body>
  <section epub:type="cover" class="cover">
    <img src="../images/{image_name}" alt="Cover Image"/>
  </section>
</body>
</html>"""


def _chapter_filenames(chapters: Sequence[ChapterText]) -> list[str]:
    used: set[str] = set()
    names: list[str] = []
    for index, chapter in enumerate(chapters, start=1):
        stem = sanitize_xml_name(chapter.source or chapter.title) or f"chapter_{index}"
        candidate = stem
        suffix = 1
        while candidate in used:
            suffix += 1
            candidate = f"{stem}_{suffix}"
        used.add(candidate)
        names.append(f"{candidate}.xhtml")
    return names


def build_epub(
    chapters: Sequence[ChapterText],
    metadata: EpubMetadata | None = None,
    cover: CoverImage | None = None,
) -> bytes:
    """
    Assemble an EPUB 3 book (with an EPUB 2 NCX) from chapter texts.

    ``ChapterText.source`` names the chapter's XHTML file when set, otherwise
    the title does.
    """
    if not chapters:
        raise ArchiveError("No chapters to package into an EPUB.")
    metadata = metadata or EpubMetadata()
    language = metadata.language or "en"
    filenames = _chapter_filenames(chapters)

    manifest = [
        '<item id="css" href="css/style.css" media-type="text/css"/>',
        '<item id="nav" href="nav.xhtml" media-type="application/xhtml+xml" properties="nav"/>',
    ]
    spine: list[str] = []
    nav_items: list[str] = []
    nav_points: list[str] = []

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        # mimetype must come first and stay uncompressed.
        zf.writestr("mimetype", EPUB_MIMETYPE, compress_type=zipfile.ZIP_STORED)
        zf.writestr("META-INF/container.xml", CONTAINER_XML)
        zf.writestr("OEBPS/css/style.css", STYLE_CSS)

        cover_meta = ""
        landmarks_cover = ""
        if cover is not None:
            ext = PurePosixPath(cover.path).suffix.lower().lstrip(".") or "png"
            image_name = f"cover.{ext}"
            media_type = cover.media_type or ("image/jpeg" if ext in ("jpg", "jpeg") else "image/png")
            zf.writestr(f"OEBPS/images/{image_name}", cover.data)
            zf.writestr("OEBPS/text/cover.xhtml", _cover_xhtml(image_name, language))
            manifest.append(
                f'<item id="cover-image" href="images/{image_name}" media-type="{media_type}" properties="cover-image"/>'
            )
            manifest.append('<item id="cover-page" href="text/cover.xhtml" media-type="application/xhtml+xml"/>')
            spine.append('<itemref idref="cover-page" linear="no"/>')
            cover_meta = '<meta name="cover" content="cover-image"/>'
            landmarks_cover = '<li><a epub:type="cover" href="text/cover.xhtml">Cover</a></li>'

        for order, (chapter, filename) in enumerate(zip(chapters, filenames), start=1):
            zf.writestr(f"OEBPS/text/{filename}", text_to_xhtml(chapter.text, chapter.title, language))
            item_id = f"chapter-{order}"
            manifest.append(f'<item id="{item_id}" href="text/{filename}" media-type="application/xhtml+xml"/>')
            spine.append(f'<itemref idref="{item_id}" linear="yes"/>')
            nav_items.append(f'<li><a href="text/{filename}">{_escape(chapter.title)}</a></li>')
            nav_points.append(
                f"""<navPoint id="navpoint-{order}" playOrder="{order}">
      <navLabel><text>{_escape(chapter.title)}</text></navLabel>
      <content src="text/{filename}"/>
    </navPoint>"""
            )

        nav_joined = "\n      ".join(nav_items)
        nav_xhtml = f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops" xml:lang="{_escape(language)}">
<head>
  <title>Table of Contents</title>
  <link rel="stylesheet" type="text/css" href="css/style.css"/>
</head>
<body>
  <nav epub:type="toc" id="toc">
    <h1>Table of Contents</h1>
    <ol>
      {nav_joined}
    </ol>
  </nav>
  <nav epub:type="landmarks" hidden="hidden">
    <ol>
      {landmarks_cover}
      <li><a epub:type="toc" href="nav.xhtml">Table of Contents</a></li>
      <li><a epub:type="bodymatter" href="text/{filenames[0]}">Start Reading</a></li>
    </ol>
  </nav>
</body>
</html>"""
        zf.writestr("OEBPS/nav.xhtml", nav_xhtml)

        points_joined = "\n    ".join(nav_points)
        ncx = f"""<?xml version="1.0" encoding="UTF-8"?>
<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">
  <head>
    <meta name="dtb:uid" content="{_escape(metadata.identifier)}"/>
    <meta name="dtb:depth" content="1"/>
    <meta name="dtb:totalPageCount" content="0"/>
    <meta name="dtb:maxPageNumber" content="0"/>
  </head>
  <docTitle><text>{_escape(metadata.title)}</text></docTitle>
  <navMap>
    {points_joined}
  </navMap>
</ncx>"""
        zf.writestr("OEBPS/toc.ncx", ncx)
        manifest.append('<item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>')

        modified = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        manifest_joined = "\n    ".join(manifest)
        spine_joined = "\n    ".join(spine)
        opf = f"""<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" unique-identifier="BookId" version="3.0">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
    <dc:identifier id="BookId">{_escape(metadata.identifier)}</dc:identifier>
    <dc:title>{_escape(metadata.title)}</dc:title>
    <dc:language>{_escape(language)}</dc:language>
    <dc:creator id="creator">{_escape(metadata.author)}</dc:creator>
    <meta property="dcterms:modified">{modified}</meta>
    {cover_meta}
  </metadata>
  <manifest>
    {manifest_joined}
  </manifest>
  <spine toc="ncx">
    {spine_joined}
  </spine>
</package>"""
        zf.writestr("OEBPS/content.opf", opf)
    return buffer.getvalue()
