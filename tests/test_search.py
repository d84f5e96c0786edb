from __future__ import annotations

import pytest

from novelist.backup import BackupDocument, Revision, Scene, get_blocks, set_blocks, spacer_block, text_block
from novelist.errors import InvalidPatternError, NoActiveMatchError
from novelist.search import (
    Cursor,
    CursorState,
    FindReplaceSession,
    LiteralMatcher,
    PatternMatcher,
    line_containing,
)


def _document(*scenes: list[str] | str) -> BackupDocument:
    """Each argument is a scene: a list of block texts, or raw stored text for a broken scene."""
    built: list[Scene] = []
    for index, blocks in enumerate(scenes, start=1):
        scene = Scene(code=f"scene{index}", title=f"Chapter {index}", ranking=index)
        if isinstance(blocks, str):
            scene.text = blocks
        else:
            set_blocks(scene, [text_block(text) for text in blocks])
        built.append(scene)
    return BackupDocument(title="Search", revisions=[Revision(scenes=built)])


def _block_text(document: BackupDocument, scene_index: int, block_index: int = 0) -> str | None:
    blocks, _ = get_blocks(document.scenes[scene_index])
    return blocks[block_index].text


def test_literal_matcher_spans() -> None:
    matcher = LiteralMatcher("ab")
    assert matcher.find_from("xxabab", 0).start == 2
    assert matcher.find_from("xxabab", 3).start == 4
    assert matcher.find_from("xxabab", 5) is None
    assert [span.start for span in matcher.find_all_before("ababab", 4)] == [0, 2]
    assert matcher.replace_all("ababx", "c") == ("ccx", 2)


def test_pattern_matcher_spans_and_errors() -> None:
    matcher = PatternMatcher(r"\d+")
    span = matcher.find_from("a12b345", 3)
    assert (span.start, span.length) == (4, 3)
    assert [s.start for s in matcher.find_all_before("1 22 333", 5)] == [0, 2]
    with pytest.raises(InvalidPatternError):
        PatternMatcher("(unclosed")


def test_literal_backward_search_sees_overlapping_occurrences() -> None:
    assert [span.start for span in LiteralMatcher("aa").find_all_before("aaa", 3)] == [0, 1]

    session = FindReplaceSession(_document(["aaa"]))
    assert session.find_previous("aa").match.match_start == 1
    assert session.find_previous("aa").match.match_start == 0

    session = FindReplaceSession(_document(["aaa"]))
    session.find_next("a")
    forward = session.find_next("aa").match
    assert forward.match_start == 1
    assert session.find_previous("aa").match == forward


def test_regex_backward_search_lists_matches_from_block_start() -> None:
    assert [span.start for span in PatternMatcher("aa").find_all_before("aaa", 3)] == [0]
    session = FindReplaceSession(_document(["x 333"]))
    assert session.find_previous(r"\d+", True).match.matched_text == "333"


def test_line_containing() -> None:
    text = "first line\nsecond cat line\nthird"
    assert line_containing(text, text.index("cat")) == "second cat line"
    assert line_containing(text, 0) == "first line"
    assert line_containing(text, len(text) - 1) == "third"


def test_find_next_walks_scenes_then_exhausts() -> None:
    document = _document(["cat"], ["cat"], ["cat"])
    session = FindReplaceSession(document)

    for expected in range(3):
        result = session.find_next("cat")
        assert result.found
        assert result.match.scene_index == expected
        assert result.match.block_index == 0
        assert result.match.match_start == 0
        assert result.match.match_length == 3
        assert result.match.chapter_title == f"Chapter {expected + 1}"

    result = session.find_next("cat")
    assert not result.found
    assert session.state is CursorState.EXHAUSTED_FORWARD
    assert session.cursor.scene_index == 3


def test_find_next_without_occurrences_exhausts_forward() -> None:
    document = _document(["a dog"], [], ["another dog", ""])
    session = FindReplaceSession(document)
    result = session.find_next("cat")
    assert result.match is None
    assert result.error is None
    assert session.state is CursorState.EXHAUSTED_FORWARD


def test_find_next_stays_exhausted_until_rewind() -> None:
    session = FindReplaceSession(_document(["cat"]))
    assert session.find_next("cat").found
    assert not session.find_next("cat").found
    assert not session.find_next("cat").found
    session.rewind()
    assert session.find_next("cat").found


def test_find_next_then_previous_returns_same_match() -> None:
    session = FindReplaceSession(_document(["a cat and a cat"], ["cat"]))
    first = session.find_next("cat").match
    back = session.find_previous("cat").match
    assert back == first

    session.rewind()
    session.find_next("cat")
    second = session.find_next("cat").match
    assert second.match_start == 12
    assert session.find_previous("cat").match == second


def test_find_next_then_previous_symmetric_for_regex() -> None:
    session = FindReplaceSession(_document(["c1t c22t", "xc333t"]))
    forward = [session.find_next(r"c\d+t", True).match for _ in range(3)]
    assert [m.match_start for m in forward] == [0, 4, 1]
    assert session.find_previous(r"c\d+t", True).match == forward[-1]


def test_find_previous_from_origin_starts_at_document_end() -> None:
    session = FindReplaceSession(_document(["cat one"], ["two cat"]))
    first = session.find_previous("cat")
    assert first.match.scene_index == 1
    assert first.match.match_start == 4
    second = session.find_previous("cat")
    assert second.match.scene_index == 0
    third = session.find_previous("cat")
    assert not third.found
    assert session.state is CursorState.EXHAUSTED_BACKWARD
    assert session.cursor.scene_index == -1


def test_find_previous_takes_last_match_before_cursor() -> None:
    session = FindReplaceSession(_document(["cat cot cut"]))
    result = session.find_previous(r"c\wt", True)
    assert result.match.match_start == 8
    assert result.match.matched_text == "cut"
    assert session.find_previous(r"c\wt", True).match.matched_text == "cot"
    assert session.find_previous(r"c\wt", True).match.matched_text == "cat"


def test_find_next_after_backward_exhaustion_restarts_at_origin() -> None:
    session = FindReplaceSession(_document(["cat"]))
    session.find_previous("cat")
    session.find_previous("cat")
    assert session.state is CursorState.EXHAUSTED_BACKWARD
    assert session.find_next("cat").match.scene_index == 0


def test_match_line_text_is_the_line_holding_the_match() -> None:
    session = FindReplaceSession(_document(["opening line\nthe cat sat\nclosing"]))
    match = session.find_next("cat").match
    assert match.match_line_text == "the cat sat"


def test_search_skips_broken_scene_with_warning() -> None:
    session = FindReplaceSession(_document(["cat"], "{not json", ["cat"]))
    first = session.find_next("cat")
    assert first.match.scene_index == 0
    assert first.warnings == []
    second = session.find_next("cat")
    assert second.match.scene_index == 2
    assert [warning.scene_index for warning in second.warnings] == [1]
    assert second.warnings[0].scene_title == "Chapter 2"


def test_invalid_regex_reports_error_without_moving() -> None:
    session = FindReplaceSession(_document(["cat"]))
    session.find_next("cat")
    held = session.match
    cursor = Cursor(**session.cursor.as_payload())
    result = session.find_next("(", True)
    assert not result.found
    assert isinstance(result.error, InvalidPatternError)
    assert result.error.kind == "invalid_pattern"
    assert session.cursor == cursor
    assert session.match == held


def test_empty_literal_pattern_is_a_no_op() -> None:
    session = FindReplaceSession(_document(["cat"]))
    result = session.find_next("")
    assert not result.found and result.error is None
    assert session.cursor == Cursor()
    assert session.replace_all("", "dog").count == 0
    assert _block_text(session.document, 0) == "cat"


def test_zero_length_regex_match_still_advances() -> None:
    session = FindReplaceSession(_document(["ab", "cd"]))
    first = session.find_next("^", True)
    assert (first.match.block_index, first.match.match_start, first.match.match_length) == (0, 0, 0)
    second = session.find_next("^", True)
    assert (second.match.block_index, second.match.match_start) == (1, 0)
    assert not session.find_next("^", True).found


def test_replace_current_requires_a_match() -> None:
    session = FindReplaceSession(_document(["cat"]))
    with pytest.raises(NoActiveMatchError):
        session.replace_current("dog")


def test_replace_current_then_find_next_continues_after_insert() -> None:
    document = _document(["cat cat"])
    session = FindReplaceSession(document)
    session.find_next("cat")
    replaced = session.replace_current("a cat")
    assert replaced.match_start == 0
    assert _block_text(document, 0) == "a cat cat"
    assert session.match is None
    assert session.cursor == Cursor(0, 0, 5)

    following = session.find_next("cat")
    assert following.match.match_start == 6
    assert document.last_update_date > 0


def test_replace_current_detects_stale_match() -> None:
    document = _document(["cat"])
    session = FindReplaceSession(document)
    session.find_next("cat")
    set_blocks(document.scenes[0], [text_block("dog")])
    with pytest.raises(NoActiveMatchError):
        session.replace_current("cow")
    assert _block_text(document, 0) == "dog"


def test_replace_all_literal_then_find_next_finds_nothing() -> None:
    document = _document(["the cat sat on the cat mat"], ["no match"], ["cat"])
    session = FindReplaceSession(document)
    session.find_next("cat")
    result = session.replace_all("cat", "dog")
    assert result.count == 3
    assert _block_text(document, 0) == "the dog sat on the dog mat"
    assert _block_text(document, 1) == "no match"
    assert session.cursor == Cursor()
    assert session.match is None
    assert not session.find_next("cat").found


def test_replace_all_regex_expands_group_references() -> None:
    document = _document(["alice@home bob@work"])
    session = FindReplaceSession(document)
    result = session.replace_all(r"(\w+)@(\w+)", r"\2 of \1", True)
    assert result.count == 2
    assert _block_text(document, 0) == "home of alice work of bob"


def test_replace_all_invalid_pattern_or_template_leaves_document_alone() -> None:
    document = _document(["cat"])
    before = document.scenes[0].text
    session = FindReplaceSession(document)
    with pytest.raises(InvalidPatternError):
        session.replace_all("(", "x", True)
    with pytest.raises(InvalidPatternError):
        session.replace_all("(c)at", r"\2", True)
    assert document.scenes[0].text == before
    assert document.last_update_date == 0


def test_regex_replacement_backslashes_follow_template_rules() -> None:
    document = _document(["path: dir"])
    session = FindReplaceSession(document)
    with pytest.raises(InvalidPatternError, match="literal backslash"):
        session.replace_all("dir", r"C:\dir", True)
    assert _block_text(document, 0) == "path: dir"

    assert session.replace_all("dir", r"C:\\dir", True).count == 1
    assert _block_text(document, 0) == r"path: C:\dir"

    session.find_next("C:")
    session.replace_current(r"D:\x")
    assert _block_text(document, 0) == r"path: D:\x\dir"


def test_replace_all_keeps_spacers_and_skips_broken_scenes() -> None:
    document = _document(["cat"], "{broken")
    set_blocks(document.scenes[0], [text_block("cat"), spacer_block()])
    session = FindReplaceSession(document)
    result = session.replace_all("cat", "dog")
    assert result.count == 1
    assert [warning.scene_index for warning in result.warnings] == [1]
    blocks, _ = get_blocks(document.scenes[0])
    assert blocks[0].text == "dog"
    assert blocks[1].text is None
    assert document.scenes[1].text == "{broken"


def test_load_replaces_document_and_rewinds() -> None:
    session = FindReplaceSession(_document(["cat"]))
    session.find_next("cat")
    session.load(_document(["dog"], ["cat"]))
    assert session.cursor == Cursor()
    assert session.match is None
    assert session.find_next("cat").match.scene_index == 1
