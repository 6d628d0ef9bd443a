import pytest

from pair_agent.models.diff import MatchKind
from pair_agent.models.modification import CreateOp, DeleteOp, ModifyOp
from pair_agent.services.response_processor import ResponseProcessor, parse_search_replace

from conftest import InMemoryFileSystem


@pytest.fixture
def processor():
    return ResponseProcessor()


# ============================================================
# Directive extraction
# ============================================================


def test_whole_file_modify_from_plain_block(processor):
    result = processor.process("Modify `src/app.rs`:\n\n```\nfn x(){}\n```")
    assert result.modifications == [ModifyOp(path="src/app.rs", search=None, replace="fn x(){}\n")]


def test_create_takes_language_tagged_block(processor):
    text = "I'll create a new file `pkg/util.py`:\n\n```python\ndef helper():\n    return 1\n```\n"
    assert processor.process(text).modifications == [
        CreateOp(path="pkg/util.py", content="def helper():\n    return 1\n")
    ]


def test_delete_needs_no_block(processor):
    assert processor.process("You can delete `old/legacy.py` now.").modifications == [DeleteOp(path="old/legacy.py")]


def test_search_replace_block_yields_targeted_modify(processor):
    text = (
        "Update `src/app.py`:\n"
        "```\n"
        "<<<<<<< SEARCH\n"
        "    print('hi')\n"
        "=======\n"
        "    print('hello')\n"
        ">>>>>>> REPLACE\n"
        "```\n"
    )
    assert processor.process(text).modifications == [
        ModifyOp(path="src/app.py", search="    print('hi')\n", replace="    print('hello')\n")
    ]


def test_empty_search_section_means_whole_file():
    assert parse_search_replace("<<<<<<< SEARCH\n=======\nnew\n>>>>>>> REPLACE\n") == [("", "new\n")]
    processor = ResponseProcessor()
    text = "Edit `a.py`:\n```\n<<<<<<< SEARCH\n=======\nnew\n>>>>>>> REPLACE\n```"
    assert processor.process(text).modifications == [ModifyOp(path="a.py", search=None, replace="new\n")]


def test_directives_keep_document_order(processor):
    text = (
        "First, delete `a.py`.\n"
        "Then create `b.py`:\n```\nB\n```\n"
        "Finally modify `c.py`:\n```\nC\n```\n"
    )
    kinds = [(op.kind, op.path) for op in processor.process(text).modifications]
    assert kinds == [("delete", "a.py"), ("create", "b.py"), ("modify", "c.py")]


def test_block_beyond_lookahead_is_ignored():
    processor = ResponseProcessor(lookahead_chars=50)
    text = "Modify `a.py`:\n" + "Some explanation. " * 10 + "\n```\ncode\n```\n"
    assert processor.process(text).modifications == []


def test_block_after_next_directive_is_not_borrowed(processor):
    text = "Modify `a.py` as discussed, and create `b.py`:\n```\nB\n```\n"
    assert processor.process(text).modifications == [CreateOp(path="b.py", content="B\n")]


def test_mentions_without_path_or_inside_code_are_ignored(processor):
    text = "We should update `config` later.\n```\n# modify `x.py` here\n```\n"
    assert processor.process(text).modifications == []


# ============================================================
# Suggestions, key points, thinking
# ============================================================


def test_suggestions_capped_and_deduplicated():
    processor = ResponseProcessor(suggestion_cap=2)
    text = (
        "I recommend pinning versions. I recommend pinning versions.\n"
        "Following best practices keeps builds stable.\n"
        "See also the packaging guide for reference.\n"
    )
    assert processor.process(text).suggestions == [
        "I recommend pinning versions.",
        "Following best practices keeps builds stable.",
    ]


def test_suggestions_skip_code_blocks(processor):
    text = "```\n# we recommend this inside code\n```\nNothing else here."
    assert processor.process(text).suggestions == []


def test_key_points_from_lists(processor):
    text = "Summary:\n- first point\n* second point\n1. third point\n"
    assert processor.process(text).key_points == ["first point", "second point", "third point"]


def test_thinking_is_extracted_and_removed(processor):
    result = processor.process("<thinking>plan it</thinking>\nThe answer is 4.")
    assert result.thinking == "plan it"
    assert result.content == "The answer is 4."


# ============================================================
# Planning against the filesystem
# ============================================================


def test_plan_exact_modify(processor):
    fs = InMemoryFileSystem({"a.py": "x = 1\ny = 2\n"})
    [change] = processor.plan_changes([ModifyOp(path="a.py", search="y = 2", replace="y = 3")], fs)
    assert change.resolved
    assert change.diff.new_content == "x = 1\ny = 3\n"
    assert change.diff.confidence.kind is MatchKind.EXACT


def test_plan_reports_missing_search_text(processor):
    fs = InMemoryFileSystem({"a.py": "x = 1\n"})
    [change] = processor.plan_changes(
        [ModifyOp(path="a.py", search="class Totally:\n    unrelated = True", replace="")], fs
    )
    assert not change.resolved
    assert "search text not found" in change.unresolved_reason


def test_plan_missing_file_is_unresolved(processor):
    fs = InMemoryFileSystem()
    changes = processor.plan_changes([ModifyOp(path="nope.py", replace="x"), DeleteOp(path="nope.py")], fs)
    assert [c.unresolved_reason for c in changes] == ["file not found", "file not found"]


def test_plan_create_over_existing_file_shows_full_diff(processor):
    fs = InMemoryFileSystem({"a.py": "old\n"})
    [change] = processor.plan_changes([CreateOp(path="a.py", content="new\n")], fs)
    assert change.diff.old_content == "old\n"
    assert "-old" in change.diff.unified_diff


def test_plan_sequential_edits_of_one_path(processor):
    fs = InMemoryFileSystem({"a.py": "a = 1\nb = 2\n"})
    changes = processor.plan_changes(
        [
            ModifyOp(path="a.py", search="a = 1", replace="a = 10"),
            ModifyOp(path="a.py", search="b = 2", replace="b = 20"),
        ],
        fs,
    )
    assert changes[1].diff.old_content == "a = 10\nb = 2\n"
    assert changes[1].diff.new_content == "a = 10\nb = 20\n"
    # planning never touches the filesystem
    assert fs.files["a.py"] == "a = 1\nb = 2\n"
    assert fs.writes == []
