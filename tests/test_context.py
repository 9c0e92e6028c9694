from __future__ import annotations

import json
from pathlib import Path

import pytest

from opencode_headless.context import (
    Diagnostic,
    FileInfo,
    ImageAttachment,
    PromptContext,
    Selection,
    dedent_block,
    display_path,
    format_parts,
    markdown_language,
    normalize_contexts,
    normalize_file,
)


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    return Path.cwd()


def test_prompt_only_yields_single_text_part() -> None:
    assert format_parts("hello") == [{"type": "text", "text": "hello"}]
    assert format_parts("hello", PromptContext()) == [{"type": "text", "text": "hello"}]


def test_normalize_file_does_not_mutate_input(workspace: Path) -> None:
    info = FileInfo(path=str(workspace / "src" / "app.py"))

    normalized = normalize_file(info)

    assert normalized.name == "app.py"
    assert normalized.extension == "py"
    assert info.name is None

    from_str = normalize_file("notes.md")
    assert from_str.path == str(workspace / "notes.md")
    assert from_str.extension == "md"


def test_normalize_contexts_prefers_list() -> None:
    first, second = PromptContext(subagents=["a"]), PromptContext(subagents=["b"])

    assert normalize_contexts(first, [second]) == [second]
    assert normalize_contexts(first) == [first]
    assert normalize_contexts() == []


def test_display_path_relative_to_cwd(workspace: Path) -> None:
    assert display_path(str(workspace / "src" / "app.py")) == str(Path("src") / "app.py")


def test_mentioned_file_gets_source_span(workspace: Path) -> None:
    prompt = "explain @src/app.py please"
    parts = format_parts(prompt, PromptContext(mentioned_files=["src/app.py"]))

    assert len(parts) == 2
    file_part = parts[1]
    assert file_part["type"] == "file"
    assert file_part["filename"] == "src/app.py"
    assert file_part["mime"] == "text/plain"
    assert file_part["url"] == f"file://{workspace / 'src' / 'app.py'}"
    assert file_part["source"]["text"] == {"start": 8, "value": "@src/app.py", "end": 19}


def test_files_are_deduplicated_across_contexts(workspace: Path) -> None:
    contexts = [
        PromptContext(current_file="main.py", mentioned_files=["util.py", "main.py"]),
        PromptContext(mentioned_files=["util.py"], current_file="main.py"),
    ]

    parts = format_parts("go", contexts=contexts)
    filenames = [part["filename"] for part in parts if part["type"] == "file"]

    assert filenames == ["util.py", "main.py"]


def test_current_file_part_has_no_source(workspace: Path) -> None:
    parts = format_parts("mention @main.py", PromptContext(current_file="main.py"))

    assert parts[1]["filename"] == "main.py"
    assert "source" not in parts[1]


def test_selection_uses_current_file_language_and_dedent(workspace: Path) -> None:
    context = PromptContext(
        current_file="lib.rs",
        selections=[Selection(content="    fn main() {\n        run();\n    }", lines="3-5")],
    )

    parts = format_parts("why?", context)
    selection = parts[1]
    payload = json.loads(selection["text"])

    assert selection["synthetic"] is True
    assert payload["context_type"] == "selection"
    assert payload["lines"] == "3-5"
    assert payload["file"]["name"] == "lib.rs"
    assert payload["content"] == "`````rust\nfn main() {\n    run();\n}\n`````"
    assert parts[2]["filename"] == "lib.rs"


def test_diagnostics_are_compacted() -> None:
    context = PromptContext(
        diagnostics=[
            Diagnostic(message="unused   variable\n  'x'", severity=2, lnum=4, col=0),
            Diagnostic(message="missing import"),
        ]
    )

    payload = json.loads(format_parts("fix", context)[1]["text"])

    assert payload == {
        "context_type": "diagnostics",
        "content": [
            {"msg": "unused variable 'x'", "severity": 2, "pos": "l5:c1"},
            {"msg": "missing import", "severity": None, "pos": "l1:c1"},
        ],
    }


def test_subagent_part_records_mention_span() -> None:
    parts = format_parts("ask @reviewer now", PromptContext(subagents=["reviewer", "absent"]))

    assert parts[1] == {
        "type": "agent",
        "name": "reviewer",
        "source": {"value": "@reviewer", "start": 4, "end": 13},
    }
    assert parts[2]["source"]["start"] == 0


def test_images_become_data_urls() -> None:
    context = PromptContext(
        images=[ImageAttachment(data="AAAA", format="JPG"), ImageAttachment(data="BBBB")]
    )

    images = format_parts("look", context)[1:]

    assert images[0] == {
        "type": "file",
        "filename": "image_1.jpg",
        "mime": "image/jpeg",
        "url": "data:image/jpeg;base64,AAAA",
    }
    assert images[1]["filename"] == "image_2.png"


def test_part_order_within_context(workspace: Path) -> None:
    context = PromptContext(
        current_file="main.py",
        mentioned_files=["other.py"],
        selections=[Selection(content="x = 1")],
        subagents=["helper"],
        diagnostics=[Diagnostic(message="oops")],
        images=[ImageAttachment(data="AA")],
    )

    kinds = []
    for part in format_parts("@other.py @helper", context):
        if part["type"] == "text" and part.get("synthetic"):
            kinds.append(json.loads(part["text"])["context_type"])
        else:
            kinds.append(part.get("filename") or part.get("name") or part["type"])

    assert kinds == ["text", "other.py", "selection", "helper", "main.py", "diagnostics", "image_1.png"]


def test_helpers() -> None:
    assert dedent_block("  a\n\n    b") == "a\n\n  b"
    assert dedent_block("a\n  b") == "a\n  b"
    assert dedent_block("") == ""
    assert markdown_language("x.PY") == "python"
    assert markdown_language("Makefile") == ""
