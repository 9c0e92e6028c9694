"""Format a prompt plus editor context into message parts."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
}

LANGUAGES = {
    "lua": "lua",
    "py": "python",
    "js": "javascript",
    "ts": "typescript",
    "tsx": "tsx",
    "jsx": "jsx",
    "rb": "ruby",
    "go": "go",
    "rs": "rust",
    "c": "c",
    "cpp": "cpp",
    "h": "c",
    "hpp": "cpp",
    "java": "java",
    "kt": "kotlin",
    "swift": "swift",
    "sh": "bash",
    "bash": "bash",
    "zsh": "zsh",
    "fish": "fish",
    "ps1": "powershell",
    "sql": "sql",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "xml": "xml",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "less": "less",
    "md": "markdown",
    "vim": "vim",
    "el": "elisp",
    "clj": "clojure",
    "ex": "elixir",
    "exs": "elixir",
    "erl": "erlang",
    "hs": "haskell",
    "ml": "ocaml",
    "fs": "fsharp",
    "r": "r",
    "jl": "julia",
    "php": "php",
    "pl": "perl",
    "scala": "scala",
    "dart": "dart",
    "zig": "zig",
    "nim": "nim",
    "v": "v",
    "vue": "vue",
    "svelte": "svelte",
}


class FileInfo(BaseModel):
    path: str
    name: str | None = None
    extension: str | None = None


class Selection(BaseModel):
    content: str
    file: str | FileInfo | None = None
    lines: str | None = None


class Diagnostic(BaseModel):
    message: str
    severity: int | None = None
    lnum: int | None = None
    col: int | None = None


class ImageAttachment(BaseModel):
    data: str = Field(..., description="Base64 encoded image bytes")
    format: str = "png"


class PromptContext(BaseModel):
    current_file: str | FileInfo | None = None
    mentioned_files: list[str] = Field(default_factory=list)
    selections: list[Selection] = Field(default_factory=list)
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    subagents: list[str] = Field(default_factory=list)
    images: list[ImageAttachment] = Field(default_factory=list)


def normalize_file(file: str | FileInfo) -> FileInfo:
    """Absolute path with name and extension filled in; the input is not mutated."""

    if isinstance(file, str):
        path = Path(file).expanduser().absolute()
        return FileInfo(path=str(path), name=path.name, extension=path.suffix.lstrip("."))
    path = Path(file.path)
    return FileInfo(
        path=file.path,
        name=file.name or path.name,
        extension=file.extension if file.extension is not None else path.suffix.lstrip("."),
    )


def normalize_contexts(
    context: PromptContext | None = None,
    contexts: Sequence[PromptContext] | None = None,
) -> list[PromptContext]:
    if contexts:
        return list(contexts)
    if context is not None:
        return [context]
    return []


def display_path(path: str) -> str:
    """Path relative to the working directory, else with ``~`` for the home directory."""

    resolved = Path(path)
    try:
        return str(resolved.relative_to(Path.cwd()))
    except ValueError:
        pass
    try:
        return str(Path("~") / resolved.relative_to(Path.home()))
    except (ValueError, RuntimeError):
        return str(resolved)


def dedent_block(content: str) -> str:
    """Strip the common leading whitespace of non-blank lines."""

    if not content:
        return content
    lines = content.split("\n")
    indents = [len(line) - len(line.lstrip()) for line in lines if line.strip()]
    if not indents:
        return content
    shift = min(indents)
    if shift == 0:
        return content
    return "\n".join(line[shift:] if line.strip() else line for line in lines)


def markdown_language(filename: str) -> str:
    return LANGUAGES.get(Path(filename).suffix.lstrip(".").lower(), "")


def format_file_part(file: FileInfo, prompt: str | None = None) -> dict[str, Any]:
    rel_path = display_path(file.path)
    mention = f"@{rel_path}"
    part: dict[str, Any] = {
        "type": "file",
        "filename": rel_path,
        "mime": MIME_TYPES.get((file.extension or "").lower(), "text/plain"),
        "url": f"file://{file.path}",
    }
    position = prompt.find(mention) if prompt else -1
    if position >= 0:
        part["source"] = {
            "path": file.path,
            "type": "file",
            "text": {"start": position, "value": mention, "end": position + len(mention)},
        }
    return part


def format_selection_part(selection: Selection) -> dict[str, Any]:
    file = selection.file if isinstance(selection.file, FileInfo) else None
    lang = markdown_language(file.name or "") if file is not None else ""
    payload = {
        "context_type": "selection",
        "file": file.model_dump() if file is not None else None,
        "content": f"`````{lang}\n{dedent_block(selection.content)}\n`````",
        "lines": selection.lines,
    }
    return {"type": "text", "text": json.dumps(payload), "synthetic": True}


def format_diagnostics_part(diagnostics: Sequence[Diagnostic]) -> dict[str, Any]:
    entries = [
        {
            "msg": re.sub(r"\s+", " ", diag.message).strip(),
            "severity": diag.severity,
            "pos": f"l{(diag.lnum or 0) + 1}:c{(diag.col or 0) + 1}",
        }
        for diag in diagnostics
    ]
    payload = {"context_type": "diagnostics", "content": entries}
    return {"type": "text", "text": json.dumps(payload), "synthetic": True}


def format_subagent_part(agent: str, prompt: str) -> dict[str, Any]:
    mention = f"@{agent}"
    position = max(prompt.find(mention), 0)
    return {
        "type": "agent",
        "name": agent,
        "source": {"value": mention, "start": position, "end": position + len(mention)},
    }


def format_image_part(image: ImageAttachment, index: int = 1) -> dict[str, Any]:
    fmt = image.format.lower()
    mime = MIME_TYPES.get(fmt, "image/png")
    return {
        "type": "file",
        "filename": f"image_{index}.{fmt}",
        "mime": mime,
        "url": f"data:{mime};base64,{image.data}",
    }


def format_parts(
    prompt: str,
    context: PromptContext | None = None,
    contexts: Sequence[PromptContext] | None = None,
) -> list[dict[str, Any]]:
    """Build the message parts for ``prompt``; the prompt text always comes first."""

    parts: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    added: set[str] = set()

    for ctx in normalize_contexts(context, contexts):
        current = normalize_file(ctx.current_file) if ctx.current_file is not None else None

        for mentioned in ctx.mentioned_files:
            file = normalize_file(mentioned)
            if file.path in added or (current is not None and file.path == current.path):
                continue
            parts.append(format_file_part(file, prompt))
            added.add(file.path)

        for selection in ctx.selections:
            if selection.file is not None:
                selection = selection.model_copy(update={"file": normalize_file(selection.file)})
            elif current is not None:
                selection = selection.model_copy(update={"file": current})
            parts.append(format_selection_part(selection))

        for agent in ctx.subagents:
            parts.append(format_subagent_part(agent, prompt))

        if current is not None and current.path not in added:
            parts.append(format_file_part(current))
            added.add(current.path)

        if ctx.diagnostics:
            parts.append(format_diagnostics_part(ctx.diagnostics))

        for index, image in enumerate(ctx.images, start=1):
            parts.append(format_image_part(image, index))

    return parts


__all__ = [
    "Diagnostic",
    "FileInfo",
    "ImageAttachment",
    "PromptContext",
    "Selection",
    "format_parts",
    "normalize_contexts",
    "normalize_file",
]
