"""Derive file operations from successful tool calls."""
from __future__ import annotations

from pathlib import PurePath
from typing import Any

from agent_telemetry.models import FileOperation

# Lower-cased tool name -> operation type. Batch and patch variants collapse to edits.
_OPERATION_BY_TOOL: dict[str, str] = {
    "read": "read",
    "write": "write",
    "edit": "edit",
    "glob": "glob",
    "grep": "grep",
    "multiedit": "edit",
    "apply_patch": "edit",
    "delete": "delete",
}

_LANGUAGE_BY_EXTENSION: dict[str, str] = {
    "py": "python",
    "pyi": "python",
    "js": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "kt": "kotlin",
    "scala": "scala",
    "rb": "ruby",
    "php": "php",
    "c": "c",
    "h": "c",
    "cc": "cpp",
    "cpp": "cpp",
    "hpp": "cpp",
    "cs": "csharp",
    "swift": "swift",
    "sh": "shell",
    "bash": "shell",
    "zsh": "shell",
    "sql": "sql",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "md": "markdown",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "xml": "xml",
    "tf": "terraform",
}

_PATH_INPUT_KEYS = ("file_path", "filePath", "path")


def extract_format(path: str) -> str | None:
    suffix = PurePath(path).suffix
    return suffix[1:].lower() if suffix else None


def detect_language(path: str) -> str | None:
    name = PurePath(path).name
    if name == "Dockerfile":
        return "dockerfile"
    if name == "Makefile":
        return "makefile"
    fmt = extract_format(path)
    return _LANGUAGE_BY_EXTENSION.get(fmt or "")


def _first_str(mapping: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _count_lines(content: Any) -> int | None:
    if not isinstance(content, str) or not content:
        return None
    return len(content.split("\n"))


def _patch_line_counts(structured_patch: Any) -> tuple[int, int]:
    added = removed = 0
    if not isinstance(structured_patch, list):
        return added, removed
    for hunk in structured_patch:
        lines = hunk.get("lines") if isinstance(hunk, dict) else None
        if not isinstance(lines, list):
            continue
        for line in lines:
            if not isinstance(line, str):
                continue
            if line.startswith("+"):
                added += 1
            elif line.startswith("-"):
                removed += 1
    return added, removed


def _with_path(op_type: str, path: str, **extra: Any) -> FileOperation:
    return FileOperation(type=op_type, path=path, format=extract_format(path), language=detect_language(path), **extra)


def extract_file_operations(
    tool_name: str,
    tool_input: dict[str, Any] | None,
    result_metadata: Any = None,
) -> list[FileOperation]:
    """Map one successful tool call onto zero or more file operations."""
    key = (tool_name or "").lower()
    op_type = _OPERATION_BY_TOOL.get(key)
    if not op_type:
        return []
    tool_input = tool_input if isinstance(tool_input, dict) else {}
    result = result_metadata if isinstance(result_metadata, dict) else {}

    if key == "apply_patch":
        operations: list[FileOperation] = []
        files = result.get("files")
        if isinstance(files, list):
            for entry in files:
                if not isinstance(entry, dict):
                    continue
                path = _first_str(entry, ("filePath", "relativePath"))
                if not path:
                    continue
                operations.append(
                    _with_path(
                        "edit",
                        path,
                        linesAdded=entry.get("additions") if isinstance(entry.get("additions"), int) else None,
                        linesRemoved=entry.get("deletions") if isinstance(entry.get("deletions"), int) else None,
                    )
                )
        return operations

    if key == "multiedit":
        paths: list[str] = []
        edits = tool_input.get("edits")
        if isinstance(edits, list):
            for edit in edits:
                if isinstance(edit, dict):
                    path = _first_str(edit, _PATH_INPUT_KEYS)
                    if path and path not in paths:
                        paths.append(path)
        single = _first_str(tool_input, _PATH_INPUT_KEYS)
        if single and single not in paths:
            paths.insert(0, single)
        return [_with_path("edit", path) for path in paths]

    nested_file = result.get("file") if isinstance(result.get("file"), dict) else {}
    path = _first_str(result, ("filePath",)) or _first_str(nested_file, ("filePath",)) or _first_str(tool_input, _PATH_INPUT_KEYS)
    operation = _with_path(op_type, path) if path else FileOperation(type=op_type)
    pattern = tool_input.get("pattern")
    if isinstance(pattern, str):
        operation.pattern = pattern

    if op_type == "write":
        content = result.get("content") or nested_file.get("content") or tool_input.get("content")
        operation.linesAdded = _count_lines(content)
    elif op_type == "edit":
        added, removed = _patch_line_counts(result.get("structuredPatch"))
        if added:
            operation.linesAdded = added
        if removed:
            operation.linesRemoved = removed

    return [operation]
