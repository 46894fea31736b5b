"""
Tool-action extraction from free-text model output.

Agents request side effects (file writes, builds, previews) by ending
their reply with a structured block:

    ```json
    {"files": [{"path": "src/App.tsx", "content": "..."}],
     "actions": [{"type": "build"}, {"type": "preview", "framework": "react"}]}
    ```

A ``<TOOL_ACTIONS>...</TOOL_ACTIONS>`` wrapper is accepted too. When no
such block exists, code fences labelled with a filename comment are taken
as file creations.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreateFile:
    path: str
    content: str
    kind: Literal["create_file"] = field(default="create_file", init=False)


@dataclass(frozen=True)
class UpdateFile:
    path: str
    content: str
    kind: Literal["update_file"] = field(default="update_file", init=False)


@dataclass(frozen=True)
class DeleteFile:
    path: str
    kind: Literal["delete_file"] = field(default="delete_file", init=False)


@dataclass(frozen=True)
class BuildProject:
    kind: Literal["build_project"] = field(default="build_project", init=False)


@dataclass(frozen=True)
class CreatePreview:
    framework: str | None = None
    kind: Literal["create_preview"] = field(default="create_preview", init=False)


ActionRequest = Union[CreateFile, UpdateFile, DeleteFile, BuildProject, CreatePreview]


@dataclass(frozen=True)
class ParseSuccess:
    actions: list[ActionRequest]


@dataclass(frozen=True)
class ParseFailure:
    error: str


ParseResult = Union[ParseSuccess, ParseFailure]


_JSON_FENCE_OPEN_RE = re.compile(r"```json[^\n]*\n", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"^[ \t]*```", re.MULTILINE)
_JSON_DECODER = json.JSONDecoder()
_TOOL_BLOCK_RE = re.compile(r"<TOOL_ACTIONS?>\s*(.*?)\s*</TOOL_ACTIONS?>", re.DOTALL)
_STRUCTURED_KEY_RE = re.compile(r'"(files|actions)"\s*:')

_CODE_FENCE_RE = re.compile(r"```([\w+#.-]*)[^\n]*\n(.*?)```", re.DOTALL)
_PATH = r"(?P<path>[\w@~./-]*[\w-]\.[A-Za-z0-9]{1,10})"
_FIRST_LINE_NAME_RE = re.compile(
    r"^\s*(?://|#|--|/\*|<!--)\s*(?:file(?:name)?\s*:\s*)?" + _PATH + r"\s*(?:\*/|-->)?\s*$",
    re.IGNORECASE,
)
_PRECEDING_NAME_RE = re.compile(
    r"^\s*(?://|#+|--)?\s*(?:\*\*|`)?\s*(?:file(?:name)?\s*:\s*)?(?:\*\*|`)?" + _PATH
    + r"(?:\*\*|`)?\s*:?\s*(?:\*\*)?\s*$",
    re.IGNORECASE,
)

_FILE_OPERATIONS = {"create", "update", "delete"}
_ACTION_ALIASES = {
    "create_file": "create",
    "write_file": "create",
    "update_file": "update",
    "delete_file": "delete",
    "build": "build",
    "build_project": "build",
    "preview": "preview",
    "create_preview": "preview",
}


def _file_path(entry: dict[str, Any]) -> str | None:
    for key in ("path", "filePath", "file_path", "filename"):
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _file_action(entry: dict[str, Any], operation: str) -> ActionRequest:
    path = _file_path(entry)
    if path is None:
        raise ValueError(f"file entry without a path: {entry!r}")
    if operation not in _FILE_OPERATIONS:
        raise ValueError(f"unknown file operation {operation!r} for {path}")
    if operation == "delete":
        return DeleteFile(path=path)
    content = entry.get("content")
    if not isinstance(content, str):
        raise ValueError(f"file entry {path} has no string content")
    if operation == "update":
        return UpdateFile(path=path, content=content)
    return CreateFile(path=path, content=content)


def _decode_actions(data: Any) -> list[ActionRequest]:
    if not isinstance(data, dict):
        raise ValueError("action block must be a JSON object")

    files = data.get("files", [])
    actions = data.get("actions", [])
    if not isinstance(files, list) or not isinstance(actions, list):
        raise ValueError("'files' and 'actions' must be lists")

    result: list[ActionRequest] = []
    for entry in files:
        if not isinstance(entry, dict):
            raise ValueError(f"file entry must be an object: {entry!r}")
        operation = str(entry.get("operation") or "create").lower()
        result.append(_file_action(entry, operation))

    for entry in actions:
        if not isinstance(entry, dict):
            raise ValueError(f"action entry must be an object: {entry!r}")
        raw = entry.get("type") or entry.get("action")
        name = _ACTION_ALIASES.get(str(raw).lower()) if raw else None
        if name is None:
            raise ValueError(f"unknown action: {raw!r}")
        payload = entry.get("payload") if isinstance(entry.get("payload"), dict) else entry
        if name == "build":
            result.append(BuildProject())
        elif name == "preview":
            framework = payload.get("framework")
            result.append(CreatePreview(framework=framework if isinstance(framework, str) else None))
        else:
            result.append(_file_action(payload, name))
    return result


def parse_action_block(text: str) -> ParseResult:
    """Decode the body of one structured action block."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseFailure(error=f"invalid JSON: {e}")
    try:
        return ParseSuccess(actions=_decode_actions(data))
    except ValueError as e:
        return ParseFailure(error=str(e))


def _json_fences(text: str) -> list[tuple[int, str]]:
    """Bodies of ```json fences as ``(offset, body)`` pairs.

    The body ends where its JSON value ends, so fences quoted inside string
    values (a README's code sample) do not cut it short. A body that does
    not decode runs to the next fence at the start of a line.
    """
    fences: list[tuple[int, str]] = []
    pos = 0
    while True:
        opener = _JSON_FENCE_OPEN_RE.search(text, pos)
        if opener is None:
            return fences
        start = opener.end()
        value_start = len(text) - len(text[start:].lstrip())
        try:
            _, end = _JSON_DECODER.raw_decode(text, value_start)
        except json.JSONDecodeError:
            close = _FENCE_CLOSE_RE.search(text, start)
            end = close.start() if close else len(text)
            pos = close.end() if close else len(text)
        else:
            close_at = text.find("```", end)
            pos = close_at + 3 if close_at != -1 else len(text)
        fences.append((opener.start(), text[start:end]))


def _structured_blocks(output: str) -> list[tuple[int, str]]:
    blocks = _json_fences(output)
    for match in _TOOL_BLOCK_RE.finditer(output):
        body = match.group(1).strip()
        fenced = _json_fences(body + "\n")
        blocks.append((match.start(), fenced[0][1] if fenced else body))
    blocks.sort(key=lambda b: b[0])
    return [b for b in blocks if _STRUCTURED_KEY_RE.search(b[1])]


def _scan_code_fences(output: str) -> list[ActionRequest]:
    result: list[ActionRequest] = []
    for match in _CODE_FENCE_RE.finditer(output):
        body = match.group(2)
        lines = body.split("\n")
        first_line = lines[0] if lines else ""

        name_match = _FIRST_LINE_NAME_RE.match(first_line)
        if name_match:
            content = "\n".join(lines[1:])
        else:
            preceding = output[: match.start()].rstrip("\n").rsplit("\n", 1)[-1]
            name_match = _PRECEDING_NAME_RE.match(preceding) if preceding else None
            content = body
        if name_match:
            result.append(CreateFile(path=name_match.group("path"), content=content.rstrip("\n") + "\n"))
    return result


def extract(model_output: str) -> list[ActionRequest]:
    """Return the ordered actions requested in ``model_output``.

    An empty list means no changes were requested.
    """
    if not model_output:
        return []

    blocks = _structured_blocks(model_output)
    if blocks:
        parsed = parse_action_block(blocks[-1][1])
        if isinstance(parsed, ParseFailure):
            logger.warning("Discarding malformed action block: %s", parsed.error)
            return []
        return parsed.actions

    return _scan_code_fences(model_output)


ACTION_FORMAT_INSTRUCTIONS = """\
You can change the project workspace. To create, update or delete files, build
the project or start a preview, end your reply with ONE json block:

```json
{
  "files": [
    {"path": "src/App.tsx", "content": "<full file content>", "operation": "create"}
  ],
  "actions": [
    {"type": "build"},
    {"type": "preview", "framework": "react"}
  ]
}
```

"operation" is one of create, update, delete (default create). Omit the block
if no changes are needed."""
