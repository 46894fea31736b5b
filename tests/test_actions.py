import json

from ensemble.actions import (
    BuildProject,
    CreateFile,
    CreatePreview,
    DeleteFile,
    ParseFailure,
    ParseSuccess,
    UpdateFile,
    extract,
    parse_action_block,
)


def _fenced(payload: dict) -> str:
    return "```json\n" + json.dumps(payload) + "\n```"


def test_trailing_block_with_n_files_yields_n_creates() -> None:
    files = [{"path": f"src/file{i}.ts", "content": f"export const x{i} = {i};\n"} for i in range(4)]
    output = "I set up the project.\n\n" + _fenced({"files": files})

    actions = extract(output)

    assert len(actions) == 4
    assert all(isinstance(a, CreateFile) for a in actions)
    assert [a.path for a in actions] == [f["path"] for f in files]
    assert actions[2].content == "export const x2 = 2;\n"


def test_code_fences_inside_file_content_do_not_cut_the_block() -> None:
    readme = "# Todo\n\nRun it with:\n\n```bash\nnpm start\n```\n"
    files = [
        {"path": "README.md", "content": readme},
        {"path": "src/main.ts", "content": "console.log('hi');\n"},
    ]
    for dumped in (json.dumps({"files": files}), json.dumps({"files": files}, indent=2)):
        actions = extract("Added docs.\n\n```json\n" + dumped + "\n```\n")

        assert [a.path for a in actions] == ["README.md", "src/main.ts"]
        assert actions[0].content == readme


def test_block_mixes_file_operations_and_actions_in_order() -> None:
    output = _fenced(
        {
            "files": [
                {"path": "index.html", "content": "<html></html>"},
                {"filePath": "app.js", "content": "let a;", "operation": "update"},
                {"file_path": "old.css", "operation": "delete"},
            ],
            "actions": [{"type": "build"}, {"action": "create_preview", "framework": "vite"}],
        }
    )

    actions = extract(output)

    assert actions == [
        CreateFile(path="index.html", content="<html></html>"),
        UpdateFile(path="app.js", content="let a;"),
        DeleteFile(path="old.css"),
        BuildProject(),
        CreatePreview(framework="vite"),
    ]
    assert [a.kind for a in actions] == [
        "create_file",
        "update_file",
        "delete_file",
        "build_project",
        "create_preview",
    ]


def test_action_payload_object_is_accepted() -> None:
    output = _fenced(
        {"actions": [{"type": "write_file", "payload": {"path": "a.py", "content": "print(1)\n"}}]}
    )
    assert extract(output) == [CreateFile(path="a.py", content="print(1)\n")]


def test_malformed_json_yields_no_actions() -> None:
    output = 'Here you go\n```json\n{"files": [{"path": "a.ts", "content": "x"\n```'
    assert extract(output) == []


def test_malformed_block_does_not_fall_back_to_code_fences() -> None:
    output = (
        "```ts\n// src/a.ts\nexport {};\n```\n\n"
        '```json\n{"files": "not-a-list"}\n```'
    )
    assert extract(output) == []


def test_only_the_last_structured_block_counts() -> None:
    first = _fenced({"files": [{"path": "draft.txt", "content": "draft"}]})
    last = _fenced({"files": [{"path": "final.txt", "content": "final"}]})
    actions = extract(f"{first}\n\nRevised:\n\n{last}")
    assert actions == [CreateFile(path="final.txt", content="final")]


def test_tool_actions_wrapper() -> None:
    body = json.dumps({"actions": [{"type": "build"}]})
    assert extract(f"Done.\n<TOOL_ACTIONS>\n{body}\n</TOOL_ACTIONS>") == [BuildProject()]


def test_json_fence_without_action_keys_is_not_structured() -> None:
    output = '```json\n{"name": "todo", "version": "1.0.0"}\n```'
    assert extract(output) == []


def test_fallback_scan_uses_filename_comment() -> None:
    output = (
        "Here is the component:\n\n"
        "```tsx\n// src/App.tsx\nexport default function App() {\n  return null;\n}\n```\n\n"
        "And a style:\n\n```css\n/* src/app.css */\nbody { margin: 0; }\n```"
    )

    actions = extract(output)

    assert actions == [
        CreateFile(
            path="src/App.tsx", content="export default function App() {\n  return null;\n}\n"
        ),
        CreateFile(path="src/app.css", content="body { margin: 0; }\n"),
    ]


def test_fallback_scan_uses_preceding_filename_line() -> None:
    output = "**main.py**\n```python\nprint('hi')\n```"
    assert extract(output) == [CreateFile(path="main.py", content="print('hi')\n")]


def test_plain_code_fences_and_empty_output_yield_nothing() -> None:
    assert extract("```python\nprint('hi')\n```") == []
    assert extract("") == []
    assert extract("No changes needed.") == []


def test_parse_action_block_reports_failures() -> None:
    assert isinstance(parse_action_block("{"), ParseFailure)

    missing_path = parse_action_block(json.dumps({"files": [{"content": "x"}]}))
    assert isinstance(missing_path, ParseFailure)
    assert "without a path" in missing_path.error

    unknown = parse_action_block(json.dumps({"actions": [{"type": "deploy"}]}))
    assert isinstance(unknown, ParseFailure)

    ok = parse_action_block(json.dumps({"files": [], "actions": []}))
    assert isinstance(ok, ParseSuccess)
    assert ok.actions == []
