import json
import os

import toolspec_agent.history as history_mod
from toolspec_agent.history import (
    FileParsed,
    FileSkipped,
    HistoryScan,
    HistoryScanConfig,
    collect_observed_tools,
    extract,
    list_history_files,
    parse_csv_list,
    parse_history_content,
    scan_targets,
    should_inspect,
)
from toolspec_agent.whitelist import partition


def _write(path, text, mtime=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def _jsonl(*records):
    return "\n".join(json.dumps(r) for r in records) + "\n"


def test_tool_use_record_is_extracted_and_public(tmp_path):
    path = _write(tmp_path / "history.jsonl", _jsonl({"type": "tool_use", "name": "mcp__linear__create_issue"}))

    tools = extract([str(path)], env_overrides=[])
    assert tools == {"mcp__linear__create_issue"}
    assert partition(sorted(tools)).public == ["mcp__linear__create_issue"]


def test_text_tokens_are_scanned_and_canonicalized():
    tools = set()
    parse_history_content("called functions.exec_command and mcp__GitHub__list_prs\n", tools)
    assert tools == {"bash", "mcp__github__list_prs"}


def test_nested_message_and_payload_records():
    content = _jsonl(
        {
            "message": {
                "content": [
                    {"type": "tool_use", "name": "Read"},
                    {"type": "text", "text": "see mcp__slack__post_message"},
                ]
            }
        },
        {
            "type": "response_item",
            "payload": {
                "type": "function_call",
                "name": "shell_command",
                "arguments": json.dumps({"cmd": "mcp__notion__search"}),
            },
        },
    )
    tools = set()
    parse_history_content(content, tools)
    assert tools == {"read", "mcp__slack__post_message", "bash", "mcp__notion__search"}


def test_malformed_json_line_falls_back_to_text_scan():
    tools = set()
    parse_history_content("{not json mcp__jira__get_issue\n\n   \n", tools)
    assert tools == {"mcp__jira__get_issue"}


def test_only_the_tail_of_a_file_is_read(tmp_path):
    content = "mcp__early__tool\n" + ("x" * 2000) + "\nmcp__late__tool\n"
    path = _write(tmp_path / "session.jsonl", content)

    report = HistoryScan([str(path)], HistoryScanConfig(max_bytes_per_file=100)).run()
    assert report.tools == {"mcp__late__tool"}
    assert report.bytes_read == 100


def test_total_budget_is_shared_newest_first(tmp_path):
    newest = _write(tmp_path / "c.jsonl", "mcp__newest__tool\n" + "y" * 62, mtime=3000)
    middle = _write(tmp_path / "b.jsonl", "z" * 50 + "\nmcp__middle__tool\n", mtime=2000)
    oldest = _write(tmp_path / "a.jsonl", "mcp__oldest__tool\n", mtime=1000)

    config = HistoryScanConfig(max_bytes_per_file=1000, max_total_bytes=100)
    outcomes = list(HistoryScan([str(tmp_path)], config))

    assert [o.path for o in outcomes] == [str(newest), str(middle), str(oldest)]
    assert isinstance(outcomes[0], FileParsed) and outcomes[0].bytes_read == 80
    assert isinstance(outcomes[1], FileParsed) and outcomes[1].bytes_read == 20
    assert outcomes[1].tools == {"mcp__middle__tool"}
    assert outcomes[2] == FileSkipped(str(oldest), "total_budget_exhausted")


def test_max_files_skips_the_oldest(tmp_path):
    _write(tmp_path / "new.jsonl", "mcp__new__tool\n", mtime=2000)
    old = _write(tmp_path / "old.jsonl", "mcp__old__tool\n", mtime=1000)

    report = HistoryScan([str(tmp_path)], HistoryScanConfig(max_files=1)).run()
    assert report.tools == {"mcp__new__tool"}
    assert report.skipped == [FileSkipped(str(old), "max_files_reached")]


def test_unreadable_file_is_skipped_and_scan_continues(tmp_path, monkeypatch):
    good = _write(tmp_path / "good.jsonl", "mcp__good__tool\n", mtime=1000)
    bad = _write(tmp_path / "bad.jsonl", "mcp__bad__tool\n", mtime=2000)

    real_read_tail = history_mod.read_tail

    def _read_tail(path, max_bytes):
        if path == str(bad):
            raise PermissionError("denied")
        return real_read_tail(path, max_bytes)

    monkeypatch.setattr(history_mod, "read_tail", _read_tail)

    report = HistoryScan([str(tmp_path)], HistoryScanConfig()).run()
    assert report.tools == {"mcp__good__tool"}
    assert report.skipped == [FileSkipped(str(bad), "unreadable: PermissionError")]
    assert [p.path for p in report.parsed] == [str(good)]


def test_only_history_shaped_files_are_inspected(tmp_path):
    _write(tmp_path / "notes.txt", "mcp__hidden__tool\n")
    _write(tmp_path / "nested" / "history", "mcp__nested__tool\n")
    _write(tmp_path / "nested" / "deeper" / "run.log", "functions.exec_command\n")

    assert should_inspect("/x/history.json")
    assert should_inspect("/x/Session.JSONL")
    assert not should_inspect("/x/notes.txt")

    tools = extract([str(tmp_path)], env_overrides=[])
    assert tools == {"mcp__nested__tool", "bash"}


def test_directory_listing_respects_entry_budget(tmp_path):
    _write(tmp_path / "a.jsonl", "")
    _write(tmp_path / "b.jsonl", "")

    listed = list_history_files(str(tmp_path), max_entries=1)
    assert [c.path for c in listed] == [str(tmp_path / "b.jsonl")]


def test_duplicate_targets_are_read_once(tmp_path):
    path = _write(tmp_path / "history.jsonl", "mcp__once__tool\n")
    report = HistoryScan([str(path), str(tmp_path), str(path)], HistoryScanConfig()).run()
    assert len(report.parsed) == 1
    assert report.tools == {"mcp__once__tool"}


def test_scan_is_restartable(tmp_path):
    _write(tmp_path / "one.jsonl", "mcp__one__tool\n")
    scan = HistoryScan([str(tmp_path)], HistoryScanConfig())

    assert scan.run().tools == {"mcp__one__tool"}
    assert scan.run().tools == {"mcp__one__tool"}

    _write(tmp_path / "two.jsonl", "mcp__two__tool\n")
    assert scan.run().tools == {"mcp__one__tool", "mcp__two__tool"}


def test_missing_targets_give_empty_result(tmp_path):
    report = HistoryScan([str(tmp_path / "nope")], HistoryScanConfig()).run()
    assert report.outcomes == []
    assert report.tools == set()


def test_scan_targets_expand_home_and_dedupe(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    targets = scan_targets(["~/logs", str(tmp_path / "logs")], env_overrides=["~/extra", "~/logs"])
    assert targets == [str(tmp_path / "logs"), str(tmp_path / "extra")]

    monkeypatch.setenv("TOOLSPEC_HISTORY_PATHS", "~/from-env, ,~/from-env")
    assert scan_targets([], env_overrides=None) == [str(tmp_path / "from-env")]


def test_config_from_env_ignores_junk():
    config = HistoryScanConfig.from_env({
        "TOOLSPEC_HISTORY_MAX_BYTES_PER_FILE": "2048",
        "TOOLSPEC_HISTORY_MAX_TOTAL_BYTES": "-5",
        "TOOLSPEC_HISTORY_MAX_FILES": "lots",
    })
    assert config.max_bytes_per_file == 2048
    assert config.max_total_bytes == HistoryScanConfig().max_total_bytes
    assert config.max_files == HistoryScanConfig().max_files
    assert config.max_dir_entries == HistoryScanConfig().max_dir_entries


def test_observed_tools_env_is_merged(tmp_path):
    _write(tmp_path / "history.jsonl", "mcp__linear__create_issue\n")
    scan = HistoryScan([str(tmp_path)], HistoryScanConfig())

    observed = collect_observed_tools(scan, env={"TOOLSPEC_OBSERVED_TOOLS": "GitHub, exec_command,,github"})
    assert observed == ["bash", "github", "mcp__linear__create_issue"]


def test_parse_csv_list():
    assert parse_csv_list(" a, b ,,a ") == ["a", "b"]
    assert parse_csv_list(None) == []
