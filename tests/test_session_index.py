from __future__ import annotations

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure

from agent_relay.sessions.index import (
    INDEX_FILE_NAME,
    SessionIndex,
    encode_project_dir,
    read_git_branch,
    truncate_prompt,
)

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Engine Session Index"),
]

PROJECT = "/home/dev/my.app"


def _write_index(directory: Path, entries: list[dict]) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / INDEX_FILE_NAME).write_text(
        json.dumps({"version": 1, "entries": entries}),
        encoding="utf-8",
    )


def _write_transcript(
    directory: Path,
    session_id: str,
    records: list[dict],
    mtime: datetime,
) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{session_id}.jsonl"
    path.write_text("\n".join(json.dumps(record) for record in records) + "\n", encoding="utf-8")
    os.utime(path, (mtime.timestamp(), mtime.timestamp()))


def _seed(projects: Path) -> Path:
    directory = projects / encode_project_dir(PROJECT)
    _write_index(
        directory,
        [
            {
                "sessionId": "s-old",
                "firstPrompt": "old prompt",
                "modified": "2026-10-01T10:00:00Z",
                "messageCount": 4,
                "projectPath": PROJECT,
            },
            {
                "sessionId": "s-side",
                "firstPrompt": "subagent",
                "modified": "2026-10-10T10:00:00Z",
                "projectPath": PROJECT,
                "isSidechain": True,
            },
            {
                "sessionId": "s-new",
                "summary": "Refactor parser",
                "modified": "2026-10-05T10:00:00Z",
                "gitBranch": "main",
                "projectPath": PROJECT,
            },
        ],
    )
    _write_transcript(
        directory,
        "s-loose",
        [
            {"type": "summary", "summary": "Fix flaky test"},
            {"type": "user", "isMeta": True, "message": {"content": "<meta>"}},
            {
                "type": "user",
                "message": {"content": [{"type": "text", "text": "please fix the test"}]},
                "gitBranch": "bugfix",
                "cwd": PROJECT,
            },
        ],
        datetime(2026, 10, 3, 10, 0, tzinfo=UTC),
    )
    return directory


def test_encode_project_dir_replaces_non_alphanumerics() -> None:
    assert encode_project_dir("/home/dev/my.app") == "-home-dev-my-app"
    assert encode_project_dir("C:\\work\\x_y") == "C--work-x-y"


def test_truncate_prompt_adds_ellipsis_past_limit() -> None:
    assert truncate_prompt("  short  ") == "short"
    long_text = "x" * 150
    assert truncate_prompt(long_text) == "x" * 100 + "..."


def test_list_recent_merges_index_and_unindexed_transcripts(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    _seed(projects)
    index = SessionIndex(projects)

    entries = index.list_recent()

    assert [entry.session_id for entry in entries] == ["s-new", "s-loose", "s-old"]
    loose = entries[1]
    assert loose.summary == "Fix flaky test"
    assert loose.first_prompt == "please fix the test"
    assert loose.git_branch == "bugfix"
    assert loose.project_path == PROJECT
    assert entries[2].message_count == 4
    assert [entry.session_id for entry in index.list_recent(2)] == ["s-new", "s-loose"]


def test_list_recent_can_filter_by_project(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    _seed(projects)
    _write_index(
        projects / encode_project_dir("/srv/other"),
        [{"sessionId": "s-other", "modified": "2026-10-18T10:00:00Z", "projectPath": "/srv/other"}],
    )
    index = SessionIndex(projects)

    assert index.list_recent()[0].session_id == "s-other"
    only = index.list_recent(project_path=PROJECT)
    assert "s-other" not in {entry.session_id for entry in only}
    assert index.list_recent(project_path="/nowhere") == []


def test_only_the_newest_unindexed_transcripts_are_scanned(tmp_path: Path) -> None:
    directory = tmp_path / "projects" / encode_project_dir(PROJECT)
    base = datetime(2026, 10, 1, tzinfo=UTC)
    for number in range(7):
        _write_transcript(
            directory,
            f"s-{number}",
            [{"type": "user", "message": {"content": f"prompt {number}"}}],
            base + timedelta(hours=number),
        )

    entries = SessionIndex(tmp_path / "projects").list_recent(limit=50)

    assert [entry.session_id for entry in entries] == ["s-6", "s-5", "s-4", "s-3", "s-2"]


def test_exists_checks_index_entries_and_transcripts(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    _seed(projects)
    index = SessionIndex(projects)

    assert index.exists("s-old")
    assert index.exists("s-side")
    assert index.exists("s-loose")
    assert not index.exists("s-missing")
    assert not index.exists("")
    assert not SessionIndex(tmp_path / "absent").exists("s-old")


def test_record_session_creates_then_refreshes_entry(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    index = SessionIndex(projects, prompt_chars=10)
    created_at = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)

    first = index.record_session(
        session_id="s-1",
        project_path=PROJECT,
        first_prompt="write the release notes",
        git_branch="main",
        now=created_at,
    )
    second = index.record_session(
        session_id="s-1",
        project_path=PROJECT,
        first_prompt="something else",
        git_branch="release",
        now=created_at + timedelta(minutes=30),
    )

    assert first.message_count == 1
    assert first.first_prompt == "write the ..."
    assert second.created == created_at
    assert second.modified == created_at + timedelta(minutes=30)
    assert second.first_prompt == "write the ..."
    assert second.message_count == 2
    assert second.git_branch == "release"

    raw = json.loads((index.project_dir(PROJECT) / INDEX_FILE_NAME).read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert [item["sessionId"] for item in raw["entries"]] == ["s-1"]
    assert raw["entries"][0]["created"] == "2026-10-19T08:00:00Z"
    assert index.exists("s-1")
    assert not list(index.project_dir(PROJECT).glob("*.tmp"))


def test_record_session_keeps_existing_entries(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    directory = _seed(projects)
    index = SessionIndex(projects)

    index.record_session(session_id="s-added", project_path=PROJECT, git_branch="")

    raw = json.loads((directory / INDEX_FILE_NAME).read_text(encoding="utf-8"))
    assert [item["sessionId"] for item in raw["entries"]] == ["s-old", "s-side", "s-new", "s-added"]


def test_read_git_branch(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    head = tmp_path / ".git" / "HEAD"

    head.write_text("ref: refs/heads/feature/login\n", encoding="utf-8")
    assert read_git_branch(tmp_path) == "feature/login"

    head.write_text("3f2a1b0c9d8e7f6a5b4c3d2e1f0a9b8c7d6e5f4a\n", encoding="utf-8")
    assert read_git_branch(tmp_path) == ""
    assert read_git_branch(tmp_path / "missing") == ""


def test_malformed_entries_are_ignored_and_replaced(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    directory = projects / encode_project_dir(PROJECT)
    directory.mkdir(parents=True)
    (directory / INDEX_FILE_NAME).write_text(
        json.dumps({"version": 1, "entries": 5}),
        encoding="utf-8",
    )
    index = SessionIndex(projects)

    assert index.list_recent() == []
    assert not index.exists("s-any")

    entry = index.record_session(session_id="s-fresh", project_path=PROJECT, git_branch="")

    assert entry.message_count == 1
    raw = json.loads((directory / INDEX_FILE_NAME).read_text(encoding="utf-8"))
    assert [item["sessionId"] for item in raw["entries"]] == ["s-fresh"]
