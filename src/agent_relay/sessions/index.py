"""Read and update the engine's per-project session index.

The engine keeps one directory per project under its projects root; the
directory name is the project path with every non-alphanumeric character
replaced by ``-``. Each directory holds one ``<session id>.jsonl`` transcript
per session and, optionally, a ``sessions-index.json`` summary. Keeping the
index current lets sessions started through the relay show up in the engine's
own session picker, and the other way round.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agent_relay.sessions.models import EngineSessionEntry
from agent_relay.storage.common import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

INDEX_FILE_NAME = "sessions-index.json"
INDEX_VERSION = 1
_UNINDEXED_PER_PROJECT = 5
_METADATA_SCAN_LINES = 50
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def encode_project_dir(project_path: str | Path) -> str:
    """Engine directory name for a project path."""

    return _NON_ALNUM.sub("-", str(project_path))


def truncate_prompt(text: str, limit: int = 100) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class SessionIndex:
    """Engine session index rooted at ``projects_dir``."""

    def __init__(self, projects_dir: Path, *, prompt_chars: int = 100) -> None:
        self.projects_dir = projects_dir
        self.prompt_chars = prompt_chars

    def project_dir(self, project_path: str | Path) -> Path:
        return self.projects_dir / encode_project_dir(project_path)

    def list_recent(
        self,
        limit: int = 10,
        *,
        project_path: str | Path | None = None,
    ) -> list[EngineSessionEntry]:
        """Recent sessions across projects (or one project), newest first."""

        if project_path is not None:
            directories = [self.project_dir(project_path)]
        elif self.projects_dir.is_dir():
            directories = sorted(path for path in self.projects_dir.iterdir() if path.is_dir())
        else:
            directories = []

        entries: list[EngineSessionEntry] = []
        for directory in directories:
            if not directory.is_dir():
                continue
            entries.extend(self._scan_project(directory))

        entries.sort(key=_sort_key, reverse=True)
        return entries[:limit]

    def exists(self, session_id: str) -> bool:
        """Whether any project knows ``session_id`` (index entry or transcript)."""

        if not session_id or not self.projects_dir.is_dir():
            return False
        for directory in self.projects_dir.iterdir():
            if not directory.is_dir():
                continue
            if (directory / f"{session_id}.jsonl").exists():
                return True
            for raw in _index_entries(directory):
                if raw.get("sessionId") == session_id:
                    return True
        return False

    def record_session(
        self,
        *,
        session_id: str,
        project_path: str | Path,
        first_prompt: str = "",
        git_branch: str | None = None,
        now: datetime | None = None,
    ) -> EngineSessionEntry:
        """Insert or refresh one index entry.

        ``created`` and the first prompt of an existing entry are preserved.
        The file is rewritten through a temp file and ``os.replace``.
        """

        timestamp = now or utc_now()
        directory = self.project_dir(project_path)
        directory.mkdir(parents=True, exist_ok=True)
        raw_entries = _index_entries(directory)

        existing = next((item for item in raw_entries if item.get("sessionId") == session_id), None)
        branch = git_branch if git_branch is not None else read_git_branch(Path(project_path))
        transcript = directory / f"{session_id}.jsonl"
        file_mtime = int(transcript.stat().st_mtime * 1000) if transcript.exists() else None

        if existing is None:
            existing = {
                "sessionId": session_id,
                "fullPath": str(transcript),
                "firstPrompt": truncate_prompt(first_prompt, self.prompt_chars),
                "summary": "",
                "messageCount": 0,
                "created": _to_iso(timestamp),
                "projectPath": str(project_path),
                "isSidechain": False,
            }
            raw_entries.append(existing)
        elif not existing.get("firstPrompt") and first_prompt:
            existing["firstPrompt"] = truncate_prompt(first_prompt, self.prompt_chars)

        existing["modified"] = _to_iso(timestamp)
        existing["messageCount"] = int(existing.get("messageCount") or 0) + 1
        existing["gitBranch"] = branch
        if file_mtime is not None:
            existing["fileMtime"] = file_mtime

        _write_index_atomic(directory, {"version": INDEX_VERSION, "entries": raw_entries})
        logger.debug("Recorded session %s in %s", session_id, directory)
        return _entry_from_index(existing, directory)

    def _scan_project(self, directory: Path) -> list[EngineSessionEntry]:
        entries: list[EngineSessionEntry] = []
        indexed: set[str] = set()
        for raw in _index_entries(directory):
            if not raw.get("sessionId"):
                continue
            indexed.add(str(raw["sessionId"]))
            if raw.get("isSidechain"):
                continue
            entries.append(_entry_from_index(raw, directory))

        transcripts: list[tuple[float, Path]] = []
        for path in directory.glob("*.jsonl"):
            if path.stem in indexed:
                continue
            try:
                transcripts.append((path.stat().st_mtime, path))
            except OSError:
                continue
        transcripts.sort(reverse=True)
        for mtime, path in transcripts[:_UNINDEXED_PER_PROJECT]:
            entries.append(self._entry_from_transcript(path, mtime, directory))
        return entries

    def _entry_from_transcript(
        self,
        path: Path,
        mtime: float,
        directory: Path,
    ) -> EngineSessionEntry:
        summary = ""
        first_prompt = ""
        git_branch = ""
        cwd = ""
        try:
            with path.open(encoding="utf-8", errors="replace") as handle:
                for line_no, line in enumerate(handle):
                    if line_no >= _METADATA_SCAN_LINES:
                        break
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if not isinstance(record, dict):
                        continue
                    if record.get("type") == "summary" and record.get("summary") and not summary:
                        summary = str(record["summary"])
                    if record.get("type") == "user":
                        if not record.get("isMeta") and not first_prompt:
                            first_prompt = _user_text(record)
                        if record.get("gitBranch") and not git_branch:
                            git_branch = str(record["gitBranch"])
                        if record.get("cwd") and not cwd:
                            cwd = str(record["cwd"])
                    if summary and first_prompt and git_branch and cwd:
                        break
        except OSError as error:
            logger.debug("Cannot read transcript %s: %s", path, error)

        modified = datetime.fromtimestamp(mtime, tz=UTC)
        return EngineSessionEntry(
            session_id=path.stem,
            project_path=cwd or directory.name,
            first_prompt=truncate_prompt(first_prompt, self.prompt_chars),
            summary=summary,
            git_branch=git_branch,
            modified=modified,
        )


def read_git_branch(project_path: Path) -> str:
    """Current branch name from ``.git/HEAD``; empty when detached or absent."""

    head = project_path / ".git" / "HEAD"
    try:
        content = head.read_text(encoding="utf-8").strip()
    except OSError:
        return ""
    prefix = "ref: refs/heads/"
    if content.startswith(prefix):
        return content[len(prefix) :]
    return ""


def _user_text(record: dict[str, Any]) -> str:
    content = (record.get("message") or {}).get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                return str(part["text"])
    return ""


def _read_index(directory: Path) -> dict[str, Any]:
    path = directory / INDEX_FILE_NAME
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        logger.warning("Ignoring unreadable session index %s: %s", path, error)
        return {}
    return data if isinstance(data, dict) else {}


def _index_entries(directory: Path) -> list[dict[str, Any]]:
    entries = _read_index(directory).get("entries")
    if not isinstance(entries, list):
        if entries is not None:
            logger.warning("Ignoring malformed entries in %s", directory / INDEX_FILE_NAME)
        return []
    return [item for item in entries if isinstance(item, dict)]


def _write_index_atomic(directory: Path, data: dict[str, Any]) -> None:
    target = directory / INDEX_FILE_NAME
    fd, tmp_name = tempfile.mkstemp(prefix=".sessions-index.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _entry_from_index(raw: dict[str, Any], directory: Path) -> EngineSessionEntry:
    modified = parse_timestamp(raw.get("modified"))
    if modified is None and isinstance(raw.get("fileMtime"), int | float):
        modified = datetime.fromtimestamp(float(raw["fileMtime"]) / 1000, tz=UTC)
    return EngineSessionEntry(
        session_id=str(raw.get("sessionId") or ""),
        project_path=str(raw.get("projectPath") or directory.name),
        first_prompt=str(raw.get("firstPrompt") or ""),
        summary=str(raw.get("summary") or ""),
        git_branch=str(raw.get("gitBranch") or ""),
        created=parse_timestamp(raw.get("created")),
        modified=modified,
        message_count=int(raw.get("messageCount") or 0),
        is_sidechain=bool(raw.get("isSidechain")),
    )


def _to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _sort_key(entry: EngineSessionEntry) -> datetime:
    return entry.modified or datetime.min.replace(tzinfo=UTC)
