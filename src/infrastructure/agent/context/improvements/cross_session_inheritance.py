"""
Cross-session context inheritance.

Saves the summaries a session produced and offers them to the next session,
either from the most recent session (optionally matched by project path) or
from an accumulated per-project context of decisions and task summaries.

Storage layout (keys on a ContextStoragePort):
    index.json                most recent sessions first, at most 50
    session-{id}-{hash}.json  summaries saved by one session
    project-context.json      per-project decisions and task summaries
"""

import asyncio
import hashlib
import logging
import re
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from src.domain.exceptions.context import CorruptEntryError, StorageUnavailableError
from src.domain.model.context.message import ContextMessage, MessageRole
from src.domain.ports.context.storage_port import ContextStoragePort
from src.infrastructure.agent.context.improvements.storage_io import read_json, write_json
from src.infrastructure.agent.context.improvements.types import (
    InheritanceContentType,
    InheritedContext,
    InheritedSummary,
    InheritedSummaryType,
    SessionInheritanceConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 7 * 24 * 60 * 60
DEFAULT_MAX_SUMMARIES = 3
MAX_INDEXED_SESSIONS = 50
MAX_PROJECT_ENTRIES = 10
INDEX_KEY = "index.json"
PROJECT_CONTEXT_KEY = "project-context.json"
INDEX_VERSION = 1

INHERITED_HEADING = "## Inherited Context from Previous Session"

TYPE_MAP: dict[InheritanceContentType, tuple[InheritedSummaryType, ...]] = {
    "summary": ("full", "task"),
    "decisions": ("decisions",),
    "code_state": ("code_changes",),
    "pending_tasks": ("task",),
}

TYPE_LABELS: dict[str, str] = {
    "task": "Task Summary",
    "decisions": "Key Decisions",
    "code_changes": "Code Changes",
    "full": "Session Summary",
}

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def session_key(session_id: str) -> str:
    """Storage key for a session. The digest keeps ids that sanitize alike apart."""
    digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:8]
    return f"session-{_UNSAFE_ID_CHARS.sub('_', session_id)}-{digest}.json"


class CrossSessionInheritanceResolver:
    def __init__(
        self,
        config: Optional[SessionInheritanceConfig] = None,
        storage: Optional[ContextStoragePort] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SessionInheritanceConfig()
        self._storage = storage
        self._clock = clock
        self._index_cache: Optional[dict[str, Any]] = None

    def filter_summaries_by_type(
        self, summaries: Sequence[InheritedSummary]
    ) -> list[InheritedSummary]:
        allowed: set[str] = set()
        for inherit_type in self.config.inherit_types:
            allowed.update(TYPE_MAP.get(inherit_type, ()))
        return [summary for summary in summaries if summary.type in allowed]

    async def save_summaries(
        self,
        session_id: str,
        summaries: Sequence[InheritedSummary],
        project_path: Optional[str] = None,
        abort_signal: Optional[asyncio.Event] = None,
    ) -> bool:
        """Store a session's summaries for later sessions.

        Returns False when disabled, without storage, or nothing matched the
        configured inherit types.
        """
        if not self.config.enabled or self._storage is None:
            return False
        filtered = self.filter_summaries_by_type(summaries)
        if not filtered:
            return False

        now = self._clock()
        session_data = {
            "session_id": session_id,
            "saved_at": now,
            "project_path": project_path,
            "summaries": [s.to_dict() for s in filtered[: self.config.max_inherited_summaries]],
            "metadata": {},
        }
        await write_json(self._storage, session_key(session_id), session_data, abort_signal)
        await self._update_index(session_id, project_path, len(filtered), abort_signal)

        if project_path and "decisions" in self.config.inherit_types:
            await self._update_project_context(project_path, filtered, abort_signal)
        logger.debug(f"[SessionInheritance] Saved {len(filtered)} summaries for {session_id}")
        return True

    async def resolve_inheritance(
        self,
        project_path: Optional[str] = None,
        abort_signal: Optional[asyncio.Event] = None,
    ) -> Optional[InheritedContext]:
        """Context to seed a new session with, or None if nothing applies."""
        if not self.config.enabled or self._storage is None:
            return None
        try:
            if self.config.source == "last_session":
                return await self._resolve_from_last_session(project_path, abort_signal)
            if self.config.source == "project_context" and project_path:
                return await self._resolve_from_project_context(project_path, abort_signal)
            return None
        except (CorruptEntryError, StorageUnavailableError, KeyError, TypeError) as e:
            logger.warning(f"[SessionInheritance] Failed to resolve inheritance: {e}")
            return None

    def format_as_message(self, inherited: InheritedContext) -> ContextMessage:
        inherited_at = datetime.fromtimestamp(inherited.inherited_at, tz=timezone.utc)
        lines = [
            INHERITED_HEADING,
            "",
            f"_Source: Session {inherited.source_session_id}_",
            f"_Inherited at: {inherited_at.isoformat()}_",
            "",
        ]
        by_type: dict[str, list[InheritedSummary]] = defaultdict(list)
        for summary in inherited.summaries:
            by_type[summary.type].append(summary)
        for summary_type, summaries in by_type.items():
            lines.append(f"### {TYPE_LABELS.get(summary_type, summary_type)}")
            lines.append("")
            for summary in summaries:
                lines.append(summary.content)
                lines.append("")

        return ContextMessage(
            id=f"inherited-{inherited.source_session_id}",
            role=MessageRole.SYSTEM,
            content="\n".join(lines),
            created_at=inherited.inherited_at,
            metadata={"is_inherited": True, "source_session": inherited.source_session_id},
        )

    def get_last_session_info(self) -> Optional[tuple[str, float]]:
        """(session_id, saved_at) of the newest indexed session, from the loaded index."""
        if not self._index_cache or not self._index_cache.get("sessions"):
            return None
        last = self._index_cache["sessions"][0]
        return last["session_id"], last["saved_at"]

    async def cleanup(
        self,
        max_age: float = DEFAULT_MAX_AGE_SECONDS,
        abort_signal: Optional[asyncio.Event] = None,
    ) -> int:
        """Remove sessions saved more than max_age seconds ago. Returns the count."""
        if self._storage is None:
            return 0
        index = await self.load_index(abort_signal)
        if not index or not index["sessions"]:
            return 0

        cutoff = self._clock() - max_age
        keep = [entry for entry in index["sessions"] if entry["saved_at"] >= cutoff]
        removed = [entry for entry in index["sessions"] if entry["saved_at"] < cutoff]
        if not removed:
            return 0

        for entry in removed:
            await self._storage.remove(session_key(entry["session_id"]))
        index["sessions"] = keep
        await self._save_index(index, abort_signal)
        logger.info(f"[SessionInheritance] Removed {len(removed)} expired sessions")
        return len(removed)

    async def load_index(
        self, abort_signal: Optional[asyncio.Event] = None
    ) -> Optional[dict[str, Any]]:
        if self._index_cache is not None:
            return self._index_cache
        if self._storage is None:
            return None
        data = await read_json(self._storage, INDEX_KEY, abort_signal)
        if data is None:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("sessions"), list):
            raise CorruptEntryError("Malformed session index", key=INDEX_KEY)
        self._index_cache = data
        return data

    async def _save_index(
        self, index: dict[str, Any], abort_signal: Optional[asyncio.Event]
    ) -> None:
        index["updated_at"] = self._clock()
        self._index_cache = index
        await write_json(self._storage, INDEX_KEY, index, abort_signal)

    async def _update_index(
        self,
        session_id: str,
        project_path: Optional[str],
        summary_count: int,
        abort_signal: Optional[asyncio.Event],
    ) -> None:
        try:
            index = await self.load_index(abort_signal)
        except CorruptEntryError as e:
            logger.warning(f"[SessionInheritance] Rebuilding unreadable index: {e}")
            index = None
        if index is None:
            index = {"version": INDEX_VERSION, "updated_at": self._clock(), "sessions": []}

        sessions = [entry for entry in index["sessions"] if entry["session_id"] != session_id]
        sessions.insert(
            0,
            {
                "session_id": session_id,
                "saved_at": self._clock(),
                "project_path": project_path,
                "summary_count": summary_count,
            },
        )
        for entry in sessions[MAX_INDEXED_SESSIONS:]:
            await self._storage.remove(session_key(entry["session_id"]))
        index["sessions"] = sessions[:MAX_INDEXED_SESSIONS]
        await self._save_index(index, abort_signal)

    async def _resolve_from_last_session(
        self, project_path: Optional[str], abort_signal: Optional[asyncio.Event]
    ) -> Optional[InheritedContext]:
        index = await self.load_index(abort_signal)
        if not index or not index["sessions"]:
            return None

        target = None
        if project_path:
            target = next(
                (s for s in index["sessions"] if s.get("project_path") == project_path), None
            )
        if target is None:
            target = index["sessions"][0]

        data = await read_json(self._storage, session_key(target["session_id"]), abort_signal)
        if data is None:
            return None
        summaries = [InheritedSummary.from_dict(item) for item in data["summaries"]]
        return InheritedContext(
            source_session_id=data["session_id"],
            inherited_at=self._clock(),
            summaries=tuple(summaries[: self.config.max_inherited_summaries]),
            metadata=dict(data.get("metadata") or {}),
        )

    async def _resolve_from_project_context(
        self, project_path: str, abort_signal: Optional[asyncio.Event]
    ) -> Optional[InheritedContext]:
        contexts = await read_json(self._storage, PROJECT_CONTEXT_KEY, abort_signal)
        if not contexts:
            return None
        project = contexts.get(project_path)
        if not project or not project.get("task_summaries"):
            return None

        now = self._clock()
        summaries: list[InheritedSummary] = []
        if project.get("decisions"):
            summaries.append(
                InheritedSummary(
                    id=f"project-decisions-{int(now * 1000)}",
                    content="## Project Decisions\n\n" + "\n\n".join(project["decisions"]),
                    original_session="project-accumulated",
                    created_at=project["updated_at"],
                    type="decisions",
                )
            )
        task_limit = max(self.config.max_inherited_summaries - 1, 0)
        summaries.extend(
            InheritedSummary.from_dict(item) for item in project["task_summaries"][:task_limit]
        )
        return InheritedContext(
            source_session_id="project-context",
            inherited_at=now,
            summaries=tuple(summaries[: self.config.max_inherited_summaries]),
            metadata={
                "project_path": project_path,
                "code_patterns": project.get("code_patterns", []),
            },
        )

    async def _update_project_context(
        self,
        project_path: str,
        summaries: Sequence[InheritedSummary],
        abort_signal: Optional[asyncio.Event],
    ) -> None:
        try:
            contexts = await read_json(self._storage, PROJECT_CONTEXT_KEY, abort_signal) or {}
        except CorruptEntryError as e:
            logger.warning(f"[SessionInheritance] Replacing unreadable project context: {e}")
            contexts = {}

        now = self._clock()
        project = contexts.get(project_path) or {
            "project_path": project_path,
            "updated_at": now,
            "decisions": [],
            "code_patterns": [],
            "task_summaries": [],
        }

        for summary in summaries:
            if summary.type == "decisions" and summary.content not in project["decisions"]:
                project["decisions"].append(summary.content)
        project["decisions"] = project["decisions"][-MAX_PROJECT_ENTRIES:]

        existing = {item["content"] for item in project["task_summaries"]}
        project["task_summaries"].extend(
            s.to_dict()
            for s in summaries
            if s.type in ("task", "full") and s.content not in existing
        )
        project["task_summaries"] = project["task_summaries"][-MAX_PROJECT_ENTRIES:]

        project["updated_at"] = now
        contexts[project_path] = project
        await write_json(self._storage, PROJECT_CONTEXT_KEY, contexts, abort_signal)


def create_cross_session_inheritance_resolver(
    storage: Optional[ContextStoragePort] = None, **overrides
) -> CrossSessionInheritanceResolver:
    if "inherit_types" in overrides:
        overrides["inherit_types"] = tuple(overrides["inherit_types"])
    return CrossSessionInheritanceResolver(SessionInheritanceConfig(**overrides), storage=storage)
