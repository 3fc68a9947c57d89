"""Checkpoint store: durable, independently addressable snapshots.

Each checkpoint is one JSON file under ``<root>/checkpoints/``; an
``index.json`` summary list (newest first) backs listing and search
without loading every message body.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from agentdeck.engine.errors import CheckpointNotFoundError, CheckpointStorageError
from agentdeck.shared.models.checkpoint import Checkpoint
from agentdeck.shared.services.durable_write import atomic_write_json, read_json
from agentdeck.shared.services.workspace_paths import validate_id

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"


class CheckpointStore:
    """Create, load, search and delete checkpoints."""

    def __init__(self, checkpoints_dir: Path) -> None:
        self._dir = checkpoints_dir
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def _index_path(self) -> Path:
        return self._dir / INDEX_FILENAME

    def _path(self, checkpoint_id: str) -> Path:
        return self._dir / f"{validate_id(checkpoint_id, 'checkpoint id')}.json"

    def _load_index(self) -> list[dict[str, Any]]:
        data = read_json(self._index_path, default=[])
        return data if isinstance(data, list) else []

    def _save_index(self, entries: list[dict[str, Any]]) -> None:
        entries.sort(key=lambda e: (e.get("created_at") or "", e.get("id") or ""), reverse=True)
        atomic_write_json(self._index_path, entries)

    def save(self, checkpoint: Checkpoint) -> str:
        """Write the checkpoint and its index entry, or leave nothing."""
        path = self._path(checkpoint.id)
        if path.exists():
            raise CheckpointStorageError(checkpoint.id, "id already exists")
        try:
            atomic_write_json(path, checkpoint.to_dict())
        except OSError as exc:
            raise CheckpointStorageError(checkpoint.id, str(exc)) from exc

        try:
            entries = [e for e in self._load_index() if e.get("id") != checkpoint.id]
            entries.append(checkpoint.index_entry())
            self._save_index(entries)
        except (OSError, ValueError) as exc:
            # Roll back the body so no orphaned checkpoint survives.
            try:
                path.unlink()
            except OSError:
                logger.warning("Could not remove partial checkpoint %s", path)
            raise CheckpointStorageError(checkpoint.id, str(exc)) from exc

        logger.info(
            "Checkpoint saved id=%s name=%s messages=%d",
            checkpoint.id, checkpoint.name, checkpoint.message_count,
        )
        return checkpoint.id

    def load(self, checkpoint_id: str) -> Checkpoint:
        try:
            path = self._path(checkpoint_id)
        except ValueError as exc:
            raise CheckpointNotFoundError(checkpoint_id) from exc
        data = read_json(path)
        if data is None:
            raise CheckpointNotFoundError(checkpoint_id)
        return Checkpoint.from_dict(data)

    def exists(self, checkpoint_id: str) -> bool:
        try:
            return self._path(checkpoint_id).exists()
        except ValueError:
            return False

    def list(self, agent_id: str | None = None) -> list[dict[str, Any]]:
        """Index entries, newest first, optionally for one source agent."""
        entries = self._load_index()
        if agent_id:
            entries = [e for e in entries if e.get("source_agent_id") == agent_id]
        return entries

    def search(self, query: str) -> list[dict[str, Any]]:
        """Entries whose name, description and tags contain every query term.

        Ordering is the index order (newest first, then id), so equal
        inputs always give equal results.
        """
        terms = [t for t in query.lower().split() if t]
        entries = self._load_index()
        if not terms:
            return entries
        matches = []
        for entry in entries:
            haystack = " ".join([
                str(entry.get("name") or ""),
                str(entry.get("description") or ""),
                " ".join(str(t) for t in entry.get("tags") or []),
            ]).lower()
            if all(term in haystack for term in terms):
                matches.append(entry)
        return matches

    def delete(self, checkpoint_id: str) -> bool:
        if not self.exists(checkpoint_id):
            return False
        self._path(checkpoint_id).unlink()
        entries = [e for e in self._load_index() if e.get("id") != checkpoint_id]
        self._save_index(entries)
        logger.info("Checkpoint deleted id=%s", checkpoint_id)
        return True

    def record_usage(self, checkpoint_id: str) -> int:
        """Bump the usage counter; the only mutation besides rating."""
        checkpoint = self.load(checkpoint_id)
        checkpoint.usage_count += 1
        self._rewrite(checkpoint)
        return checkpoint.usage_count

    def rate(self, checkpoint_id: str, rating: int) -> None:
        if not 1 <= rating <= 5:
            raise ValueError("rating must be between 1 and 5")
        checkpoint = self.load(checkpoint_id)
        checkpoint.rating = rating
        self._rewrite(checkpoint)

    def _rewrite(self, checkpoint: Checkpoint) -> None:
        atomic_write_json(self._path(checkpoint.id), checkpoint.to_dict())
        entries = self._load_index()
        for index, entry in enumerate(entries):
            if entry.get("id") == checkpoint.id:
                entries[index] = checkpoint.index_entry()
        self._save_index(entries)
