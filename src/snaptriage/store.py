"""
Durable results store: one JSON file per run.

Writes are atomic (temp file in the same directory, fsync, os.replace), so
readers see either a complete record or none. Record bodies are written
outside the lock; only id allocation and the rename are serialized. Reads
take no lock. The id of a record is its file name.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any

from snaptriage._types import Page, RunResult
from snaptriage.errors import StorageError

logger = logging.getLogger(__name__)

RUN_ID_PATTERN = re.compile(r"^(?P<ms>\d{13})-(?P<seq>\d{6,})$")
MAX_PAGE_SIZE = 200


def is_valid_run_id(run_id: str) -> bool:
    return bool(RUN_ID_PATTERN.match(run_id))


def _sequence(run_id: str) -> int:
    m = RUN_ID_PATTERN.match(run_id)
    return int(m.group("seq")) if m else -1


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass


class ResultsStore:
    """
    File-backed store for run results.

    Example:
        >>> store = ResultsStore(".data/runs")
        >>> run_id = store.save(result)
        >>> store.get(run_id).status
        <RunStatus.COMPLETED: 'completed'>
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create results directory {self.directory}: {e}") from e
        self._lock = threading.Lock()
        self._last_ms, self._last_seq = self._recover()

    def _recover(self) -> tuple[int, int]:
        last_ms, last_seq = 0, 0
        for run_id in self._ids():
            m = RUN_ID_PATTERN.match(run_id)
            if m is None:
                continue
            last_ms = max(last_ms, int(m.group("ms")))
            last_seq = max(last_seq, int(m.group("seq")))
        if last_seq:
            logger.info(f"Recovered results store at sequence {last_seq} ({self.directory})")
        return last_ms, last_seq

    def _ids(self) -> list[str]:
        """All committed ids, newest first."""
        try:
            names = os.listdir(self.directory)
        except OSError as e:
            raise StorageError(f"Cannot list results directory {self.directory}: {e}") from e
        ids = [name[:-5] for name in names if name.endswith(".json") and is_valid_run_id(name[:-5])]
        return sorted(ids, key=_sequence, reverse=True)

    def _path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.json"

    def _write_temp(self, data: dict[str, Any]) -> str:
        """Write `data` to a fresh fsynced temp file in the store directory and return its path."""
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".part")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
        except BaseException:
            _discard(tmp_path)
            raise
        return tmp_path

    def save(self, result: RunResult) -> str:
        """
        Persist a result and return its newly assigned id.

        The record body is written and synced before the lock is taken; only
        id allocation and the final rename are serialized, so id order
        matches the order in which saves complete.

        Raises:
            StorageError: If the record cannot be written. No id is consumed.
        """
        data = result.to_dict()
        # The id lives in the file name.
        data.pop("id", None)
        try:
            tmp_path = self._write_temp(data)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write run record: {e}")
            raise StorageError(f"Failed to persist run: {e}") from e

        try:
            with self._lock:
                ms = max(int(time.time() * 1000), self._last_ms)
                seq = self._last_seq + 1
                run_id = f"{ms:013d}-{seq:06d}"
                os.replace(tmp_path, self._path(run_id))
                self._last_ms, self._last_seq = ms, seq
        except OSError as e:
            _discard(tmp_path)
            logger.error(f"Failed to commit run record: {e}")
            raise StorageError(f"Failed to persist run: {e}") from e
        logger.info(f"Saved run {run_id} ({result.status.value})")
        return run_id

    def _load(self, run_id: str) -> RunResult | None:
        try:
            with open(self._path(run_id), encoding="utf-8") as fh:
                data = json.load(fh)
            return replace(RunResult.from_dict(data), id=run_id)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skipping unreadable run record {run_id}: {e}")
            return None

    def get(self, run_id: str) -> RunResult | None:
        """Return the result with this id, or None if unknown, malformed or unreadable."""
        if not is_valid_run_id(run_id):
            return None
        return self._load(run_id)

    def list(self, limit: int = 20, offset: int = 0) -> Page:
        """
        Return one page of run summaries, newest first.

        `total` and `offset` refer to committed record files. A record that
        exists but cannot be parsed still counts towards `total` and occupies
        an offset position, but never appears in `items`.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        ids = self._ids()
        items = []
        for run_id in ids[offset:]:
            record = self._load(run_id)
            if record is None:
                continue
            items.append(record.summary())
            if len(items) == limit:
                break
        return Page(items=tuple(items), total=len(ids), limit=limit, offset=offset)

    def latest(self) -> RunResult | None:
        for run_id in self._ids():
            record = self._load(run_id)
            if record is not None:
                return record
        return None

    def count(self) -> int:
        return len(self._ids())
