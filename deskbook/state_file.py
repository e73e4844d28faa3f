from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from typing import Any, Iterable, Protocol

from deskbook.domain import Mutation
from deskbook.ledger import Ledger

_RESOURCE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class Store(Protocol):
    def load_ledger(self, resource_id: str) -> Ledger: ...

    def commit(self, resource_id: str, mutations: Iterable[Mutation]) -> None: ...


class MemoryStore:
    """Store keeping serialized ledgers in a dict. Loads return independent copies."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def load_ledger(self, resource_id: str) -> Ledger:
        with self._lock:
            raw = self._data.get(resource_id)
            if raw is None:
                return Ledger(resource_id)
            return Ledger.from_dict(json.loads(json.dumps(raw)))

    def commit(self, resource_id: str, mutations: Iterable[Mutation]) -> None:
        with self._lock:
            raw = self._data.get(resource_id)
            ledger = Ledger.from_dict(raw) if raw is not None else Ledger(resource_id)
            ledger.apply_all(mutations)
            self._data[resource_id] = ledger.to_dict()


class JsonFileStore:
    """One JSON file per resource under a state directory.

    Writes go through a temp file and os.replace, so a reader sees either the
    previous or the new ledger, never a partial one.
    """

    def __init__(self, state_dir: str) -> None:
        self.state_dir = state_dir
        self._lock = threading.Lock()

    def path_for(self, resource_id: str) -> str:
        if not _RESOURCE_ID_RE.match(resource_id):
            raise ValueError(f"Invalid resource id for file store: {resource_id!r}")
        return os.path.join(self.state_dir, f"{resource_id}.json")

    def load_ledger(self, resource_id: str) -> Ledger:
        path = self.path_for(resource_id)
        if not os.path.exists(path):
            return Ledger(resource_id)

        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            # Unlike a cache, the ledger is authoritative: refuse to start fresh.
            raise RuntimeError(f"Corrupted ledger file {path}: {e}") from e

        return Ledger.from_dict(raw)

    def commit(self, resource_id: str, mutations: Iterable[Mutation]) -> None:
        mutations = list(mutations)
        if not mutations:
            return

        with self._lock:
            ledger = self.load_ledger(resource_id)
            ledger.apply_all(mutations)
            _write_json_atomic(self.path_for(resource_id), ledger.to_dict())


def _write_json_atomic(path: str, data: dict[str, Any]) -> None:
    folder = os.path.dirname(os.path.abspath(path))
    if folder and not os.path.exists(folder):
        os.makedirs(folder, exist_ok=True)

    with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", dir=folder, suffix=".tmp") as tf:
        json.dump(data, tf, ensure_ascii=False, indent=2)
        tmp_name = tf.name

    os.replace(tmp_name, path)
