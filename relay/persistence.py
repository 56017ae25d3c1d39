"""
Durable mirror of the order store.

The mirror is a single ``{tag: [order, ...]}`` blob read once at startup
and fully rewritten after every store mutation.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Protocol

from relay.exceptions import PersistenceError
from relay.models import Order
from relay.observability import get_logger

logger = get_logger(__name__)


class OrderMirror(Protocol):
    """Key-value persistence the order store writes through."""

    def load(self) -> Dict[str, List[Order]]:
        ...

    def save(self, data: Dict[str, List[Order]]) -> None:
        ...


class JsonFileMirror:
    """
    JSON file mirror. Writes go to a temp file in the same directory and
    are swapped in with ``os.replace`` so a crash mid-write never leaves a
    truncated file behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, List[Order]]:
        if not self.path.exists():
            logger.info(f"No order mirror at {self.path}, starting empty")
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {self.path}", details=str(e)) from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Unexpected order mirror format in {self.path}")
        return data

    def save(self, data: Dict[str, List[Order]]) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Failed to write {self.path}", details=str(e)) from e


class MemoryMirror:
    """Mirror kept in memory; used by tests and dry runs."""

    def __init__(self, initial: Dict[str, List[Order]] = None):
        self.data: Dict[str, List[Order]] = json.loads(json.dumps(initial or {}))
        self.saves = 0

    def load(self) -> Dict[str, List[Order]]:
        return json.loads(json.dumps(self.data))

    def save(self, data: Dict[str, List[Order]]) -> None:
        self.data = json.loads(json.dumps(data))
        self.saves += 1
