"""
Downstream stores that receive routed entities (references, data files, ...).

The orchestrator only appends to these; it never reads them back, except
the data file catalog consulted by the data assessment and planning steps.
"""

import copy
import csv
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

DATA_SUFFIXES = {".csv", ".tsv", ".json", ".jsonl", ".parquet", ".xlsx", ".xls", ".txt", ".feather"}
INDEX_FILE = "_index.json"


class EntityStore(Protocol):
    """A collection that accepts routed items."""

    def append(self, item: dict[str, Any]) -> None:
        ...


class DataCatalog(Protocol):
    """Lists the data files available to a project."""

    def list_data_files(self) -> list[dict[str, Any]]:
        ...


class MemoryStore:
    """In-process store; keeps copies of the appended items."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self.items: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def append(self, item: dict[str, Any]) -> None:
        with self._lock:
            self.items.append(copy.deepcopy(item))

    def all(self) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.items)

    def list_data_files(self) -> list[dict[str, Any]]:
        return self.all()

    def __len__(self) -> int:
        return len(self.items)


class JsonListStore:
    """Store backed by a JSON array on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, "r") as f:
            return json.load(f)

    def append(self, item: dict[str, Any]) -> None:
        with self._lock:
            items = self._read()
            items.append(item)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(items, f, indent=2, default=str)

    def all(self) -> list[dict[str, Any]]:
        with self._lock:
            return self._read()


def _csv_columns(path: Path) -> list[str]:
    delimiter = "\t" if path.suffix == ".tsv" else ","
    try:
        with open(path, "r", newline="") as f:
            header = next(csv.reader(f, delimiter=delimiter), [])
    except (OSError, UnicodeDecodeError):
        return []
    return [h.strip() for h in header]


class DataFileStore:
    """
    Writes each appended file into a directory.

    Also serves as the project's data catalog: every file in the directory
    (uploaded or routed) is listed by ``list_data_files``.
    """

    def __init__(self, directory: Path, default_name: str = "data.csv"):
        self.directory = Path(directory)
        self.default_name = default_name
        self._lock = threading.Lock()

    def append(self, item: dict[str, Any]) -> None:
        filename = Path(str(item.get("filename") or self.default_name)).name
        content = item.get("content")
        if content is None:
            content = item.get("data", "")
        if not isinstance(content, str):
            content = json.dumps(content, indent=2, default=str)

        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / filename).write_text(content)

            index_path = self.directory / INDEX_FILE
            index = json.loads(index_path.read_text()) if index_path.exists() else {}
            index[filename] = {
                k: v for k, v in item.items() if k not in ("content", "data", "filename")
            }
            index_path.write_text(json.dumps(index, indent=2, default=str))
        logger.debug("Stored %s in %s", filename, self.directory)

    def list_data_files(self) -> list[dict[str, Any]]:
        if not self.directory.exists():
            return []
        index_path = self.directory / INDEX_FILE
        index = json.loads(index_path.read_text()) if index_path.exists() else {}

        files = []
        for path in sorted(self.directory.iterdir()):
            if not path.is_file() or path.name.startswith((".", "_")):
                continue
            if path.suffix.lower() not in DATA_SUFFIXES:
                continue
            info = index.get(path.name, {})
            files.append({
                "filename": path.name,
                "file_type": info.get("file_type", path.suffix.lstrip(".") or "data"),
                "description": info.get("description", ""),
                "columns": _csv_columns(path) if path.suffix in (".csv", ".tsv") else info.get("columns", []),
            })
        return files


@dataclass
class ProjectStores:
    """The specialized stores of one project."""
    references: EntityStore
    data_files: EntityStore
    variables: EntityStore
    libraries: EntityStore
    visualizations: EntityStore
    write_ups: EntityStore

    @classmethod
    def in_directory(cls, project_dir: Path) -> "ProjectStores":
        """File-backed stores laid out under a project directory."""
        project_dir = Path(project_dir)
        return cls(
            references=JsonListStore(project_dir / "references.json"),
            data_files=DataFileStore(project_dir / "data"),
            variables=JsonListStore(project_dir / "variables.json"),
            libraries=JsonListStore(project_dir / "libraries.json"),
            visualizations=JsonListStore(project_dir / "visualizations.json"),
            write_ups=DataFileStore(project_dir / "writeups", default_name="research-writeup.md"),
        )

    @classmethod
    def in_memory(cls) -> "ProjectStores":
        return cls(
            references=MemoryStore("references"),
            data_files=MemoryStore("data_files"),
            variables=MemoryStore("variables"),
            libraries=MemoryStore("libraries"),
            visualizations=MemoryStore("visualizations"),
            write_ups=MemoryStore("write_ups"),
        )

    @property
    def catalog(self) -> Optional[DataCatalog]:
        """The data file store when it can list its files."""
        if hasattr(self.data_files, "list_data_files"):
            return self.data_files  # type: ignore[return-value]
        return None
