"""Instruction Catalog

Indexes the externally supplied instruction entries the orchestrator selects
from. The engine never interprets entry content; it only needs an id, a type,
a tag set and an approximate size cost per entry.

Catalog sources:
    - A sequence of records (dicts) supplied by the caller
    - A YAML manifest with an ``instructions:`` list
    - A directory of ``*.instructions.md`` files with YAML frontmatter:

        ---
        id: security/input-validation
        type: domain
        tags: [security, technique:input-validation]
        size_cost: 350
        ---

        # Markdown Content

An inverted index (tag -> entries) is built once at load time so lookups during
selection cost O(matches) instead of a scan of the whole catalog.
"""

import logging
import re
import threading
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path

import yaml

from guidance_engine.models import InstructionEntry, InstructionType, tag_list

logger = logging.getLogger(__name__)

INSTRUCTION_SUFFIX = ".instructions.md"

# Rough token estimate for entries that do not declare size_cost
CHARS_PER_TOKEN = 4

FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)$", re.DOTALL)


class CatalogError(Exception):
    """Raised when a catalog source cannot be read at all."""
    pass


class InstructionCatalog:
    """Validated, indexed, read-only collection of instruction entries."""

    def __init__(self, entries: Iterable[InstructionEntry] = (), root: Path | None = None):
        """
        Build catalog from entries.

        Inconsistent entries (empty or duplicate id, negative size cost, a path
        that does not exist under root) are logged and excluded instead of
        failing the whole catalog.

        Args:
            entries: Instruction entries in catalog order
            root: Directory entry paths are relative to; enables file checks
        """
        self.root = Path(root) if root else None
        self.excluded: list[tuple[str, str]] = []
        self._entries: list[InstructionEntry] = []
        self._by_id: dict[str, InstructionEntry] = {}
        self._position: dict[str, int] = {}
        self._by_tag: dict[str, list[InstructionEntry]] = {}
        self._by_type: dict[InstructionType, list[InstructionEntry]] = {}

        for entry in entries:
            self._add(entry)

    @classmethod
    def from_records(
        cls, records: Iterable[dict], root: Path | None = None
    ) -> "InstructionCatalog":
        """
        Build catalog from raw records (catalog feed).

        Args:
            records: Dicts with id, path, type, tags, size_cost
            root: Optional directory to verify entry paths against

        Returns:
            InstructionCatalog with malformed records excluded
        """
        catalog = cls(root=root)
        for record in records:
            try:
                entry = InstructionEntry.from_dict(record)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                record_id = record.get("id", "<missing id>") if isinstance(record, dict) else "<invalid>"
                catalog._exclude(str(record_id), f"malformed record: {e}")
                continue
            catalog._add(entry)
        return catalog

    def _exclude(self, entry_id: str, reason: str) -> None:
        logger.warning(f"Excluding catalog entry '{entry_id}': {reason}")
        self.excluded.append((entry_id, reason))

    def _check(self, entry: InstructionEntry) -> str | None:
        if not entry.id.strip():
            return "empty id"
        if entry.id in self._by_id:
            return "duplicate id"
        if entry.size_cost < 0:
            return f"negative size_cost ({entry.size_cost})"
        if self.root and entry.path and not (self.root / entry.path).exists():
            return f"referenced file not found: {entry.path}"
        return None

    def _add(self, entry: InstructionEntry) -> None:
        problem = self._check(entry)
        if problem:
            self._exclude(entry.id, problem)
            return

        self._position[entry.id] = len(self._entries)
        self._entries.append(entry)
        self._by_id[entry.id] = entry
        self._by_type.setdefault(entry.type, []).append(entry)
        for tag in entry.tags:
            self._by_tag.setdefault(tag, []).append(entry)

    @property
    def entries(self) -> tuple[InstructionEntry, ...]:
        return tuple(self._entries)

    @property
    def core_entries(self) -> tuple[InstructionEntry, ...]:
        return self.of_type(InstructionType.CORE)

    def get(self, entry_id: str) -> InstructionEntry | None:
        return self._by_id.get(entry_id)

    def tagged(self, tag: str) -> tuple[InstructionEntry, ...]:
        """Entries carrying a tag, in catalog order."""
        return tuple(self._by_tag.get(tag.lower(), ()))

    def of_type(self, entry_type: InstructionType) -> tuple[InstructionEntry, ...]:
        """Entries of one type, in catalog order."""
        return tuple(self._by_type.get(entry_type, ()))

    def position(self, entry: InstructionEntry) -> int:
        """Catalog order of an entry (stable tie-break during selection)."""
        return self._position[entry.id]

    def stats(self) -> dict:
        """Counts for diagnostics."""
        return {
            "total_count": len(self._entries),
            "by_type": {t.value: len(v) for t, v in sorted(self._by_type.items())},
            "tag_count": len(self._by_tag),
            "total_size_cost": sum(e.size_cost for e in self._entries),
            "excluded_count": len(self.excluded),
            "excluded": [{"id": i, "reason": r} for i, r in self.excluded],
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[InstructionEntry]:
        return iter(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._by_id


# =============================================================================
# LOADING
# =============================================================================


def load_catalog(path: Path, verify_paths: bool = True) -> InstructionCatalog:
    """
    Load catalog from a YAML manifest or an instruction directory.

    Args:
        path: Manifest file or directory of *.instructions.md files
        verify_paths: Exclude entries whose path does not exist

    Returns:
        Loaded InstructionCatalog

    Raises:
        CatalogError: If path does not exist or the manifest is unreadable
    """
    path = Path(path)
    if not path.exists():
        raise CatalogError(f"Catalog source not found: {path}")
    if path.is_dir():
        return load_catalog_directory(path)
    return load_catalog_manifest(path, verify_paths=verify_paths)


def load_catalog_manifest(path: Path, verify_paths: bool = True) -> InstructionCatalog:
    """
    Load catalog from YAML manifest.

    Expected format:
        instructions:
          - id: core/baseline
            path: core/baseline.instructions.md
            type: core
            tags: [core]
            size_cost: 400
    """
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except (yaml.YAMLError, OSError) as e:
        raise CatalogError(f"Cannot read catalog manifest {path}: {e}")

    records = data.get("instructions", []) if isinstance(data, dict) else []
    if not isinstance(records, list):
        raise CatalogError(f"'instructions' must be a list in {path}")

    root = Path(path).parent if verify_paths else None
    catalog = InstructionCatalog.from_records(records, root=root)
    logger.info(
        f"Loaded {len(catalog)} catalog entries from manifest {path} "
        f"({len(catalog.excluded)} excluded)"
    )
    return catalog


def load_catalog_directory(directory: Path) -> InstructionCatalog:
    """
    Load catalog from a directory of instruction files.

    Files are visited in sorted order so that catalog order (and with it every
    selection tie-break) is reproducible across machines.
    """
    directory = Path(directory)
    records = []
    for file_path in sorted(directory.rglob(f"*{INSTRUCTION_SUFFIX}")):
        record = _parse_instruction_file(file_path, directory)
        if record is not None:
            records.append(record)

    catalog = InstructionCatalog.from_records(records, root=directory)
    logger.info(
        f"Loaded {len(catalog)} catalog entries from {directory} "
        f"({len(catalog.excluded)} excluded)"
    )
    return catalog


def _parse_instruction_file(file_path: Path, root: Path) -> dict | None:
    """
    Parse instruction file frontmatter into a catalog record.

    Missing fields are derived: id from the relative path, type from the
    parent directory name when it names a type (else "domain"), size_cost
    from the content length.

    Returns:
        Record dict or None if parsing fails
    """
    try:
        content = file_path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error(f"Error reading instruction file {file_path}: {e}")
        return None

    frontmatter_match = FRONTMATTER_PATTERN.match(content)
    if frontmatter_match:
        try:
            metadata = yaml.safe_load(frontmatter_match.group(1)) or {}
        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error in {file_path}: {e}")
            return None
        body = frontmatter_match.group(2)
    else:
        metadata = {}
        body = content

    if not isinstance(metadata, dict):
        logger.error(f"Frontmatter in {file_path} is not a mapping")
        return None

    relative = file_path.relative_to(root).as_posix()
    default_id = relative[: -len(INSTRUCTION_SUFFIX)]
    dir_name = file_path.parent.name.lower()
    default_type = (
        dir_name
        if dir_name in {t.value for t in InstructionType}
        else InstructionType.DOMAIN.value
    )

    # 'categories' and 'domains' are accepted as additional tag sources
    tags: list[str] = []
    for key in ("tags", "categories", "domains"):
        try:
            values = tag_list(metadata.get(key))
        except TypeError as e:
            logger.error(f"Invalid '{key}' in {file_path}: {e}")
            return None
        for tag in values:
            if tag not in tags:
                tags.append(tag)

    size_cost = metadata.get("size_cost")
    if size_cost is None:
        size_cost = len(body.strip()) // CHARS_PER_TOKEN + 1

    return {
        "id": metadata.get("id", default_id),
        "path": relative,
        "type": metadata.get("type", default_type),
        "tags": tags,
        "size_cost": size_cost,
    }


# =============================================================================
# ACTIVE CATALOG
# =============================================================================


class CatalogHolder:
    """
    Holds the active catalog for concurrent readers.

    Readers take a reference via ``current`` and keep using it for the whole
    request, so they never observe a half-updated catalog. ``reload`` swaps the
    reference under a writer lock.
    """

    def __init__(self, catalog: InstructionCatalog | None = None):
        self._catalog = catalog if catalog is not None else InstructionCatalog()
        self._lock = threading.Lock()
        self._loaded_at = datetime.now()

    @property
    def current(self) -> InstructionCatalog:
        return self._catalog

    @property
    def loaded_at(self) -> datetime:
        return self._loaded_at

    def reload(self, catalog: InstructionCatalog) -> dict:
        """
        Atomically replace the active catalog.

        Returns:
            Dictionary with old_count, new_count, excluded_count, timestamp
        """
        with self._lock:
            old_count = len(self._catalog)
            self._catalog = catalog
            self._loaded_at = datetime.now()

        logger.info(
            f"Catalog reloaded: {old_count} → {len(catalog)} entries "
            f"({len(catalog.excluded)} excluded)"
        )
        return {
            "old_count": old_count,
            "new_count": len(catalog),
            "excluded_count": len(catalog.excluded),
            "timestamp": self._loaded_at.isoformat(),
        }
