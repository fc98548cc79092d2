"""Unit tests for the instruction catalog."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from guidance_engine.catalog import (
    CatalogError,
    CatalogHolder,
    InstructionCatalog,
    load_catalog,
    load_catalog_directory,
    load_catalog_manifest,
)
from guidance_engine.models import InstructionType


class TestInstructionCatalog:
    """Tests for catalog validation and indexing."""

    def test_indexes_by_tag_and_type(self, make_entry):
        """Entries are reachable by tag and by type in catalog order."""
        catalog = InstructionCatalog(
            [
                make_entry("core/a", InstructionType.CORE, ("core",)),
                make_entry("sec/a", tags=("security",)),
                make_entry("sec/b", tags=("security", "risk")),
            ]
        )

        assert [e.id for e in catalog.tagged("security")] == ["sec/a", "sec/b"]
        assert [e.id for e in catalog.tagged("SECURITY")] == ["sec/a", "sec/b"]
        assert [e.id for e in catalog.core_entries] == ["core/a"]
        assert catalog.tagged("missing") == ()
        assert "sec/b" in catalog
        assert len(catalog) == 3

    def test_duplicate_id_excluded(self, make_entry):
        """Second entry with the same id is excluded."""
        catalog = InstructionCatalog([make_entry("a"), make_entry("a", size_cost=5)])

        assert len(catalog) == 1
        assert catalog.get("a").size_cost == 100
        assert catalog.excluded == [("a", "duplicate id")]

    def test_negative_cost_excluded(self, make_entry):
        """Negative size cost is inconsistent."""
        catalog = InstructionCatalog([make_entry("a", size_cost=-1)])
        assert len(catalog) == 0
        assert "negative size_cost" in catalog.excluded[0][1]

    def test_empty_id_excluded(self, make_entry):
        """Blank ids are excluded."""
        catalog = InstructionCatalog([make_entry("  ")])
        assert len(catalog) == 0

    def test_from_records_excludes_malformed(self):
        """Malformed records are excluded, valid ones kept."""
        catalog = InstructionCatalog.from_records(
            [
                {"id": "ok", "type": "domain", "tags": ["x"], "size_cost": 10},
                {"id": "bad-type", "type": "wizard"},
                {"type": "domain"},
                {"id": "bad-cost", "size_cost": "lots"},
            ]
        )

        assert catalog.get("ok") is not None
        assert len(catalog) == 1
        excluded_ids = [entry_id for entry_id, _ in catalog.excluded]
        assert excluded_ids == ["bad-type", "<missing id>", "bad-cost"]

    def test_from_records_scalar_tag(self):
        """A single string tag is one tag; a mapping is malformed."""
        catalog = InstructionCatalog.from_records(
            [
                {"id": "sec", "type": "domain", "tags": "Security", "size_cost": 10},
                {"id": "odd", "type": "domain", "tags": {"security": True}},
            ]
        )

        assert catalog.get("sec").tags == frozenset({"security"})
        assert [e.id for e in catalog.tagged("security")] == ["sec"]
        assert [entry_id for entry_id, _ in catalog.excluded] == ["odd"]

    def test_missing_file_excluded_under_root(self, tmp_path):
        """Entries whose file is missing under root are excluded."""
        (tmp_path / "present.md").write_text("x")
        catalog = InstructionCatalog.from_records(
            [
                {"id": "present", "path": "present.md"},
                {"id": "absent", "path": "absent.md"},
            ],
            root=tmp_path,
        )

        assert "present" in catalog
        assert "absent" not in catalog
        assert "referenced file not found" in catalog.excluded[0][1]

    def test_stats(self, make_entry):
        """Stats count entries, types and cost."""
        catalog = InstructionCatalog(
            [
                make_entry("c", InstructionType.CORE, ("core",), 50),
                make_entry("d", tags=("x", "y"), size_cost=70),
            ]
        )
        stats = catalog.stats()

        assert stats["total_count"] == 2
        assert stats["by_type"] == {"core": 1, "domain": 1}
        assert stats["tag_count"] == 3
        assert stats["total_size_cost"] == 120
        assert stats["excluded_count"] == 0


class TestLoadCatalog:
    """Tests for loading catalogs from disk."""

    def test_load_directory(self, sample_catalog_dir):
        """Directory loading reads frontmatter of every instruction file."""
        catalog = load_catalog_directory(sample_catalog_dir)

        assert len(catalog) == 11
        assert catalog.excluded == []
        entry = catalog.get("security/input-validation")
        assert entry.type == InstructionType.DOMAIN
        assert entry.size_cost == 500
        assert "technique:input-validation" in entry.tags
        assert entry.path == "security/input-validation.instructions.md"

    def test_directory_order_is_sorted(self, sample_catalog_dir):
        """Catalog order follows sorted file paths."""
        ids = [entry.id for entry in load_catalog_directory(sample_catalog_dir)]
        assert ids[:2] == ["core/baseline", "core/safety"]
        assert ids == sorted(ids)

    def test_load_manifest(self, sample_manifest):
        """Manifest loading verifies paths relative to the manifest."""
        catalog = load_catalog_manifest(sample_manifest)

        assert len(catalog) == 11
        assert [e.id for e in catalog.core_entries] == ["core/baseline", "core/safety"]

    def test_directory_and_manifest_agree(self, sample_catalog_dir, sample_manifest):
        """Both sources describe the same entries."""
        from_dir = {e.id: e for e in load_catalog(sample_catalog_dir)}
        from_manifest = {e.id: e for e in load_catalog(sample_manifest)}
        assert from_dir == from_manifest

    def test_missing_source_raises(self, tmp_path):
        """A missing catalog source is a CatalogError."""
        with pytest.raises(CatalogError, match="not found"):
            load_catalog(tmp_path / "nowhere")

    def test_invalid_manifest_raises(self, tmp_path):
        """Unreadable YAML is a CatalogError."""
        manifest = tmp_path / "catalog.yaml"
        manifest.write_text("instructions: [unclosed")
        with pytest.raises(CatalogError):
            load_catalog(manifest)

    def test_manifest_instructions_must_be_list(self, tmp_path):
        """instructions: must be a list."""
        manifest = tmp_path / "catalog.yaml"
        manifest.write_text("instructions: {a: 1}\n")
        with pytest.raises(CatalogError, match="must be a list"):
            load_catalog(manifest)

    def test_file_without_frontmatter_gets_defaults(self, tmp_path):
        """Id, type and size cost are derived when frontmatter is absent."""
        core_dir = tmp_path / "core"
        core_dir.mkdir()
        (core_dir / "rules.instructions.md").write_text("x" * 40)

        catalog = load_catalog(tmp_path)
        entry = catalog.get("core/rules")

        assert entry.type == InstructionType.CORE
        assert entry.size_cost == 11
        assert entry.tags == frozenset()

    def test_categories_become_tags(self, tmp_path):
        """categories and domains frontmatter keys feed the tag set."""
        (tmp_path / "a.instructions.md").write_text(
            "---\nid: a\ntags: [x]\ncategories: [y]\ndomains: [z, x]\n---\nbody\n"
        )
        entry = load_catalog(tmp_path).get("a")
        assert entry.tags == frozenset({"x", "y", "z"})

    def test_scalar_frontmatter_tags(self, tmp_path):
        """tags: security in frontmatter is the single tag 'security'."""
        (tmp_path / "a.instructions.md").write_text(
            "---\nid: a\ntags: security\ncategories: review\n---\nbody\n"
        )
        catalog = load_catalog(tmp_path)

        assert catalog.get("a").tags == frozenset({"security", "review"})
        assert [e.id for e in catalog.tagged("security")] == ["a"]

    def test_non_list_frontmatter_tags_skipped(self, tmp_path, caplog):
        """A tags value that is neither string nor list skips the file with an error."""
        (tmp_path / "good.instructions.md").write_text("---\nid: good\n---\nbody\n")
        (tmp_path / "bad.instructions.md").write_text("---\nid: bad\ntags: 42\n---\nbody\n")

        with caplog.at_level("ERROR", logger="guidance_engine.catalog"):
            catalog = load_catalog(tmp_path)

        assert "bad" not in catalog
        assert "good" in catalog
        assert "Invalid 'tags'" in caplog.text

    def test_broken_frontmatter_skipped(self, tmp_path):
        """A file with unparsable frontmatter is skipped, others load."""
        (tmp_path / "good.instructions.md").write_text("---\nid: good\n---\nbody\n")
        (tmp_path / "bad.instructions.md").write_text("---\nid: [oops\n---\nbody\n")

        catalog = load_catalog(tmp_path)

        assert "good" in catalog
        assert len(catalog) == 1


class TestCatalogHolder:
    """Tests for atomic catalog replacement."""

    def test_reload_swaps_catalog(self, make_entry):
        """Reload replaces the active catalog and reports counts."""
        holder = CatalogHolder(InstructionCatalog([make_entry("a")]))
        new_catalog = InstructionCatalog([make_entry("b"), make_entry("c")])

        result = holder.reload(new_catalog)

        assert holder.current is new_catalog
        assert result["old_count"] == 1
        assert result["new_count"] == 2
        assert result["excluded_count"] == 0
        assert "timestamp" in result

    def test_default_is_empty(self):
        """A holder without a catalog starts empty."""
        assert len(CatalogHolder().current) == 0

    def test_readers_see_whole_catalogs(self, make_entry):
        """Concurrent readers only ever observe one of the complete catalogs."""
        small = InstructionCatalog([make_entry("a")])
        large = InstructionCatalog([make_entry(f"e{i}") for i in range(50)])
        holder = CatalogHolder(small)
        barrier = threading.Barrier(8)
        observed_sizes = []

        def read(_):
            barrier.wait()
            sizes = set()
            for _ in range(200):
                catalog = holder.current
                sizes.add(len(list(catalog)))
            return sizes

        def swap(_):
            barrier.wait()
            for i in range(200):
                holder.reload(large if i % 2 == 0 else small)
            return set()

        with ThreadPoolExecutor(max_workers=8) as executor:
            futures = [executor.submit(swap, 0)] + [
                executor.submit(read, i) for i in range(7)
            ]
            for future in futures:
                observed_sizes.extend(future.result())

        assert set(observed_sizes) <= {1, 50}
