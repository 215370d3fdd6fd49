"""Tests for legacy discovery, parsing and manifest generation."""

from __future__ import annotations

import pytest

from ctxstore.legacy import (
    LegacyParseError,
    LegacyReader,
    Manifest,
    infer_context_type,
    legacy_record_id,
    parse_markdown,
)


def _reader(root, **kwargs) -> LegacyReader:
    return LegacyReader(root, project="acme", **kwargs)


class TestParsing:
    def test_headings_inside_fences_are_text(self):
        raw = "# Title\n\nintro\n\n## A\ntext\n```\n## not a heading\n```\n### B\nmore\n"
        title, sections = parse_markdown(raw)
        assert title == "Title"
        assert [s.title for s in sections if s.level] == ["A", "B"]
        assert "## not a heading" in sections[1].text
        assert sections[0].text == "intro"

    @pytest.mark.parametrize(("filename", "title", "expected"), [
        ("project-brief.md", None, "project"),
        ("progress.md", None, "progress"),
        ("tech-context.md", None, "tech"),
        ("project-style-guide.md", None, "style"),
        ("product-context.md", None, "product"),
        ("session-2024-01.md", None, "session"),
        ("agent-notes.md", None, "agent"),
        ("notes.md", "Technical decisions", "tech"),
        ("random.txt", None, "generic"),
    ])
    def test_infer_context_type(self, filename, title, expected):
        assert infer_context_type(filename, title) == expected

    def test_legacy_record_id(self):
        assert legacy_record_id("tech-context.md") == "legacy-tech-context-md"
        assert legacy_record_id("notes_a.md") == legacy_record_id("notes-a.md")

    def test_invalid_json_raises(self, tmp_path):
        (tmp_path / "broken.json").write_text("{nope")
        reader = _reader(tmp_path)
        with pytest.raises(LegacyParseError):
            reader.parse_file(reader.discover().files[0])


class TestDiscovery:
    def test_missing_root(self, tmp_path):
        result = _reader(tmp_path / "absent").discover()
        assert result.success is False
        assert result.files == []

    def test_only_known_formats_sorted(self, legacy_dir):
        (legacy_dir / "image.png").write_bytes(b"\x89PNG")
        (legacy_dir / "nested").mkdir()
        names = [f.name for f in _reader(legacy_dir).discover().files]
        assert names == ["progress.md", "project-brief.md", "settings.json", "tech-context.md"]

    def test_parse_all_structure(self, legacy_dir):
        parsed = _reader(legacy_dir).parse_all()
        structure = parsed["structure"]
        assert structure["total_files"] == 4
        assert structure["by_format"] == {"markdown": 3, "json": 1}
        assert structure["references"] == {
            "progress.md": ["project-brief"],
            "project-brief.md": ["tech-context"],
        }


class TestManifest:
    def test_four_file_manifest(self, legacy_dir):
        manifest = _reader(legacy_dir).generate_manifest()
        assert len(manifest.files) == 4
        assert manifest.conflicts == []
        targets = {f.name: (f.target_hierarchy, f.target_type) for f in manifest.files}
        assert targets == {
            "project-brief.md": (["acme"], "project"),
            "tech-context.md": (["acme", "technical"], "task"),
            "progress.md": (["acme", "project"], "task"),
            "settings.json": (["acme", "general"], "task"),
        }
        assert len({f.storage_key for f in manifest.files}) == 4
        assert len(manifest.mappings) == 4

    def test_manifest_is_deterministic(self, legacy_dir):
        first = _reader(legacy_dir).generate_manifest().to_dict()
        second = _reader(legacy_dir).generate_manifest().to_dict()
        for d in (first, second):
            d.pop("timestamp")
        assert first == second

    def test_storage_key_collision_reported(self, tmp_path):
        (tmp_path / "notes_a.md").write_text("one")
        (tmp_path / "notes-a.md").write_text("two")
        manifest = _reader(tmp_path).generate_manifest()
        assert len(manifest.conflicts) == 1
        conflict = manifest.conflicts[0]
        assert conflict["type"] == "storage_key_collision"
        assert len(conflict["sources"]) == 2
        assert any(r["type"] == "warning" for r in manifest.recommendations)

    def test_large_file_recommendation(self, tmp_path):
        (tmp_path / "big.txt").write_text("x" * 150_000)
        manifest = _reader(tmp_path).generate_manifest()
        assert any("big.txt" in r["message"] for r in manifest.recommendations)

    def test_unknown_steps_warned(self, legacy_dir):
        manifest = _reader(legacy_dir, steps=["content_extraction", "mystery"]).generate_manifest()
        assert any("mystery" in w for w in manifest.warnings)

    def test_missing_root_gives_empty_manifest(self, tmp_path):
        manifest = _reader(tmp_path / "absent").generate_manifest()
        assert manifest.files == []
        assert manifest.warnings

    def test_from_dict_roundtrip(self, legacy_dir):
        manifest = _reader(legacy_dir).generate_manifest()
        assert Manifest.from_dict(manifest.to_dict()) == manifest
