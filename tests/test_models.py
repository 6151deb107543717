"""Tests for scraped records and the identifier index."""

from pathlib import Path

import pytest

from onenote_export.models import (
    AcquisitionOutcome,
    CrossReference,
    IdentifierIndex,
    IdentifierIndexEntry,
    ResourceDescriptor,
    Strategy,
    is_cloud_url,
    is_valid_id,
)


class TestIsCloudUrl:
    @pytest.mark.parametrize("url", [
        "https://contoso.sharepoint.com/a/b.pdf",
        "https://contoso-my.sharepoint.com/personal/x/y.docx",
        "https://onedrive.live.com/?cid=1",
        "https://1drv.ms/b/s!abc",
    ])
    def test_cloud_hosts(self, url):
        assert is_cloud_url(url)

    @pytest.mark.parametrize("url", [
        "",
        None,
        "https://example.com/file.pdf",
        "https://notsharepoint.com/file.pdf",
        "https://example.com/?next=https://contoso.sharepoint.com",
        "data:application/pdf;base64,AAAA",
    ])
    def test_other_urls(self, url):
        assert not is_cloud_url(url)


class TestIsValidId:
    def test_junk_ids(self):
        assert not is_valid_id("")
        assert not is_valid_id("undefined")
        assert not is_valid_id("null")
        assert not is_valid_id(None)

    def test_real_id(self):
        assert is_valid_id("{ABC-123}{1}")


class TestResourceDescriptor:
    def test_from_scraped(self):
        d = ResourceDescriptor.from_scraped({
            "id": "att_0",
            "src": "https://contoso.sharepoint.com/report.pdf",
            "originalName": "report.pdf",
        })
        assert d.id == "att_0"
        assert d.original_name == "report.pdf"
        assert d.is_cloud_hosted

    def test_from_scraped_defaults(self):
        d = ResourceDescriptor.from_scraped({"id": 3})
        assert d.id == "3"
        assert d.source_url == ""
        assert d.original_name == "file"
        assert not d.is_cloud_hosted


class TestAcquisitionOutcome:
    def test_truthiness(self):
        assert AcquisitionOutcome(True, Strategy.DIRECT, True)
        assert not AcquisitionOutcome(False)

    def test_strategy_labels(self):
        assert [s.value for s in Strategy] == ["Direct", "UI Click", "Fallback"]


class TestIdentifierIndex:
    def test_add_and_lookup(self, tmp_path):
        index = IdentifierIndex()
        entry = IdentifierIndexEntry(raw_id="{a}", location=tmp_path / "a.md")
        index.add(entry)

        assert "{a}" in index
        assert index.get("{a}") is entry
        assert index.get("{b}") is None
        assert len(index) == 1
        assert index.items() == [("{a}", entry)]

    def test_rejects_duplicates(self, tmp_path):
        index = IdentifierIndex()
        index.add(IdentifierIndexEntry(raw_id="{a}", location=tmp_path / "a.md"))
        with pytest.raises(ValueError, match="Duplicate"):
            index.add(IdentifierIndexEntry(raw_id="{a}", location=tmp_path / "other.md"))

    @pytest.mark.parametrize("raw_id", ["", "undefined", "null"])
    def test_rejects_invalid_ids(self, tmp_path, raw_id):
        index = IdentifierIndex()
        with pytest.raises(ValueError, match="Invalid"):
            index.add(IdentifierIndexEntry(raw_id=raw_id, location=tmp_path / "a.md"))

    def test_frozen_index_is_read_only(self, tmp_path):
        index = IdentifierIndex().freeze()
        assert index.frozen
        with pytest.raises(ValueError, match="frozen"):
            index.add(IdentifierIndexEntry(raw_id="{a}", location=tmp_path / "a.md"))

    def test_manifest_round_trip(self, tmp_path):
        index = IdentifierIndex()
        index.add(IdentifierIndexEntry(raw_id="{s}", location=tmp_path / "Section", is_container=True))
        index.add(IdentifierIndexEntry(
            raw_id="{p}",
            location=tmp_path / "Section" / "Page.md",
            cross_references=[CrossReference("link_0", "onenote:page-id={s}", "Sec")],
        ))

        data = index.to_dict(tmp_path)
        assert data["entries"][1]["path"] == "Section/Page.md"

        other_root = Path("/elsewhere")
        loaded = IdentifierIndex.from_dict(data, other_root)
        assert loaded.keys() == ["{s}", "{p}"]
        assert loaded.get("{s}").is_container
        assert loaded.get("{p}").location == other_root / "Section" / "Page.md"
        assert loaded.get("{p}").cross_references == [CrossReference("link_0", "onenote:page-id={s}", "Sec")]

    def test_from_dict_skips_junk_ids(self, tmp_path):
        data = {"version": 1, "entries": [
            {"id": "undefined", "path": "x.md"},
            {"id": "{ok}", "path": "ok.md"},
        ]}
        loaded = IdentifierIndex.from_dict(data, tmp_path)
        assert loaded.keys() == ["{ok}"]
