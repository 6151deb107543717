"""Tests for the command line entry point."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from onenote_export import cli
from onenote_export.models import AcquisitionOutcome, Strategy


def _exported_notebook(root):
    (root / "S").mkdir(parents=True)
    (root / "S" / "A.md").write_text("[[B]]<!-- onenote-link:link_0 -->", encoding="utf-8")
    (root / "S" / "B.md").write_text("plain", encoding="utf-8")
    manifest = {"version": 1, "entries": [
        {"id": "{a}", "path": "S/A.md", "is_container": False,
         "links": [{"id": "link_0", "href": "onenote:page-id={b}", "text": "B"}]},
        {"id": "{b}", "path": "S/B.md", "is_container": False, "links": []},
    ]}
    (root / ".onenote-index.json").write_text(json.dumps(manifest), encoding="utf-8")


class TestBuildParser:
    def test_resolve_args(self):
        args = cli.build_parser().parse_args(["resolve", "out", "--index", "idx.json"])
        assert args.command == "resolve"
        assert str(args.output_root) == "out"
        assert str(args.index) == "idx.json"
        assert args.func is cli._cmd_resolve

    def test_resolve_defaults_to_output_dir(self):
        args = cli.build_parser().parse_args(["resolve"])
        assert args.output_root == Path(cli.OUTPUT_DIR)
        assert args.index is None

    def test_fetch_args(self):
        args = cli.build_parser().parse_args(["-v", "fetch", "https://x/y.pdf", "dest"])
        assert args.verbose
        assert args.name is None
        assert args.func is cli._cmd_fetch

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestResolveCommand:
    def test_rewrites_pages(self, tmp_path, capsys):
        _exported_notebook(tmp_path)

        assert cli.main(["resolve", str(tmp_path)]) == 0

        assert (tmp_path / "S" / "A.md").read_text() == "[[S/B|B]]"
        assert "Rewrote 1 of 2 pages" in capsys.readouterr().out

    def test_missing_manifest(self, tmp_path):
        assert cli.main(["resolve", str(tmp_path)]) == 1


class TestFetchCommand:
    def test_fetch_into_directory(self, tmp_path, capsys):
        acquire = AsyncMock(return_value=AcquisitionOutcome(True, Strategy.FALLBACK, True))
        with patch.object(cli.ResourceCoordinator, "acquire", acquire):
            code = cli.main(["fetch", "https://files.example.com/docs/My%20Report.pdf", str(tmp_path)])

        assert code == 0
        descriptor, target = acquire.await_args.args
        assert target == tmp_path / "My Report.pdf"
        assert descriptor.original_name == "My Report.pdf"
        assert not descriptor.is_cloud_hosted
        assert "Saved" in capsys.readouterr().out

    def test_fetch_cloud_url_with_name(self, tmp_path):
        acquire = AsyncMock(return_value=AcquisitionOutcome(True, Strategy.DIRECT, True))
        with patch.object(cli.ResourceCoordinator, "acquire", acquire):
            cli.main([
                "fetch", "https://contoso.sharepoint.com/x/download.aspx", str(tmp_path), "--name", "deck.pptx",
            ])

        descriptor, target = acquire.await_args.args
        assert descriptor.is_cloud_hosted
        assert target == tmp_path / "deck.pptx"

    def test_fetch_failure(self, tmp_path):
        acquire = AsyncMock(return_value=AcquisitionOutcome(False))
        with patch.object(cli.ResourceCoordinator, "acquire", acquire):
            code = cli.main(["fetch", "https://files.example.com/a.pdf", str(tmp_path / "a.pdf")])
        assert code == 1
