"""Tests for CLI interface.

Test Coverage:
    - Argument parsing
    - Command routing
    - Fetch command with a mocked pipeline
    - Error handling and exit codes
"""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fieldline.cli import cmd_version, create_parser, main
from fieldline.config import settings
from fieldline.pipeline import FetchError, RunResult


class TestParserCreation:
    """Test CLI parser creation."""

    def test_parser_has_commands(self):
        """Parser exposes --help."""
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["--help"])

    def test_parser_prog_name(self):
        """Parser has correct program name."""
        parser = create_parser()
        assert parser.prog == "fieldline"


class TestFetchArguments:
    """Test fetch command parsing."""

    def test_fetch_requires_source(self):
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["fetch"])

    def test_fetch_defaults(self):
        parser = create_parser()
        args = parser.parse_args(["fetch", "campbell"])
        assert args.command == "fetch"
        assert args.source_id == "campbell"
        assert args.output is None
        assert args.format == "geojson"
        assert args.force is False
        assert args.cache_dir == Path(settings.cache_dir)
        assert args.concurrency == settings.concurrency
        assert args.batch_size == settings.batch_size
        assert args.max_batches == settings.max_batches
        assert args.max_age_hours == settings.max_age_hours

    def test_fetch_overrides(self):
        parser = create_parser()
        args = parser.parse_args([
            "fetch", "sf-urban",
            "--format", "ndjson",
            "--output", "/tmp/sf.ndjson",
            "--force",
            "--concurrency", "8",
            "--batch-size", "500",
            "--max-batches", "3",
            "--max-age-hours", "1.5",
        ])
        assert args.format == "ndjson"
        assert args.output == Path("/tmp/sf.ndjson")
        assert args.force is True
        assert args.concurrency == 8
        assert args.batch_size == 500
        assert args.max_batches == 3
        assert args.max_age_hours == 1.5

    def test_fetch_rejects_bad_format(self):
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["fetch", "campbell", "--format", "csv"])

    @pytest.mark.parametrize("flag", ["--concurrency", "--batch-size", "--max-batches"])
    def test_fetch_rejects_non_positive(self, flag):
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["fetch", "campbell", flag, "0"])


class TestFetchCommand:
    """Fetch command with the pipeline mocked out."""

    def _patch_driver(self, mocker, result=None, error=None):
        driver = MagicMock()
        driver.run = AsyncMock(return_value=result, side_effect=error)
        return mocker.patch("fieldline.cli.PipelineDriver", return_value=driver), driver

    def test_fetch_success(self, mocker, tmp_path, capsys):
        output = tmp_path / "out" / "campbell" / "parcels.geojson"
        driver_cls, driver = self._patch_driver(
            mocker,
            result=RunResult(source_id="campbell", output_path=output, record_count=42, from_cache=False),
        )

        exit_code = main([
            "fetch", "campbell",
            "--cache-dir", str(tmp_path / "cache"),
            "--output-dir", str(tmp_path / "out"),
            "--concurrency", "3",
        ])

        assert exit_code == 0
        assert "campbell: 42 features from upstream" in capsys.readouterr().out
        assert driver_cls.call_args.kwargs["concurrency"] == 3

        source, output_path = driver.run.call_args.args
        assert source.id == "campbell"
        assert output_path == output
        assert driver.run.call_args.kwargs == {"force": False, "output_format": "geojson"}

    def test_fetch_from_cache(self, mocker, tmp_path, capsys):
        self._patch_driver(
            mocker,
            result=RunResult(
                source_id="campbell",
                output_path=tmp_path / "x.geojson",
                record_count=7,
                from_cache=True,
            ),
        )

        exit_code = main(["fetch", "campbell", "--cache-dir", str(tmp_path / "cache")])

        assert exit_code == 0
        assert "7 features from cache" in capsys.readouterr().out

    def test_fetch_truncated_warns(self, mocker, tmp_path, capsys):
        self._patch_driver(
            mocker,
            result=RunResult(
                source_id="campbell",
                output_path=tmp_path / "x.geojson",
                record_count=10,
                from_cache=False,
                truncated=True,
            ),
        )

        exit_code = main([
            "fetch", "campbell", "--cache-dir", str(tmp_path / "cache"), "--max-batches", "5",
        ])

        assert exit_code == 0
        assert "truncated at 5 batches" in capsys.readouterr().err

    def test_fetch_explicit_output_and_format(self, mocker, tmp_path):
        target = tmp_path / "sf.ndjson"
        _, driver = self._patch_driver(
            mocker,
            result=RunResult(source_id="sf-urban", output_path=target, record_count=1, from_cache=False),
        )

        main([
            "fetch", "sf-urban",
            "--cache-dir", str(tmp_path / "cache"),
            "--output", str(target),
            "--format", "ndjson",
            "--force",
        ])

        assert driver.run.call_args.args[1] == target
        assert driver.run.call_args.kwargs == {"force": True, "output_format": "ndjson"}

    def test_fetch_failure_exit_code(self, mocker, tmp_path, capsys):
        self._patch_driver(mocker, error=FetchError(offset=4000, message="Page at offset 4000 failed: boom"))

        exit_code = main(["fetch", "campbell", "--cache-dir", str(tmp_path / "cache")])

        assert exit_code == 1
        assert "Error: Page at offset 4000 failed" in capsys.readouterr().err

    def test_fetch_unknown_source(self, tmp_path, capsys):
        exit_code = main(["fetch", "atlantis", "--cache-dir", str(tmp_path / "cache")])

        assert exit_code == 1
        assert "Unknown source: atlantis" in capsys.readouterr().err


class TestOtherCommands:
    """sources, cache-stats, version and no-command routing."""

    def test_sources_lists_registry(self, capsys):
        exit_code = main(["sources"])

        out = capsys.readouterr().out
        assert exit_code == 0
        assert "campbell" in out
        assert "sf-urban" in out
        assert "socrata" in out

    def test_cache_stats_empty(self, tmp_path, capsys):
        exit_code = main(["cache-stats", "--cache-dir", str(tmp_path / "cache")])

        out = capsys.readouterr().out
        assert exit_code == 0
        assert "Sources:  0" in out
        assert "Features: 0" in out

    def test_cache_stats_lists_sources(self, tmp_path, capsys):
        from fieldline.cache import FeatureStore

        cache_dir = tmp_path / "cache"
        with FeatureStore(cache_dir) as store:
            store.upsert_features("campbell", [{"type": "Feature", "properties": {}}], lambda f, i: "a")
            store.update_source_metadata("campbell", record_count=1, truncated=True)

        exit_code = main(["cache-stats", "--cache-dir", str(cache_dir)])

        out = capsys.readouterr().out
        assert exit_code == 0
        assert "campbell: 1 features" in out
        assert "(truncated)" in out

    def test_cache_stats_corrupt_cache(self, tmp_path, capsys):
        cache_dir = tmp_path / "cache"
        cache_dir.mkdir()
        (cache_dir / "sources.parquet").write_bytes(b"garbage")

        exit_code = main(["cache-stats", "--cache-dir", str(cache_dir)])

        assert exit_code == 1
        assert "unreadable" in capsys.readouterr().err

    def test_version_command(self, capsys):
        """Version command prints version info."""
        parser = create_parser()
        args = parser.parse_args(["version"])
        exit_code = cmd_version(args)

        assert exit_code == 0
        captured = capsys.readouterr()
        assert "fieldline v0.1.0" in captured.out

    def test_no_command_shows_help(self, capsys):
        """Running without a command prints help and exits 0."""
        exit_code = main([])

        assert exit_code == 0
        assert "usage: fieldline" in capsys.readouterr().out

    def test_main_routes_version(self):
        with patch("fieldline.cli.cmd_version", return_value=0) as mock_version:
            assert main(["version"]) == 0
        mock_version.assert_called_once()
