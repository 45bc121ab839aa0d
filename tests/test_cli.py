from __future__ import annotations

from click.testing import CliRunner

import booru.cli as cli_module
from booru.models import PartitionFailure, Partition, RunOutcome, TagFilter, TimeRange
from booru.tags import DEFAULT_TEMPLATE


def _fake_crawl(outcome: RunOutcome, captured: dict):
    async def fake(request, auth, cfg):
        captured["request"] = request
        captured["cfg"] = cfg
        return outcome

    return fake


def test_crawl_builds_monthly_request(tmp_path, monkeypatch):
    captured: dict = {}
    monkeypatch.setattr(cli_module, "_crawl", _fake_crawl(RunOutcome(assets_written=3), captured))

    result = CliRunner().invoke(
        cli_module.cli,
        ["crawl", "-d", "safebooru", "-t", "rating:s,q,e", "--year-start", "2023",
         "--month-end", "3", "-o", str(tmp_path), "--write-concurrency", "8"],
    )

    assert result.exit_code == 0, result.output
    request = captured["request"]
    assert request.provider == "safebooru"
    assert request.time_range == TimeRange(2023, 2023, 1, 3)
    assert request.tag_filter.group("rating") == ("s", "q", "e")
    assert request.write_concurrency == 8
    assert request.save_metadata and request.download_assets
    assert "Assets written" in result.output


def test_crawl_exit_code_reflects_failures(tmp_path, monkeypatch):
    failed = Partition("danbooru", TagFilter(), year=2024, month=2)
    outcome = RunOutcome(failed_partitions=[PartitionFailure(failed, "malformed response")])
    monkeypatch.setattr(cli_module, "_crawl", _fake_crawl(outcome, {}))

    result = CliRunner().invoke(cli_module.cli, ["crawl", "-o", str(tmp_path)])

    assert result.exit_code == 1
    assert "Failed Partitions" in result.output
    assert "2024-02" in result.output


def test_crawl_rejects_inverted_range(tmp_path, monkeypatch):
    monkeypatch.setattr(cli_module, "_crawl", _fake_crawl(RunOutcome(), {}))

    result = CliRunner().invoke(cli_module.cli, ["crawl", "--year-start", "2024", "--year-end", "2020"])

    assert result.exit_code == 2


def test_gather_builds_target_request(tmp_path, monkeypatch):
    captured: dict = {}
    monkeypatch.setattr(cli_module, "_crawl", _fake_crawl(RunOutcome(), captured))

    result = CliRunner().invoke(
        cli_module.cli, ["gather", "cat_ears", "-n", "5", "--score-min", "10", "-o", str(tmp_path)]
    )

    assert result.exit_code == 0, result.output
    request = captured["request"]
    assert request.target == 5 and request.time_range is None
    assert str(request.tag_filter) == "cat_ears -is:banned filetype:png,jpg,webp score:10.."
    assert request.caption_template == DEFAULT_TEMPLATE
