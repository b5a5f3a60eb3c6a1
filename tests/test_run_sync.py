import pytest

from places_sync.core.config import ConfigError
from places_sync.jobs import run_sync
from places_sync.jobs.orchestrator import SyncOrchestrator
from places_sync.models import RunStatus, SyncMetrics, SyncRun, SyncType
from conftest import FakeClient, FakePlaceStore, FakeRunStore, make_settings


def test_parser_defaults():
    args = run_sync.build_parser().parse_args([])
    config = run_sync.config_from_args(args)
    assert config.type is SyncType.INCREMENTAL
    assert config.max_places == 100
    assert config.provinces is None
    assert config.download_photos and config.fetch_reviews


def test_parser_options():
    args = run_sync.build_parser().parse_args(
        ["--type", "full", "--max-places", "25", "--provinces", "chiang-mai, phuket,", "--no-photos", "--no-reviews"]
    )
    config = run_sync.config_from_args(args)
    assert config.type is SyncType.FULL
    assert config.max_places == 25
    assert config.provinces == ("chiang-mai", "phuket")
    assert config.download_photos is False
    assert config.fetch_reviews is False


@pytest.mark.parametrize("value", ["0", "-5", "abc"])
def test_parser_rejects_bad_max_places(value):
    with pytest.raises(SystemExit):
        run_sync.build_parser().parse_args(["--max-places", value])


def test_format_summary():
    run = SyncRun(
        id="run-1",
        status=RunStatus.FAILED,
        duration_seconds=12,
        metrics=SyncMetrics(places_found=3, api_requests_made=7, estimated_cost_usd=0.1234),
        error_message="Request limit exceeded: 7 >= 5",
    )
    summary = run_sync.format_summary(run)
    assert summary.splitlines()[0] == "Sync run-1: failed"
    assert "Places found:      3" in summary
    assert "$0.12" in summary
    assert "Duration:          12s" in summary
    assert summary.endswith("Error: Request limit exceeded: 7 >= 5")


def test_main_requires_api_key(monkeypatch):
    monkeypatch.setattr(run_sync, "get_settings", lambda: make_settings(google_places_api_key=""))
    assert run_sync.main([]) == 2


def test_main_reports_config_error(monkeypatch):
    def broken():
        raise ConfigError("bad schedule")

    monkeypatch.setattr(run_sync, "get_settings", broken)
    assert run_sync.main([]) == 2


def test_main_runs_sync_to_completion(monkeypatch, capsys):
    settings = make_settings()
    client = FakeClient(search_results={"camping Phuket": ["a"]})
    orchestrator = SyncOrchestrator(settings, client, FakeRunStore(), FakePlaceStore())
    monkeypatch.setattr(run_sync, "get_settings", lambda: settings)
    monkeypatch.setattr(run_sync, "init_pool", lambda: None)
    monkeypatch.setattr(run_sync, "ensure_schema", lambda: None)
    wiring = []

    def fake_create(s, reconcile=True):
        wiring.append(reconcile)
        return orchestrator

    monkeypatch.setattr(run_sync, "create_orchestrator", fake_create)
    monkeypatch.setattr(run_sync, "POLL_SECONDS", 0.01)

    assert run_sync.main(["--provinces", "phuket", "--type", "full"]) == 0

    out = capsys.readouterr().out
    assert ": completed" in out
    assert "Places updated:    1" in out
    assert client.detail_calls == ["a"]
    # another process may be mid-run; the CLI must not sweep its row
    assert wiring == [False]
