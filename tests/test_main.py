"""
Unit tests for the syncer entry point: config loading, wiring, sync passes,
and the page manager CLI parser.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import PAGE_ID, FakeGraph, InMemoryStore, utc
from syncer import main as syncer_main
from syncer.main import (
    _normalize_platforms,
    build_graph_client,
    build_sync_service,
    load_config,
    sync_pass,
)
from syncer.manage_pages import build_parser
from syncer.run_status import RunStatus


def _write_config(tmp_path, body: str):
    path = tmp_path / "settings.toml"
    path.write_text(body)
    return path


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_valid_config(self, tmp_path):
        path = _write_config(
            tmp_path,
            '[database]\nhost = "db"\ndatabase = "msgstats"\n\n[syncer]\npages = ["p1", "p2"]\n',
        )
        config = load_config(path)
        assert config["syncer"]["pages"] == ["p1", "p2"]

    def test_missing_pages(self, tmp_path):
        path = _write_config(tmp_path, '[database]\ndatabase = "msgstats"\n\n[syncer]\n')
        with pytest.raises(KeyError, match="syncer.pages"):
            load_config(path)

    def test_missing_database(self, tmp_path):
        path = _write_config(tmp_path, '[syncer]\npages = ["p1"]\n')
        with pytest.raises(KeyError, match="database"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")


class TestNormalizePlatforms:
    def test_default(self):
        assert _normalize_platforms(None) == ["messenger"]

    def test_list(self):
        assert _normalize_platforms(["Instagram", "messenger", "instagram"]) == ["instagram", "messenger"]

    def test_comma_string(self):
        assert _normalize_platforms("messenger, instagram") == ["messenger", "instagram"]

    def test_invalid_values_fall_back(self):
        assert _normalize_platforms(["sms"]) == ["messenger"]
        assert _normalize_platforms(42) == ["messenger"]


class TestWiring:
    @pytest.mark.asyncio
    async def test_graph_client_from_config(self):
        config = {"graph": {"api_version": "v20.0", "retries": 2, "min_delay_ms": 100, "max_delay_ms": 800, "page_size": 25}}
        async with build_graph_client(config) as client:
            assert client.api_version == "v20.0"
            assert client.page_size == 25
            assert client._retry.retries == 2
            assert client._retry.delay_for(1) == pytest.approx(0.1)
            assert client._retry.max_delay == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_graph_client_defaults(self):
        async with build_graph_client({}) as client:
            assert client.url_for("/x") == "https://graph.facebook.com/v19.0/x"
            assert client._retry.retries == 4

    def test_sync_service_from_config(self):
        config = {"syncer": {"concurrency": "5", "safety_window_seconds": 60, "ig_enabled": True}}
        service = build_sync_service(config, MagicMock(), InMemoryStore(), None, "key")
        assert service._concurrency == 5
        assert service._watermarks.safety_window == timedelta(seconds=60)
        assert service._ig_enabled is True

    def test_invalid_number_uses_default(self):
        service = build_sync_service({"syncer": {"concurrency": "many"}}, MagicMock(), InMemoryStore(), None, "key")
        assert service._concurrency == 3


# ---------------------------------------------------------------------------
# Sync pass
# ---------------------------------------------------------------------------


class TestSyncPass:
    @pytest.mark.asyncio
    async def test_runs_each_page_and_platform(self):
        syncer_main._shutdown_event.clear()
        service = MagicMock()
        service.wait = AsyncMock(
            side_effect=[RunStatus(state="completed"), RunStatus(state="errored", error="boom"), RunStatus(state="completed")]
        )
        config = {"syncer": {"pages": ["p1", "p2", "p3"], "platforms": ["messenger"]}}

        outcome = await sync_pass(service, config)

        assert outcome == {"completed": 2, "errored": 1}
        assert [c.args for c in service.start_sync.call_args_list] == [
            ("p1", "messenger"),
            ("p2", "messenger"),
            ("p3", "messenger"),
        ]

    @pytest.mark.asyncio
    async def test_stops_on_shutdown(self):
        service = MagicMock()
        service.wait = AsyncMock(return_value=RunStatus(state="completed"))
        syncer_main._shutdown_event.set()
        try:
            outcome = await sync_pass(service, {"syncer": {"pages": ["p1"]}})
        finally:
            syncer_main._shutdown_event.clear()

        assert outcome == {"completed": 0, "errored": 0}
        service.start_sync.assert_not_called()

    @pytest.mark.asyncio
    async def test_real_service_pass(self, connected_store, encryption_key):
        syncer_main._shutdown_event.clear()
        graph = FakeGraph()
        graph.add_conversation("t_1", utc(2024, 9, 1), [("m_1", "user-1", utc(2024, 9, 1), "hi")])
        async with graph.client() as client:
            service = build_sync_service({}, client, connected_store, None, encryption_key)
            outcome = await sync_pass(service, {"syncer": {"pages": [PAGE_ID]}})

        assert outcome == {"completed": 1, "errored": 0}
        assert "t_1" in connected_store.conversations


# ---------------------------------------------------------------------------
# Page manager CLI
# ---------------------------------------------------------------------------


class TestManagePagesParser:
    def test_add(self):
        args = build_parser().parse_args(["add", "123", "--token-env", "PAGE_TOKEN"])
        assert (args.command, args.page_id, args.token_env) == ("add", "123", "PAGE_TOKEN")

    def test_recompute(self):
        assert build_parser().parse_args(["recompute"]).command == "recompute"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
