"""
End-to-end tests for the presence engine with a fake push channel and a
mocked machine API.
"""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from conftest import NOW, make_machine
from lookout.config import Settings
from lookout.core.engine import PresenceEngine
from lookout.core.reconciler import PresenceReconciler
from lookout.errors import FetchFailure
from lookout.models.machine import ConnectionStatus
from lookout.services.machine_api import MachineApiClient
from lookout.transport import TransportMultiplexer

SUBSCRIBE = ("web:subscribe", None)


class FakeServer:
    """Mocked machine API that serves whatever list it currently holds."""

    def __init__(self, machines=None):
        self.machines = [m.to_dict() for m in machines or []]
        self.requests = []
        self.status_code = 200

    def handler(self, request):
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "nope"})
        if request.method == "GET":
            return httpx.Response(200, json=self.machines)
        return httpx.Response(200, json={"ok": True})


def build_engine(server, connection_factory, clock, reconnect_attempts=0):
    config = Settings(refresh_interval_seconds=3600, auth_token="session-token")
    return PresenceEngine(
        config=config,
        transport=TransportMultiplexer(
            connection_factory=connection_factory,
            reconnect_attempts=reconnect_attempts,
            reconnect_delay_ms=0,
        ),
        api_client=MachineApiClient(
            "http://server.test/api/web",
            token_provider=lambda: config.auth_token,
            transport=httpx.MockTransport(server.handler),
        ),
        reconciler=PresenceReconciler(clock=clock),
        clock=clock,
    )


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_http_then_push_snapshot(self, connection_factory, clock):
        server = FakeServer([make_machine("a", name="alpha")])
        engine = build_engine(server, connection_factory, clock)
        discovered = []
        engine.on_discovered(discovered.append)

        async with engine:
            await engine.wait_for_fetch()
            assert engine.selected.id == "a"
            assert engine.selected.label == "alpha"

            conn = connection_factory.latest
            assert conn.emitted == [SUBSCRIBE]

            conn.deliver("machines:list", [
                make_machine("a", name="alpha", displayName="Alpha Prime").to_dict(),
                make_machine("b", status="pending").to_dict(),
            ])

            buckets = engine.buckets
            assert engine.selected.label == "Alpha Prime"
            assert engine.selected is engine.reconciler.get("a")
            assert [m.id for m in buckets.pending] == ["b"]
            assert [m.id for m in buckets.active] == ["a"]
            assert discovered == []

        assert server.requests[0].headers["Authorization"] == "Bearer session-token"

    @pytest.mark.asyncio
    async def test_push_snapshot_beats_inflight_fetch(self, connection_factory, clock):
        server = FakeServer([make_machine("stale")])
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            # Push list lands before the HTTP response
            connection_factory.latest.deliver("machines:list", [make_machine("fresh").to_dict()])
            await engine.wait_for_fetch()

            assert engine.reconciler.get("stale") is None
            assert engine.selected.id == "fresh"

    @pytest.mark.asyncio
    async def test_push_snapshot_skips_malformed_entry(self, connection_factory, clock):
        engine = build_engine(FakeServer(), connection_factory, clock)

        async with engine:
            await engine.wait_for_fetch()
            connection_factory.latest.deliver("machines:list", [
                make_machine("a").to_dict(),
                {"id": "bad", "connectionStatus": ["online"]},
                make_machine("b").to_dict(),
            ])

            assert [m.id for m in engine.reconciler.machines()] == ["a", "b"]
            assert engine.selected.id == "a"

    @pytest.mark.asyncio
    async def test_online_and_offline_deltas(self, connection_factory, clock):
        server = FakeServer([make_machine("a", seconds_ago=600, is_online=False)])
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            await engine.wait_for_fetch()
            conn = connection_factory.latest
            assert engine.selected.connection_status == ConnectionStatus.OFFLINE

            seen_at = NOW - timedelta(seconds=2)
            conn.deliver("machine:online", {"machineId": "a", "timestamp": seen_at.isoformat()})
            assert engine.selected.connection_status == ConnectionStatus.ONLINE
            assert engine.selected.last_seen == seen_at

            conn.deliver("machine:offline", {"machineId": "a"})
            assert engine.selected.is_online is False
            assert conn.emitted == [SUBSCRIBE]

    @pytest.mark.asyncio
    async def test_unknown_delta_resubscribes(self, connection_factory, clock):
        engine = build_engine(FakeServer(), connection_factory, clock)

        async with engine:
            conn = connection_factory.latest
            conn.deliver("machine:online", {"machineId": "ghost"})
            conn.deliver("machine:offline", {"machineId": "ghost"})

            assert conn.emitted == [SUBSCRIBE, SUBSCRIBE, SUBSCRIBE]

    @pytest.mark.asyncio
    async def test_discovery_fan_out(self, connection_factory, clock):
        engine = build_engine(FakeServer(), connection_factory, clock)
        discovered = []
        engine.on_discovered(discovered.append)

        async with engine:
            conn = connection_factory.latest
            payload = {"machineId": "n1", "name": "new", "hostname": "new.local"}
            conn.deliver("machine:discovered", payload)
            conn.deliver("machine:discovered", payload)

            assert [d.id for d in discovered] == ["n1", "n1"]
            assert conn.emitted.count(SUBSCRIBE) == 3

    @pytest.mark.asyncio
    async def test_reconnect_resubscribes(self, connection_factory, clock):
        engine = build_engine(FakeServer(), connection_factory, clock, reconnect_attempts=3)

        async with engine:
            first = connection_factory.latest
            first.drop()
            for _ in range(50):
                if engine.transport.is_connected:
                    break
                await asyncio.sleep(0)

            second = connection_factory.latest
            assert second is not first
            assert second.emitted == [SUBSCRIBE]

            received = []
            engine.subscribe(received.append)
            second.deliver("machines:list", [make_machine("a").to_dict()])
            assert engine.selected.id == "a"
            assert received


class TestFallback:

    @pytest.mark.asyncio
    async def test_http_fallback_when_disconnected(self, connection_factory, clock):
        connection_factory.failures = 100
        server = FakeServer([make_machine("a")])
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            assert not engine.transport.is_connected
            # Only one fetch in flight at a time
            assert engine.request_snapshot() is False
            assert engine.request_snapshot() is False
            await engine.wait_for_fetch()
            assert len(server.requests) == 1
            assert engine.selected.id == "a"

            server.machines = [make_machine("a").to_dict(), make_machine("b").to_dict()]
            engine.refresh()
            await engine.wait_for_fetch()
            assert len(server.requests) == 2
            assert engine.reconciler.get("b") is not None

    @pytest.mark.asyncio
    async def test_refresh_uses_push_when_connected(self, connection_factory, clock):
        server = FakeServer()
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            await engine.wait_for_fetch()
            engine.refresh()
            assert connection_factory.latest.emitted == [SUBSCRIBE, SUBSCRIBE]
            assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_registry(self, connection_factory, clock):
        server = FakeServer([make_machine("a")])
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            await engine.wait_for_fetch()
            server.status_code = 500

            assert await engine.fetch_snapshot() is False
            assert engine.selected.id == "a"

    @pytest.mark.asyncio
    async def test_show_archived_refetches(self, connection_factory, clock):
        server = FakeServer([make_machine("a"), make_machine("x", status="archived")])
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            await engine.wait_for_fetch()
            assert [m.id for m in engine.buckets.active] == ["a"]

            engine.set_show_archived(True)
            await engine.wait_for_fetch()

            assert server.requests[-1].url.params["includeArchived"] == "true"
            assert [m.id for m in engine.buckets.active] == ["a", "x"]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, connection_factory, clock):
        engine = build_engine(FakeServer(), connection_factory, clock)

        await engine.start()
        await engine.stop()

        assert not engine.started
        assert engine.transport.handler_count() == 0
        assert connection_factory.latest.closed
        assert not engine.scheduler.running
        assert engine.api.client.is_closed

    @pytest.mark.asyncio
    async def test_watch_and_unwatch(self, connection_factory, clock):
        engine = build_engine(FakeServer(), connection_factory, clock)

        async with engine:
            assert engine.watch("a")
            assert engine.unwatch("a")
            assert connection_factory.latest.emitted[1:] == [("web:watch", "a"), ("web:unwatch", "a")]

    @pytest.mark.asyncio
    async def test_adopt_resubscribes(self, connection_factory, clock):
        server = FakeServer()
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            await engine.wait_for_fetch()
            result = await engine.adopt("p", display_name="Printer")

            assert result == {"ok": True}
            assert server.requests[-1].url.path == "/api/web/machines/p/adopt"
            assert connection_factory.latest.emitted == [SUBSCRIBE, SUBSCRIBE]

    @pytest.mark.asyncio
    async def test_archive_failure_propagates(self, connection_factory, clock):
        server = FakeServer()
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            await engine.wait_for_fetch()
            server.status_code = 502
            with pytest.raises(FetchFailure):
                await engine.archive("a")

    @pytest.mark.asyncio
    async def test_rename_resubscribes(self, connection_factory, clock):
        server = FakeServer()
        engine = build_engine(server, connection_factory, clock)

        async with engine:
            await engine.wait_for_fetch()
            assert await engine.rename("a", "Desk") == {"ok": True}

            request = server.requests[-1]
            assert request.method == "PATCH"
            assert request.url.path == "/api/web/machines/a/display-name"
            assert json.loads(request.content) == {"displayName": "Desk"}
            assert connection_factory.latest.emitted == [SUBSCRIBE, SUBSCRIBE]
