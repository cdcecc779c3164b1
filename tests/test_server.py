# tests/test_server.py
import os
import socket
import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from sessionledger import __version__
from sessionledger.chain.session import SessionLedger
from sessionledger.core.errors import StorageError
from sessionledger.crypto.keystore import read_public_key_pem
from sessionledger.daemon.host import SessionHost
from sessionledger.daemon.server import Sweeper, bind_with_retry, create_app
from sessionledger.verify.verifier import ChainVerifier


@pytest.fixture
def host(paths, settings):
    h = SessionHost(paths, settings)
    h.initialize_signing()
    return h


@pytest.fixture
def client(host):
    with TestClient(create_app(host, sweep=False)) as c:
        yield c


def open_and_start(client, ext="ext-1", **start):
    assert client.post("/sessions", json={"external_id": ext, "client": "vim"}).status_code == 200
    resp = client.post(f"/sessions/{ext}/start", json=start)
    assert resp.status_code == 200
    return resp.json()


def orphan_chain(storage, heartbeats=1):
    """A chain left in active/ by an earlier daemon."""
    ledger = SessionLedger(storage=storage, client_name="vim")
    ledger.start()
    for _ in range(heartbeats):
        ledger.heartbeat()
    return ledger


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["version"] == __version__
    assert body["pid"] == os.getpid()
    assert body["signing"] is True
    assert body["connections"] == 0


def test_full_session_flow(client, host, paths):
    opened = client.post("/sessions", json={"external_id": "ext-1", "client": "vim"}).json()
    assert opened["state"] == "active"
    assert opened["client"] == "vim"
    assert opened["record_count"] == 0

    start = client.post("/sessions/ext-1/start", json={"task_type": "debugging", "title": "Flaky CI"}).json()
    assert start["type"] == "session_start"
    assert start["data"]["task_type"] == "debugging"

    hb = client.post("/sessions/ext-1/heartbeat", json={"data": {"files": 3}}).json()
    assert hb["prev_hash"] == start["hash"]
    assert hb["data"] == {"heartbeat_number": 1, "files": 3}

    ev = client.post("/sessions/ext-1/events", json={"data": {"note": "root cause found"}}).json()
    assert ev["type"] == "milestone"

    seal = client.post("/sessions/ext-1/end", json={}).json()
    assert seal["record_count"] == 4
    assert seal["heartbeat_count"] == 1
    assert seal["title"] == "Flaky CI"
    assert seal["auto_sealed"] is False

    session_id = start["session_id"]
    result = ChainVerifier(read_public_key_pem(paths.keystore_file)).verify_from_storage(session_id, host.storage)
    assert result
    assert result.signature_valid is True
    assert host.registry.lookup("ext-1") is None

    described = client.get("/sessions/ext-1").json()
    assert described["state"] == "sealed"


def test_event_before_start_begins_session(client):
    client.post("/sessions", json={"external_id": "ext-1"})
    ev = client.post("/sessions/ext-1/events", json={"data": {"note": "early"}}).json()
    assert ev["data"] == {"note": "early"}
    assert client.get("/sessions/ext-1").json()["record_count"] == 2


def test_unknown_session_is_404(client):
    resp = client.post("/sessions/nobody/heartbeat", json={})
    assert resp.status_code == 404
    assert "nobody" in resp.json()["error"]
    assert client.delete("/sessions/nobody").status_code == 404


def test_sealed_session_rejects_appends(client):
    open_and_start(client)
    client.post("/sessions/ext-1/end", json={})
    assert client.post("/sessions/ext-1/heartbeat", json={}).status_code == 409
    assert client.post("/sessions/ext-1/events", json={}).status_code == 409
    assert client.post("/sessions/ext-1/end", json={}).status_code == 409


def test_end_without_records_is_409(client):
    client.post("/sessions", json={"external_id": "ext-1"})
    assert client.post("/sessions/ext-1/end", json={}).status_code == 409


def test_invalid_input_is_422(client):
    assert client.post("/sessions", json={"external_id": "ext-1", "client": "   "}).status_code == 422
    client.post("/sessions", json={"external_id": "ext-2"})
    assert client.post("/sessions/ext-2/events", json={"type": "session_seal"}).status_code == 422
    assert client.post("/sessions/ext-2/events", json={"type": "chat"}).status_code == 422
    assert client.post("/sessions/ext-2/events", json={"data": "not-an-object"}).status_code == 422


def test_start_after_end_opens_next_session(client):
    first = open_and_start(client)
    client.post("/sessions/ext-1/end", json={})
    second = client.post("/sessions/ext-1/start", json={}).json()
    assert second["session_id"] != first["session_id"]
    assert second["prev_hash"] == "GENESIS"
    assert second["data"]["conversation_id"] == first["data"]["conversation_id"]
    assert second["data"]["conversation_index"] == 1


def test_start_while_active_auto_seals_previous(client, host):
    first = open_and_start(client)
    second = client.post("/sessions/ext-1/start", json={"task_type": "review"}).json()
    assert second["session_id"] != first["session_id"]

    seals = {s.session_id: s for s in host.storage.load_seals()}
    assert seals[first["session_id"]].auto_sealed is True
    assert host.registry.lookup("ext-1") == second["session_id"]


def test_disconnect_keeps_chain_for_resume(client, host):
    start = open_and_start(client)
    client.post("/sessions/ext-1/heartbeat", json={})

    closed = client.delete("/sessions/ext-1").json()
    assert closed == {"closed": True, "seal": None}
    assert host.storage.is_active(start["session_id"])

    reopened = client.post("/sessions", json={"external_id": "ext-1"}).json()
    assert reopened["session_id"] == start["session_id"]
    assert reopened["record_count"] == 2
    assert reopened["heartbeat_count"] == 1

    hb = client.post("/sessions/ext-1/heartbeat", json={}).json()
    assert hb["data"]["heartbeat_number"] == 2
    assert ChainVerifier().verify_from_storage(start["session_id"], host.storage)


def test_disconnect_with_seal(client, host):
    start = open_and_start(client)
    seal = client.delete("/sessions/ext-1", params={"seal": "true"}).json()["seal"]
    assert seal["session_id"] == start["session_id"]
    assert seal["auto_sealed"] is False
    assert not host.storage.is_active(start["session_id"])
    assert host.registry.lookup("ext-1") is None


def test_seal_active_covers_connections_and_orphans(client, host):
    open_and_start(client, "ext-1")
    open_and_start(client, "ext-2")
    orphan = orphan_chain(host.storage)

    body = client.post("/api/seal-active").json()
    assert body["sealed"] == 3
    assert orphan.session_id in {s["session_id"] for s in body["seals"]}
    assert all(s["auto_sealed"] for s in body["seals"])
    assert host.storage.list_active() == []
    assert host.registry.read_all() == {}


def test_orphan_sealed_at_last_activity(host):
    orphan = orphan_chain(host.storage, heartbeats=2)
    last_ts = orphan.last_timestamp

    seals = host.seal_orphans()
    assert [s.session_id for s in seals] == [orphan.session_id]
    assert seals[0].ended_at == last_ts
    assert seals[0].record_count == 4
    assert ChainVerifier().verify_from_storage(orphan.session_id, host.storage)


def test_fresh_mapped_orphan_is_left_for_its_tool(host):
    orphan = orphan_chain(host.storage)
    host.registry.write("ext-9", orphan.session_id)
    assert host.seal_orphans() == []
    assert host.storage.is_active(orphan.session_id)


def test_stale_mapped_orphan_is_sealed(paths, settings):
    host = SessionHost(paths, replace(settings, idle_timeout=0))
    orphan = orphan_chain(host.storage)
    host.registry.write("ext-9", orphan.session_id)
    assert [s.session_id for s in host.seal_orphans()] == [orphan.session_id]
    assert host.registry.read_all() == {}


def test_half_finalized_orphan_is_moved_and_indexed(host):
    orphan = orphan_chain(host.storage)

    def rename_fails(session_id):
        raise StorageError("rename failed")

    # Crash between writing the seal record and moving the file
    host.storage.finalize = rename_fails
    try:
        with pytest.raises(StorageError):
            orphan.seal()
    finally:
        del host.storage.finalize
    assert host.storage.is_active(orphan.session_id)
    assert host.storage.load_seals() == []

    assert host.seal_orphans() == []
    assert not host.storage.is_active(orphan.session_id)
    assert host.storage.load_records(orphan.session_id)[-1].type == "session_seal"
    assert host.storage.load_seals() == [orphan.last_seal]


def test_held_sessions_are_not_orphans(client, host):
    start = open_and_start(client)
    assert host.seal_orphans() == []
    assert host.storage.is_active(start["session_id"])


@pytest.fixture
def stale_host(paths, settings):
    """Every mapped chain counts as stale, so the sweep competes with reconnecting tools."""
    return SessionHost(paths, replace(settings, idle_timeout=0))


def test_reconnect_before_sweep_keeps_chain_with_tool(stale_host, monkeypatch):
    host = stale_host
    orphan = orphan_chain(host.storage)
    host.registry.write("ext-1", orphan.session_id)

    mapped_ids = host.registry.internal_ids

    def reconnect_then_list():
        host.open("ext-1")
        return mapped_ids()

    monkeypatch.setattr(host.registry, "internal_ids", reconnect_then_list)
    assert host.seal_orphans() == []

    host.heartbeat("ext-1")
    chain = host.storage.load_records(orphan.session_id)
    assert [r.type for r in chain] == ["session_start", "heartbeat", "heartbeat"]
    assert host.storage.is_active(orphan.session_id)
    assert ChainVerifier().verify_from_storage(orphan.session_id, host.storage)


def test_reconnect_during_sweep_starts_new_session(stale_host, monkeypatch):
    host = stale_host
    orphan = orphan_chain(host.storage)
    host.registry.write("ext-1", orphan.session_id)

    load_records = host.storage.load_records
    reconnected = []

    def reconnect_while_sealing(session_id):
        if not reconnected:
            reconnected.append(host.open("ext-1"))
        return load_records(session_id)

    monkeypatch.setattr(host.storage, "load_records", reconnect_while_sealing)
    assert [s.session_id for s in host.seal_orphans()] == [orphan.session_id]

    conn, = reconnected
    assert conn.ledger.session_id != orphan.session_id
    host.heartbeat("ext-1")
    assert host.registry.lookup("ext-1") == conn.ledger.session_id
    for session_id in (orphan.session_id, conn.ledger.session_id):
        assert ChainVerifier().verify_from_storage(session_id, host.storage)
    assert load_records(orphan.session_id)[-1].type == "session_seal"


def test_unreadable_chain_files_do_not_stop_orphan_sweep(host):
    (host.storage.active_dir / "0000-garbled.jsonl").write_bytes(b"\xff\xfe\x00\x01\n")
    (host.storage.active_dir / "0001-broken.jsonl").mkdir()
    orphan = orphan_chain(host.storage)

    assert [s.session_id for s in host.seal_orphans()] == [orphan.session_id]
    assert not host.storage.is_active(orphan.session_id)


class FlakyHost:
    def __init__(self, settings):
        self.settings = settings
        self.orphan_sweeps = 0
        self.idle_sweeps = 0

    def seal_orphans(self):
        self.orphan_sweeps += 1
        raise RuntimeError("sweep exploded")

    def sweep_idle(self, now):
        self.idle_sweeps += 1


def test_sweeper_keeps_idle_sweeps_alive_after_orphan_failure(settings):
    flaky = FlakyHost(settings)
    sweeper = Sweeper(flaky, tick=0.01)
    sweeper.start()
    try:
        deadline = time.monotonic() + 5
        while flaky.idle_sweeps < 3 and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        sweeper.stop()
        sweeper.join(timeout=5)
    assert flaky.idle_sweeps >= 3
    # The failed orphan sweep still waits out its interval
    assert flaky.orphan_sweeps == 1


def test_idle_connections_are_sealed_and_dropped(client, host):
    start = open_and_start(client)
    seals = host.sweep_idle(now=time.monotonic() + host.settings.idle_timeout + 1)
    assert [s.session_id for s in seals] == [start["session_id"]]
    assert client.get("/sessions/ext-1").status_code == 404
    assert host.registry.lookup("ext-1") is None


def test_sweeper_thread_seals_orphans(host):
    orphan = orphan_chain(host.storage)
    sweeper = Sweeper(host, tick=0.01)
    sweeper.start()
    try:
        deadline = time.monotonic() + 5
        while host.storage.is_active(orphan.session_id) and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        sweeper.stop()
        sweeper.join(timeout=5)
    assert not host.storage.is_active(orphan.session_id)


def test_shutdown_keeps_mapped_sessions_active(host):
    stopped = []
    with TestClient(create_app(host, on_shutdown=lambda: stopped.append(True), sweep=False)) as c:
        mapped = open_and_start(c, "ext-1")
        unmapped = open_and_start(c, "ext-2")
        host.registry.remove_by_external_id("ext-2")

    assert stopped == [True]
    assert host.storage.is_active(mapped["session_id"])
    assert not host.storage.is_active(unmapped["session_id"])


# ── bind_with_retry ────────────────────────────────────────────────────────

class FakeInspector:
    def __init__(self):
        self.terminated = []

    def terminate(self, pid, grace=5.0):
        self.terminated.append(pid)
        return True


class FakeSupervisor:
    def __init__(self, healthy=False, squatters=()):
        self.healthy = healthy
        self.squatters = set(squatters)
        self.inspector = FakeInspector()

    def check_health(self, port=None):
        return {"status": "ok"} if self.healthy else None

    def find_pids_by_port(self, port=None):
        return set(self.squatters)


@pytest.fixture
def occupied(settings):
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind((settings.host, settings.port))
    s.listen(1)
    yield s
    s.close()


def test_bind_free_port(settings):
    sock = bind_with_retry(settings, FakeSupervisor())
    try:
        assert sock.getsockname()[1] == settings.port
    finally:
        sock.close()


def test_bind_yields_to_healthy_daemon(settings, occupied):
    sup = FakeSupervisor(healthy=True, squatters={12345})
    assert bind_with_retry(settings, sup, sleep=lambda _: None) is None
    assert sup.inspector.terminated == []


def test_bind_evicts_squatters_then_gives_up(settings, occupied):
    naps = []
    sup = FakeSupervisor(squatters={12345, os.getpid()})
    assert bind_with_retry(settings, sup, sleep=naps.append) is None
    assert sup.inspector.terminated == [12345] * settings.bind_retries
    assert naps == [1.0] * settings.bind_retries
