# tests/test_supervisor.py
import os
import sys

import httpx
import pytest

from sessionledger.config import HOME_ENV
from sessionledger.core.types import PidRecord
from sessionledger.daemon import supervisor as supervisor_mod
from sessionledger.daemon.supervisor import DaemonSupervisor, EnsureOptions, daemon_command

from conftest import FakeWorld, binds_on_spawn


@pytest.fixture
def world():
    return FakeWorld()


@pytest.fixture
def supervisor(paths, settings, world):
    sup = DaemonSupervisor(
        paths,
        settings,
        inspector=world,
        http_client=httpx.Client(transport=httpx.MockTransport(world.handler)),
        sleep=lambda _: None,
    )
    yield sup
    sup.close()


def test_healthy_daemon_is_left_alone(supervisor, world, settings):
    world.serve(settings.port, 100)
    assert supervisor.ensure_daemon()
    assert world.spawned == []
    assert world.terminated == []
    assert supervisor.ensure_daemon()
    assert world.spawned == []
    assert supervisor.read_pid_record() is None


def test_cold_start_spawns_and_records_pid(supervisor, world, settings, paths):
    world.on_spawn = binds_on_spawn(settings.port)
    assert supervisor.ensure_daemon()

    (cmd, env), = world.spawned
    assert cmd[-2:] == ["--port", str(settings.port)]
    assert env == {HOME_ENV: str(paths.home)}
    record = supervisor.read_pid_record()
    assert record.pid == 4242
    assert record.port == settings.port


def test_spawn_that_never_gets_healthy(supervisor, world):
    assert not supervisor.ensure_daemon()
    assert len(world.spawned) == 1


def test_spawn_failure_returns_false(supervisor, world):
    world.spawn_error = FileNotFoundError("no python")
    assert not supervisor.ensure_daemon()
    assert supervisor.read_pid_record() is None


def test_stale_pid_record_is_replaced(supervisor, world, settings):
    supervisor.write_pid_record(PidRecord(pid=999, port=settings.port))
    world.on_spawn = binds_on_spawn(settings.port)

    assert supervisor.ensure_daemon()
    assert 999 not in world.terminated
    assert supervisor.read_pid_record().pid == 4242


def test_live_but_unhealthy_pid_record_is_replaced(supervisor, world, settings):
    world.running.add(999)  # alive, but not answering on its port
    supervisor.write_pid_record(PidRecord(pid=999, port=settings.port))
    world.on_spawn = binds_on_spawn(settings.port)

    assert supervisor.ensure_daemon()
    assert supervisor.read_pid_record().pid == 4242


def test_corrupt_pid_record_reads_as_none(supervisor, paths):
    paths.pid_file.write_text("{garbage")
    assert supervisor.read_pid_record() is None
    paths.pid_file.write_text('{"port": 1}')
    assert supervisor.read_pid_record() is None


def test_concurrent_winner_is_recorded(supervisor, world, settings):
    # Our spawn lost the bind race; another caller's daemon (pid 777) answers
    def other_daemon_wins(w, pid):
        w.serve(settings.port, 777)

    world.on_spawn = other_daemon_wins
    assert supervisor.ensure_daemon()
    assert supervisor.read_pid_record().pid == 777


def test_version_mismatch_restarts(supervisor, world, settings):
    world.serve(settings.port, 100, version="0.0.9")
    world.on_spawn = binds_on_spawn(settings.port, version="0.1.0")

    assert supervisor.ensure_daemon(EnsureOptions(require_version="0.1.0"))
    assert world.terminated == [100]
    assert supervisor.check_health()["version"] == "0.1.0"


def test_matching_version_is_kept(supervisor, world, settings):
    world.serve(settings.port, 100, version="0.1.0")
    assert supervisor.ensure_daemon(EnsureOptions(require_version="0.1.0"))
    assert world.terminated == []


def test_kill_when_nothing_runs(supervisor, paths, settings):
    supervisor.write_pid_record(PidRecord(pid=999, port=settings.port))
    assert supervisor.kill_daemon()
    assert not paths.pid_file.exists()


def test_kill_stops_port_owner(supervisor, world, settings, paths):
    world.serve(settings.port, 100)
    supervisor.write_pid_record(PidRecord(pid=100, port=settings.port))
    assert supervisor.kill_daemon()
    assert world.terminated == [100]
    assert supervisor.check_health() is None
    assert not paths.pid_file.exists()
    # Second stop is a no-op success
    assert supervisor.kill_daemon()
    assert world.terminated == [100]


def test_kill_ignores_recycled_pid(supervisor, world, settings):
    world.running.add(555)  # some unrelated process now owns the recorded pid
    supervisor.write_pid_record(PidRecord(pid=555, port=settings.port))
    assert supervisor.kill_daemon()
    assert world.terminated == []


def test_kill_never_targets_self(supervisor, world, settings):
    world.serve(settings.port, os.getpid())
    assert supervisor.kill_daemon()
    assert world.terminated == []


def test_kill_failure_keeps_pid_record(supervisor, world, settings, paths):
    world.serve(settings.port, 100)
    world.stubborn.add(100)
    supervisor.write_pid_record(PidRecord(pid=100, port=settings.port))
    assert not supervisor.kill_daemon()
    assert paths.pid_file.exists()


def test_restart(supervisor, world, settings):
    world.serve(settings.port, 100)
    world.on_spawn = binds_on_spawn(settings.port)
    assert supervisor.restart_daemon()
    assert world.terminated == [100]
    assert supervisor.check_health()["pid"] == 4242


def test_status(supervisor, world, settings):
    assert supervisor.status() == {"running": False, "health": None, "pid_record": None}
    world.serve(settings.port, 100)
    supervisor.write_pid_record(PidRecord(pid=100, port=settings.port))
    status = supervisor.status()
    assert status["running"]
    assert status["pid_record"]["pid"] == 100


@pytest.mark.parametrize("response", [
    httpx.Response(503, json={"status": "ok"}),
    httpx.Response(200, text="<html>not us</html>"),
    httpx.Response(200, json={"status": "starting"}),
    httpx.Response(200, json=["ok"]),
])
def test_health_rejects_foreign_answers(paths, settings, response):
    client = httpx.Client(transport=httpx.MockTransport(lambda request: response))
    with DaemonSupervisor(paths, settings, inspector=FakeWorld(), http_client=client) as sup:
        assert sup.check_health() is None


def test_health_probe_timeout_is_none(paths, settings):
    def hang(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = httpx.Client(transport=httpx.MockTransport(hang))
    with DaemonSupervisor(paths, settings, inspector=FakeWorld(), http_client=client) as sup:
        assert sup.check_health() is None


def test_daemon_command_uses_local_interpreter(paths, settings):
    cmd = daemon_command(paths, settings)
    assert cmd[:3] == [sys.executable, "-m", "sessionledger"]
    assert cmd[3:] == ["--home", str(paths.home), "daemon", "serve", "--port", str(settings.port)]


def test_daemon_command_prefers_pipx_when_asked(paths, settings, monkeypatch):
    monkeypatch.setattr(supervisor_mod.shutil, "which", lambda name: "/usr/bin/pipx")
    cmd = daemon_command(paths, settings, prefer_online=True)
    assert cmd[:4] == ["/usr/bin/pipx", "run", "--no-cache", "sessionledger"]


def test_daemon_command_falls_back_without_pipx(paths, settings, monkeypatch):
    monkeypatch.setattr(supervisor_mod.shutil, "which", lambda name: None)
    assert daemon_command(paths, settings, prefer_online=True)[0] == sys.executable


@pytest.mark.parametrize("response, expected", [
    (httpx.Response(200, json={"info": {"version": "0.2.0"}}), "0.2.0"),
    (httpx.Response(404, json={"message": "Not Found"}), None),
    (httpx.Response(200, text="<html>maintenance</html>"), None),
    (httpx.Response(200, json={"info": {}}), None),
])
def test_latest_version_from_pypi(paths, settings, response, expected):
    requested = []

    def index(request):
        requested.append(str(request.url))
        return response

    client = httpx.Client(transport=httpx.MockTransport(index))
    with DaemonSupervisor(paths, settings, inspector=FakeWorld(), http_client=client) as sup:
        assert sup.fetch_latest_version() == expected
    assert requested == ["https://pypi.org/pypi/sessionledger/json"]


def test_latest_version_offline_is_none(paths, settings):
    def offline(request):
        raise httpx.ConnectError("no route to host", request=request)

    client = httpx.Client(transport=httpx.MockTransport(offline))
    with DaemonSupervisor(paths, settings, inspector=FakeWorld(), http_client=client) as sup:
        assert sup.fetch_latest_version() is None
