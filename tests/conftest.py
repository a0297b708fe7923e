"""Shared pytest fixtures for pgboundary tests."""

import signal
import subprocess
from pathlib import Path
from unittest.mock import Mock

import pytest

from pgboundary.common.process import ProcessKind
from pgboundary.config import AppConfig, load_config
from pgboundary.proxy.controller import ProxyController
from pgboundary.proxy.fragments import FragmentStore
from pgboundary.reconciler import Reconciler
from pgboundary.registry import ConnectionRegistry
from pgboundary.tunnel.models import TunnelHandle

CONFIG_CONTENT = """[pgbouncer]
workdir = ./work
conffile = pgbouncer.ini

[scopes]
auth = auth
target = target

[pgboundary]
fragment_dir = {fragment_dir}

[targets]
app1 = host=https://boundary.example.com target=app1-ro
app2 = host=https://boundary.example-two.com target=app2-ro database=custom_db auth=scope1
"""

PGBOUNCER_CONTENT = """[databases]

[pgbouncer]
listen_port = 6432
pidfile = pgbouncer.pid
auth_file = userlist.txt
"""


class FakeProber:
    """In-memory process table standing in for ProcessProber."""

    def __init__(self) -> None:
        self.processes: dict[int, ProcessKind] = {}
        self.signals: list[tuple[int, signal.Signals]] = []

    def process_identity(self, pid: int) -> ProcessKind | None:
        return self.processes.get(pid)

    def exists(self, pid: int) -> bool:
        return pid in self.processes

    def is_alive(self, pid: int, expected: ProcessKind) -> bool:
        return self.processes.get(pid) == expected

    def find_processes(self, kind: ProcessKind) -> list[int]:
        return sorted(pid for pid, k in self.processes.items() if k == kind)

    def send_signal(self, pid: int, sig: signal.Signals) -> None:
        if pid not in self.processes:
            raise ProcessLookupError(pid)
        self.signals.append((pid, sig))
        if sig == signal.SIGTERM:
            del self.processes[pid]

    def terminate(self, pid: int) -> None:
        try:
            self.send_signal(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass


class FakeProvisioner:
    """Hands out tunnels with increasing pids registered in a FakeProber."""

    def __init__(self, prober: FakeProber, first_pid: int = 5001) -> None:
        self.prober = prober
        self.next_pid = first_pid
        self.calls: list[tuple[str, str, str, str]] = []

    def start(self, target, auth_scope, target_scope, auth_method) -> TunnelHandle:
        self.calls.append((target.name, auth_scope, target_scope, auth_method))
        pid = self.next_pid
        self.next_pid += 1
        self.prober.processes[pid] = ProcessKind.TUNNEL
        return TunnelHandle(
            pid=pid,
            host="127.0.0.1",
            port=40000 + pid % 1000,
            username=f"u_{target.name}",
            password="s3cret",
        )

    def shutdown_all(self) -> list[int]:
        pids = self.prober.find_processes(ProcessKind.TUNNEL)
        for pid in pids:
            self.prober.terminate(pid)
        return pids


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Config directory with pgboundary.ini and a pgbouncer work dir."""
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    (work_dir / "pgbouncer.ini").write_text(PGBOUNCER_CONTENT)

    config_path = tmp_path / "pgboundary.ini"
    config_path.write_text(CONFIG_CONTENT.format(fragment_dir=tmp_path / "fragments"))
    return tmp_path


@pytest.fixture
def app_config(workspace: Path) -> AppConfig:
    return load_config(workspace / "pgboundary.ini")


@pytest.fixture
def store(app_config: AppConfig) -> FragmentStore:
    return FragmentStore(app_config.proxy.conffile, app_config.tunnel.fragment_dir)


@pytest.fixture
def fake_prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def fake_provisioner(fake_prober: FakeProber) -> FakeProvisioner:
    return FakeProvisioner(fake_prober)


@pytest.fixture
def mock_pgbouncer(monkeypatch, app_config: AppConfig, fake_prober: FakeProber) -> Mock:
    """Replace ``pgbouncer --daemon`` with a fake that writes the pid file.

    Returns:
        Mock: The patched subprocess.run
    """
    next_pid = iter(range(9001, 9100))

    def fake_run(command, **kwargs):
        pid = next(next_pid)
        fake_prober.processes[pid] = ProcessKind.PROXY
        app_config.proxy.pidfile.write_text(f"{pid}\n")
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    run = Mock(side_effect=fake_run)
    monkeypatch.setattr("pgboundary.proxy.controller.subprocess.run", run)
    return run


@pytest.fixture
def handle_factory():
    """Build TunnelHandles with sensible defaults."""

    def factory(pid: int = 4242, **overrides) -> TunnelHandle:
        fields = {
            "pid": pid,
            "host": "127.0.0.1",
            "port": 53412,
            "username": "u_abc",
            "password": "secret",
        }
        fields.update(overrides)
        return TunnelHandle(**fields)

    return factory


@pytest.fixture
def reconciler(
    app_config: AppConfig,
    store: FragmentStore,
    fake_prober: FakeProber,
    fake_provisioner: FakeProvisioner,
    mock_pgbouncer: Mock,
) -> Reconciler:
    """Reconciler over real files with faked processes."""
    return Reconciler(
        config=app_config,
        store=store,
        registry=ConnectionRegistry(store, prober=fake_prober),  # type: ignore[arg-type]
        controller=ProxyController(app_config.proxy, prober=fake_prober),  # type: ignore[arg-type]
        provisioner=fake_provisioner,
        prober=fake_prober,  # type: ignore[arg-type]
    )
