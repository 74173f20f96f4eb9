import json
import socket

import pytest
from conftest import SILENT_CORE, free_port, posix_only, write_executable

from route_cli.core.exceptions import (
    CoreExitedError,
    CorePortInUseError,
    CoreStartTimeoutError,
    CoreUnavailableError,
)
from route_cli.core.process import CoreProcessManager, CoreState, resolve_core_path
from route_cli.core.settings import DEFAULT_CORE_NAME

pytestmark = posix_only


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Empty working directory and an empty PATH."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    empty = tmp_path / "empty-path"
    empty.mkdir()
    monkeypatch.chdir(workdir)
    monkeypatch.setenv("PATH", str(empty))
    return tmp_path


@pytest.fixture
def core_config(tmp_path):
    def write(port):
        path = tmp_path / "generated" / "sing-box.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"inbounds": [{"type": "mixed", "listen_port": port}]}))
        return path

    return write


def test_configured_path_wins(isolated):
    configured = write_executable(isolated / "custom" / "my-core", SILENT_CORE)
    write_executable(isolated / "bin" / DEFAULT_CORE_NAME, SILENT_CORE)

    resolution = resolve_core_path(str(configured), [isolated / "bin"])

    assert resolution.path == configured
    assert [c.source for c in resolution.candidates] == ["configured"]


def test_bundled_core_used_when_configured_is_missing(isolated):
    bundled = write_executable(isolated / "bin" / DEFAULT_CORE_NAME, SILENT_CORE)

    resolution = resolve_core_path(str(isolated / "missing" / "core"), [isolated / "bin"])

    assert resolution.path == bundled
    assert [(c.source, c.usable) for c in resolution.candidates] == [
        ("configured", False),
        ("bundled", False),
        ("bundled", True),
    ]


def test_working_directory_bundle_comes_before_bundle_dirs(isolated):
    local = write_executable(isolated / "work" / "tools" / "sing-box" / DEFAULT_CORE_NAME, SILENT_CORE)
    write_executable(isolated / "bin" / DEFAULT_CORE_NAME, SILENT_CORE)

    assert resolve_core_path(DEFAULT_CORE_NAME, [isolated / "bin"]).path == local


def test_default_name_is_looked_up_on_path(isolated, monkeypatch):
    on_path = write_executable(isolated / "path-bin" / DEFAULT_CORE_NAME, SILENT_CORE)
    monkeypatch.setenv("PATH", str(on_path.parent))

    resolution = resolve_core_path(DEFAULT_CORE_NAME, [isolated / "bin"])

    assert resolution.path == on_path
    assert "configured" not in {c.source for c in resolution.candidates}
    assert resolution.candidates[-1].source == "PATH"


def test_non_executable_file_is_skipped(isolated):
    plain = isolated / "bin" / DEFAULT_CORE_NAME
    plain.parent.mkdir()
    plain.write_text("not a program")

    resolution = resolve_core_path(DEFAULT_CORE_NAME, [isolated / "bin"])

    assert not resolution.found


def test_unavailable_core(isolated, core_config):
    manager = CoreProcessManager(DEFAULT_CORE_NAME, free_port(), bundle_dirs=[isolated / "bin"])

    with pytest.raises(CoreUnavailableError, match="not found"):
        manager.start(core_config(manager.mixed_port))
    assert manager.state is CoreState.FAILED
    assert manager.process is None


def test_start_and_stop(fake_core, core_config, tmp_path):
    port = free_port()
    log_path = tmp_path / "generated" / "sing-box.log"
    manager = CoreProcessManager(str(fake_core), port, startup_timeout=10, log_path=log_path)

    with manager:
        address = manager.start(core_config(port))
        assert address == f"127.0.0.1:{port}"
        assert manager.state is CoreState.READY
        assert manager.process.poll() is None

    assert manager.state is CoreState.STOPPED
    assert manager.process.poll() is not None
    assert log_path.exists()
    with pytest.raises(RuntimeError):
        manager.listen_address

    manager.stop()
    assert manager.state is CoreState.STOPPED


def test_start_twice_is_rejected(fake_core, core_config):
    port = free_port()
    with CoreProcessManager(str(fake_core), port, startup_timeout=10) as manager:
        manager.start(core_config(port))
        with pytest.raises(RuntimeError):
            manager.start(core_config(port))


def test_startup_timeout_terminates_core(silent_core, core_config):
    port = free_port()
    manager = CoreProcessManager(str(silent_core), port, startup_timeout=0.5, stop_grace=1.0)

    with pytest.raises(CoreStartTimeoutError, match=str(port)):
        manager.start(core_config(port))

    assert manager.state is CoreState.FAILED
    assert manager.process.poll() is not None


def test_early_exit_is_reported(tmp_path, core_config):
    crashing = write_executable(tmp_path / "crash" / "core", "import sys\nsys.exit(3)\n")
    port = free_port()
    manager = CoreProcessManager(str(crashing), port, startup_timeout=5)

    with pytest.raises(CoreExitedError, match="code 3"):
        manager.start(core_config(port))
    assert manager.state is CoreState.FAILED


def test_port_in_use(fake_core, core_config):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        port = busy.getsockname()[1]
        manager = CoreProcessManager(str(fake_core), port, startup_timeout=5)

        with pytest.raises(CorePortInUseError):
            manager.start(core_config(port))

    assert manager.process is None
    assert manager.state is CoreState.FAILED
