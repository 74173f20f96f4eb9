"""Proxy core process lifecycle.

The core goes through a fixed sequence of states::

    NOT_STARTED -> RESOLVING -> STARTING -> READY -> STOPPING -> STOPPED
                       |            |
                       +--> FAILED <+

- Resolving looks for the executable: the configured path, then the bundled
  locations, then ``PATH``.
- Starting spawns ``<core> run -c <config>`` in its own process group and
  waits until the mixed port accepts connections.
- Stopping terminates the whole core process tree and kills whatever is
  still alive after the grace period.

The manager is a context manager, so the core is stopped on every exit path:

Example:
    with CoreProcessManager("sing-box", 27890, bundle_dirs=[paths.bin_dir]) as core:
        core.start(paths.core_config)
        launcher.launch("curl", ["https://example.com"], core.listen_address)
"""

import contextlib
import os
import shutil
import socket
import subprocess
import time
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Any, Final

import psutil
from loguru import logger

from route_cli.core.exceptions import (
    CoreExitedError,
    CorePortInUseError,
    CoreStartTimeoutError,
    CoreUnavailableError,
)
from route_cli.core.settings import DEFAULT_CORE_NAME

LISTEN_HOST: Final = "127.0.0.1"
BUNDLED_RELATIVE_DIR: Final = Path("tools") / "sing-box"
POLL_INTERVAL: Final = 0.2  # Seconds between readiness checks
CONNECT_TIMEOUT: Final = 0.5  # Seconds per readiness connection attempt


class CoreState(Enum):
    NOT_STARTED = "not started"
    RESOLVING = "resolving"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class CoreCandidate:
    """One location checked while resolving the core executable."""

    source: str
    location: str
    usable: bool


@dataclass(frozen=True)
class CoreResolution:
    path: Path | None
    candidates: tuple[CoreCandidate, ...]

    @property
    def found(self) -> bool:
        return self.path is not None


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def resolve_core_path(configured: str, bundle_dirs: Iterable[Path] = ()) -> CoreResolution:
    """Find the proxy core executable.

    Checked in order, first usable match wins:
    1. ``configured``, unless it is the default executable name
    2. ``./tools/sing-box/<name>`` and ``<dir>/<name>`` for each bundle dir
    3. ``<name>`` on ``PATH``

    Args:
        configured: ``proxy_core.path`` from the config document
        bundle_dirs: Extra directories holding a bundled core

    Returns:
        CoreResolution: Resolved path (None if nothing matched) and every candidate checked
    """
    candidates: list[CoreCandidate] = []

    def check(source: str, path: Path) -> Path | None:
        usable = _is_executable(path)
        candidates.append(CoreCandidate(source=source, location=str(path), usable=usable))
        return path if usable else None

    configured = configured.strip()
    if configured and configured.lower() != DEFAULT_CORE_NAME.lower():
        path = Path(configured).expanduser()
        if not path.is_absolute():
            path = Path.cwd() / path
        if found := check("configured", path):
            return CoreResolution(path=found, candidates=tuple(candidates))

    bundled = [Path.cwd() / BUNDLED_RELATIVE_DIR / DEFAULT_CORE_NAME]
    bundled.extend(Path(d) / DEFAULT_CORE_NAME for d in bundle_dirs)
    for path in bundled:
        if found := check("bundled", path):
            return CoreResolution(path=found, candidates=tuple(candidates))

    on_path = shutil.which(DEFAULT_CORE_NAME)
    if on_path:
        if found := check("PATH", Path(on_path)):
            return CoreResolution(path=found, candidates=tuple(candidates))
    else:
        candidates.append(CoreCandidate(source="PATH", location=DEFAULT_CORE_NAME, usable=False))

    return CoreResolution(path=None, candidates=tuple(candidates))


def port_accepting(port: int, host: str = LISTEN_HOST, timeout: float = CONNECT_TIMEOUT) -> bool:
    """Check whether something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _detached() -> dict[str, Any]:
    """Popen options that keep terminal interrupts away from the core."""
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


class CoreProcessManager:
    """Own the single proxy core process of a ``run``.

    Args:
        configured_path: ``proxy_core.path`` from the config document
        mixed_port: Port the core's mixed inbound listens on
        bundle_dirs: Extra directories holding a bundled core
        startup_timeout: Seconds to wait for the mixed port to accept connections
        stop_grace: Seconds to wait after terminating before killing
        log_path: File receiving the core's stdout and stderr (discarded if None)
    """

    def __init__(
        self,
        configured_path: str,
        mixed_port: int,
        *,
        bundle_dirs: Iterable[Path] = (),
        startup_timeout: float = 8.0,
        stop_grace: float = 3.0,
        log_path: Path | None = None,
    ) -> None:
        self.configured_path = configured_path
        self.mixed_port = mixed_port
        self.bundle_dirs = list(bundle_dirs)
        self.startup_timeout = startup_timeout
        self.stop_grace = stop_grace
        self.log_path = log_path
        self.state = CoreState.NOT_STARTED
        self.process: subprocess.Popen | None = None
        self._log_file: IO[bytes] | None = None

    @property
    def listen_address(self) -> str:
        if self.state is not CoreState.READY:
            raise RuntimeError(f"Proxy core is not ready (state: {self.state.value})")
        return f"{LISTEN_HOST}:{self.mixed_port}"

    def resolve(self) -> Path:
        """Resolve the core executable path.

        Raises:
            CoreUnavailableError: If no candidate is an existing executable
        """
        self.state = CoreState.RESOLVING
        resolution = resolve_core_path(self.configured_path, self.bundle_dirs)
        if resolution.path is None:
            self.state = CoreState.FAILED
            checked = ", ".join(c.location for c in resolution.candidates)
            raise CoreUnavailableError(f"Proxy core executable not found (checked: {checked})")
        logger.debug(f"Resolved proxy core: {resolution.path}")
        return resolution.path

    def _fail(self, error: Exception) -> Exception:
        self._terminate()
        self.state = CoreState.FAILED
        return error

    def start(self, config_path: Path) -> str:
        """Start the core and wait until it accepts connections.

        Args:
            config_path: Generated proxy core config

        Returns:
            str: Listen address of the core's mixed inbound

        Raises:
            CoreUnavailableError: If the executable cannot be found or spawned
            CorePortInUseError: If the mixed port is already taken
            CoreExitedError: If the core exits before becoming ready
            CoreStartTimeoutError: If the core is not ready within the startup timeout
        """
        if self.state is not CoreState.NOT_STARTED:
            raise RuntimeError(f"Proxy core already started (state: {self.state.value})")

        core_path = self.resolve()
        self.state = CoreState.STARTING

        if port_accepting(self.mixed_port):
            self.state = CoreState.FAILED
            raise CorePortInUseError(
                f"Port {LISTEN_HOST}:{self.mixed_port} is already in use; "
                "change proxy.mixed_port or stop the other listener"
            )

        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = self.log_path.open("ab")
        output = self._log_file if self._log_file is not None else subprocess.DEVNULL

        cmd = [str(core_path), "run", "-c", str(config_path)]
        logger.info(f"Starting proxy core: {' '.join(cmd)}")
        try:
            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                **_detached(),
            )
        except OSError as e:
            raise self._fail(CoreUnavailableError(f"Failed to start proxy core {core_path}: {e}")) from e

        deadline = time.monotonic() + self.startup_timeout
        while time.monotonic() < deadline:
            code = self.process.poll()
            if code is not None:
                raise self._fail(
                    CoreExitedError(f"Proxy core exited with code {code} before accepting connections")
                )
            if port_accepting(self.mixed_port):
                self.state = CoreState.READY
                logger.info(f"Proxy core ready on {self.listen_address} (pid {self.process.pid})")
                return self.listen_address
            time.sleep(POLL_INTERVAL)

        raise self._fail(
            CoreStartTimeoutError(
                f"Proxy port {LISTEN_HOST}:{self.mixed_port} did not accept connections "
                f"within {self.startup_timeout:g}s"
            )
        )

    def _terminate(self) -> None:
        """Terminate the core process tree, killing it after the grace period."""
        process = self.process
        try:
            if process is None or process.poll() is not None:
                return

            try:
                children = psutil.Process(process.pid).children(recursive=True)
            except psutil.NoSuchProcess:
                children = []

            process.terminate()
            for child in children:
                with contextlib.suppress(psutil.NoSuchProcess):
                    child.terminate()

            try:
                process.wait(timeout=self.stop_grace)
            except subprocess.TimeoutExpired:
                logger.warning("Proxy core did not exit in time, force killing...")
                process.kill()
                process.wait()

            _, alive = psutil.wait_procs(children, timeout=self.stop_grace)
            for child in alive:
                with contextlib.suppress(psutil.NoSuchProcess):
                    child.kill()
            logger.info("Proxy core stopped")
        finally:
            if self._log_file is not None:
                self._log_file.close()
                self._log_file = None

    def stop(self) -> None:
        """Stop the core; safe to call in any state and more than once."""
        if self.state is CoreState.STOPPED:
            return
        if self.state is CoreState.FAILED:
            self._terminate()
            return
        if self.process is None:
            self.state = CoreState.STOPPED
            return
        self.state = CoreState.STOPPING
        self._terminate()
        self.state = CoreState.STOPPED

    def __enter__(self) -> "CoreProcessManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
