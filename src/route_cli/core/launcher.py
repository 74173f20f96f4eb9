"""Scoped launch of the target command.

The target gets the proxy through its own environment only:
``HTTP_PROXY``, ``HTTPS_PROXY`` and ``ALL_PROXY`` point at the core's mixed
inbound and ``NO_PROXY`` lists the bypass entries. Lowercase variants
inherited from the parent are dropped so they cannot override the scoped
values. The parent's ``os.environ`` is never modified.
"""

import os
import shutil
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from typing import Final

from loguru import logger

from route_cli.core.exceptions import TargetNotFoundError

PROXY_VARIABLES: Final = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY")
NO_PROXY_VARIABLE: Final = "NO_PROXY"
INTERRUPT_GRACE: Final = 3.0  # Seconds the child gets to exit after an interrupt


def build_environment(
    listen_address: str, no_proxy: Iterable[str], base: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Build the child environment.

    Args:
        listen_address: host:port of the proxy core's mixed inbound
        no_proxy: Hosts and domains that bypass the proxy
        base: Environment to start from (defaults to ``os.environ``)

    Returns:
        dict[str, str]: A new environment mapping
    """
    env = dict(os.environ if base is None else base)
    scoped = (*PROXY_VARIABLES, NO_PROXY_VARIABLE)
    for name in scoped:
        if name.lower() in env and name.lower() != name:
            del env[name.lower()]

    proxy_url = f"http://{listen_address}"
    for name in PROXY_VARIABLES:
        env[name] = proxy_url
    env[NO_PROXY_VARIABLE] = ",".join(sorted(set(no_proxy)))
    return env


def _resolve_program(command: str, env: Mapping[str, str]) -> str:
    if os.sep in command or (os.altsep and os.altsep in command):
        return command
    program = shutil.which(command, path=env.get("PATH"))
    if program is None:
        raise TargetNotFoundError(command)
    return program


class ScopedLauncher:
    """Run a command with proxy variables applied to its environment only."""

    def __init__(self, no_proxy: Iterable[str] = ()) -> None:
        self.no_proxy = frozenset(no_proxy)
        self.process: subprocess.Popen | None = None

    def launch(self, command: str, args: Sequence[str], listen_address: str) -> int:
        """Start the command and wait for it to exit.

        Args:
            command: Program name or path
            args: Arguments passed to the program
            listen_address: host:port of the proxy core

        Returns:
            int: The child's return code, unchanged

        Raises:
            TargetNotFoundError: If the program cannot be found or executed
            KeyboardInterrupt: Re-raised after the child has been stopped
        """
        env = build_environment(listen_address, self.no_proxy)
        program = _resolve_program(command, env)

        logger.info(f"Launching {command} through {listen_address}")
        try:
            self.process = subprocess.Popen([program, *args], env=env)
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise TargetNotFoundError(command, e.strerror) from e
        except OSError as e:
            raise TargetNotFoundError(command, str(e)) from e

        try:
            code = self.process.wait()
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping target command")
            self.terminate()
            raise

        logger.info(f"{command} exited with code {code}")
        return code

    def terminate(self, grace: float = INTERRUPT_GRACE) -> None:
        """Stop the child: wait for it, then terminate, then kill."""
        process = self.process
        if process is None or process.poll() is not None:
            return
        for step in (None, process.terminate):
            if step is not None:
                step()
            try:
                process.wait(timeout=grace)
                return
            except (subprocess.TimeoutExpired, KeyboardInterrupt):
                continue
        logger.warning("Target command did not exit in time, force killing...")
        process.kill()
        process.wait()


def exit_code(returncode: int) -> int:
    """Convert a child return code into a shell exit code."""
    if returncode < 0:
        return 128 + abs(returncode)
    return returncode
