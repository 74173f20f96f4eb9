"""Run a command with a proxy scoped to its own process tree."""

import pathlib
import tomllib
from importlib import metadata


def get_version() -> str:
    """Read the version from the installed metadata or pyproject.toml."""
    try:
        return metadata.version("route-cli")
    except metadata.PackageNotFoundError:
        pass

    current_dir = pathlib.Path(__file__).parent
    # Look for pyproject.toml in parent directories
    for parent in [current_dir, *current_dir.parents]:
        pyproject_path = parent / "pyproject.toml"
        if pyproject_path.exists():
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
            return pyproject_data["project"]["version"]

    # Fallback version if file not found
    return "0.0.0"


__version__ = get_version()
