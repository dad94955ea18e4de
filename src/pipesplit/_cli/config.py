"""Configuration loading from pyproject.toml."""

import tomllib
from dataclasses import dataclass
from pathlib import Path

from pipesplit._events import DEFAULT_RANGE_SIZE
from pipesplit._partition import DEFAULT_PREFIX


class ConfigError(Exception):
    """Error in pipesplit configuration."""


@dataclass(slots=True, frozen=True)
class PipesplitConfig:
    """Configuration loaded from the ``[tool.pipesplit]`` table of pyproject.toml.

    All relative paths are resolved from the project root (directory containing pyproject.toml).
    """

    model: Path | None = None
    cut: Path | None = None
    output_dir: Path | None = None
    prefix: str = DEFAULT_PREFIX
    range_size: int = DEFAULT_RANGE_SIZE
    project_root: Path | None = None


def find_pyproject_toml(start_dir: Path | None = None) -> Path | None:
    """Find pyproject.toml by walking up from start_dir.

    Args:
        start_dir: Starting directory. Defaults to current working directory.

    Returns:
        Path to pyproject.toml if found, None otherwise.

    """
    if start_dir is None:
        start_dir = Path.cwd()

    current = start_dir.resolve()

    while True:
        candidate = current / "pyproject.toml"
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def _parse_path(section: dict[str, object], key: str, project_root: Path) -> Path | None:
    if key not in section:
        return None
    value = section[key]
    if not isinstance(value, str):
        msg = f"Invalid [tool.pipesplit].{key}: expected string path"
        raise ConfigError(msg)
    path = Path(value)
    if not path.is_absolute():
        path = project_root / path
    return path


def load_config(pyproject_path: Path) -> PipesplitConfig:
    """Load and validate [tool.pipesplit] config from pyproject.toml.

    Args:
        pyproject_path: Path to pyproject.toml

    Returns:
        Parsed PipesplitConfig

    Raises:
        ConfigError: If the configuration is invalid

    """
    project_root = pyproject_path.parent

    with pyproject_path.open("rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            msg = f"Invalid TOML in {pyproject_path}: {e}"
            raise ConfigError(msg) from e

    section = data.get("tool", {}).get("pipesplit", {})
    if not section:
        return PipesplitConfig(project_root=project_root)

    unknown = sorted(set(section) - {"model", "cut", "output_dir", "prefix", "range_size"})
    if unknown:
        msg = f"Unknown [tool.pipesplit] key(s): {', '.join(unknown)}"
        raise ConfigError(msg)

    prefix = section.get("prefix", DEFAULT_PREFIX)
    if not isinstance(prefix, str) or not prefix or "/" in prefix:
        msg = "Invalid [tool.pipesplit].prefix: expected a non-empty file name prefix"
        raise ConfigError(msg)

    range_size = section.get("range_size", DEFAULT_RANGE_SIZE)
    # bool is an int subclass
    if not isinstance(range_size, int) or isinstance(range_size, bool) or range_size < 1:
        msg = "Invalid [tool.pipesplit].range_size: expected a positive integer"
        raise ConfigError(msg)

    return PipesplitConfig(
        model=_parse_path(section, "model", project_root),
        cut=_parse_path(section, "cut", project_root),
        output_dir=_parse_path(section, "output_dir", project_root),
        prefix=prefix,
        range_size=range_size,
        project_root=project_root,
    )


def get_config() -> PipesplitConfig:
    """Get config from pyproject.toml in current directory or parents.

    Returns:
        PipesplitConfig (may be empty if no pyproject.toml or no [tool.pipesplit] section)

    """
    pyproject_path = find_pyproject_toml()
    if pyproject_path is None:
        return PipesplitConfig()
    return load_config(pyproject_path)
