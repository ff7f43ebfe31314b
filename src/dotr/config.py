"""Configuration model for dotr: packages, profiles and config.toml I/O."""

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli_w

from .exceptions import ConfigNotFoundError, ConfigParseError, DotrIOError

# Constants
CONFIG_FILENAME = "config.toml"
USER_VARIABLES_FILENAME = ".uservariables.toml"
DOTFILES_DIR_NAME = "dotfiles"
GITIGNORE_FILENAME = ".gitignore"


# ============================================================================
# FIELD VALIDATION
# ============================================================================


def _get_table(table: Dict[str, Any], key: str, owner: str) -> Dict[str, Any]:
    value = table.get(key, {})
    if not isinstance(value, dict):
        raise ConfigParseError(f"{owner}: '{key}' must be a table")
    return dict(value)


def _get_string_list(table: Dict[str, Any], key: str, owner: str) -> List[str]:
    value = table.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigParseError(f"{owner}: '{key}' must be an array of strings")
    return list(value)


def _get_string_table(table: Dict[str, Any], key: str, owner: str) -> Dict[str, str]:
    value = _get_table(table, key, owner)
    for k, v in value.items():
        if not isinstance(v, str):
            raise ConfigParseError(f"{owner}: '{key}.{k}' must be a string")
    return value


def _get_string(table: Dict[str, Any], key: str, owner: str) -> str:
    if key not in table:
        raise ConfigParseError(f"{owner}: '{key}' is required")
    value = table[key]
    if not isinstance(value, str):
        raise ConfigParseError(f"{owner}: '{key}' must be a string")
    return value


# ============================================================================
# MODELS
# ============================================================================


@dataclass
class Package:
    """A stored source path mapped to a live destination path."""

    name: str
    src: str
    dest: str
    dependencies: List[str] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)
    pre_actions: List[str] = field(default_factory=list)
    post_actions: List[str] = field(default_factory=list)
    targets: Dict[str, str] = field(default_factory=dict)
    skip: bool = False
    ignore: List[str] = field(default_factory=list)
    prompts: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_table(cls, name: str, table: Dict[str, Any]) -> "Package":
        owner = f"Package '{name}'"
        if not isinstance(table, dict):
            raise ConfigParseError(f"{owner} must be a table")
        skip = table.get("skip", False)
        if not isinstance(skip, bool):
            raise ConfigParseError(f"{owner}: 'skip' must be a boolean")
        return cls(
            name=name,
            src=_get_string(table, "src", owner),
            dest=_get_string(table, "dest", owner),
            dependencies=_get_string_list(table, "dependencies", owner),
            variables=_get_table(table, "variables", owner),
            pre_actions=_get_string_list(table, "pre_actions", owner),
            post_actions=_get_string_list(table, "post_actions", owner),
            targets=_get_string_table(table, "targets", owner),
            skip=skip,
            ignore=_get_string_list(table, "ignore", owner),
            prompts=_get_string_table(table, "prompts", owner),
        )

    def to_table(self) -> Dict[str, Any]:
        table: Dict[str, Any] = {"src": self.src, "dest": self.dest}
        if self.dependencies:
            table["dependencies"] = list(self.dependencies)
        if self.variables:
            table["variables"] = dict(self.variables)
        if self.pre_actions:
            table["pre_actions"] = list(self.pre_actions)
        if self.post_actions:
            table["post_actions"] = list(self.post_actions)
        if self.targets:
            table["targets"] = dict(self.targets)
        if self.skip:
            table["skip"] = True
        if self.ignore:
            table["ignore"] = list(self.ignore)
        if self.prompts:
            table["prompts"] = dict(self.prompts)
        return table


@dataclass
class Profile:
    """A named bundle of packages with profile-scoped variables."""

    name: str
    variables: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    prompts: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_table(cls, name: str, table: Dict[str, Any]) -> "Profile":
        owner = f"Profile '{name}'"
        if not isinstance(table, dict):
            raise ConfigParseError(f"{owner} must be a table")
        return cls(
            name=name,
            variables=_get_table(table, "variables", owner),
            dependencies=_get_string_list(table, "dependencies", owner),
            prompts=_get_string_table(table, "prompts", owner),
        )

    def to_table(self) -> Dict[str, Any]:
        table: Dict[str, Any] = {
            "variables": dict(self.variables),
            "dependencies": list(self.dependencies),
        }
        if self.prompts:
            table["prompts"] = dict(self.prompts)
        return table


@dataclass
class Config:
    """The parsed contents of config.toml."""

    banner: bool = True
    packages: Dict[str, Package] = field(default_factory=dict)
    profiles: Dict[str, Profile] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    prompts: Dict[str, str] = field(default_factory=dict)
    action_timeout: Optional[float] = None

    @classmethod
    def from_table(cls, table: Dict[str, Any]) -> "Config":
        owner = "config.toml"
        banner = table.get("banner", False)
        if not isinstance(banner, bool):
            raise ConfigParseError(f"{owner}: 'banner' must be a boolean")

        timeout = table.get("action_timeout")
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float))
        ):
            raise ConfigParseError(f"{owner}: 'action_timeout' must be a number")

        packages = {
            name: Package.from_table(name, value)
            for name, value in _get_table(table, "packages", owner).items()
        }
        profiles = {
            name: Profile.from_table(name, value)
            for name, value in _get_table(table, "profiles", owner).items()
        }
        return cls(
            banner=banner,
            packages=packages,
            profiles=profiles,
            variables=_get_table(table, "variables", owner),
            prompts=_get_string_table(table, "prompts", owner),
            action_timeout=float(timeout) if timeout is not None else None,
        )

    def to_table(self) -> Dict[str, Any]:
        table: Dict[str, Any] = {"banner": self.banner}
        if self.action_timeout is not None:
            table["action_timeout"] = self.action_timeout
        if self.variables:
            table["variables"] = dict(self.variables)
        if self.prompts:
            table["prompts"] = dict(self.prompts)
        if self.packages:
            table["packages"] = {
                name: pkg.to_table() for name, pkg in sorted(self.packages.items())
            }
        if self.profiles:
            table["profiles"] = {
                name: profile.to_table()
                for name, profile in sorted(self.profiles.items())
            }
        return table

    @classmethod
    def from_path(cls, working_dir: Path) -> "Config":
        """Load config.toml from the repository root."""
        config_file = Path(working_dir) / CONFIG_FILENAME
        if not config_file.exists():
            raise ConfigNotFoundError(
                f"config.toml not found in {Path(working_dir).resolve()}"
            )
        try:
            with open(config_file, "rb") as f:
                table = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigParseError(f"Failed to parse {config_file}: {e}") from e
        except OSError as e:
            raise DotrIOError(f"Failed to read {config_file}: {e}") from e
        return cls.from_table(table)

    def save(self, working_dir: Path) -> None:
        """Write config.toml back to the repository root."""
        config_file = Path(working_dir) / CONFIG_FILENAME
        try:
            with open(config_file, "wb") as f:
                tomli_w.dump(self.to_table(), f)
        except OSError as e:
            raise DotrIOError(f"Failed to write {config_file}: {e}") from e


# ============================================================================
# USER VARIABLES
# ============================================================================


def load_user_variables(working_dir: Path) -> Dict[str, Any]:
    """Load the git-ignored user override variables, if any."""
    path = Path(working_dir) / USER_VARIABLES_FILENAME
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigParseError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise DotrIOError(f"Failed to read {path}: {e}") from e


def save_user_variables(working_dir: Path, variables: Dict[str, Any]) -> None:
    """Merge ``variables`` into .uservariables.toml."""
    current = load_user_variables(working_dir)
    current.update(variables)
    path = Path(working_dir) / USER_VARIABLES_FILENAME
    try:
        with open(path, "wb") as f:
            tomli_w.dump(current, f)
    except OSError as e:
        raise DotrIOError(f"Failed to write {path}: {e}") from e
