"""Layered variable resolution for dotr.

Variables come from five layers, lowest to highest precedence:

1. the process environment
2. ``[variables]`` in config.toml
3. the package's own ``variables`` table
4. the active profile's ``variables`` table
5. ``.uservariables.toml`` (local, not checked in)

Layers are merged key by key. Nested tables are not deep-merged: a table at a
higher layer replaces the lower layer's value for that key entirely.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .config import Config, Package, Profile, load_user_variables

PROFILE_VARIABLE = "DOTR_PROFILE"


def merge(layers: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Merge ``layers`` in order; later layers win on key collision."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        merged.update(layer)
    return merged


@dataclass
class VariableContext:
    """The package-independent variable layers of one invocation."""

    environment: Dict[str, str] = field(default_factory=dict)
    config_variables: Dict[str, Any] = field(default_factory=dict)
    profile: Optional[Profile] = None
    user_variables: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        config: Config,
        working_dir: Path,
        profile: Optional[Profile] = None,
        environment: Optional[Mapping[str, str]] = None,
    ) -> "VariableContext":
        return cls(
            environment=dict(os.environ if environment is None else environment),
            config_variables=dict(config.variables),
            profile=profile,
            user_variables=load_user_variables(working_dir),
        )

    def layers(self, package: Optional[Package] = None) -> List[Dict[str, Any]]:
        """Return the variable layers in ascending precedence."""
        return [
            self.environment,
            self.config_variables,
            package.variables if package is not None else {},
            self.profile.variables if self.profile is not None else {},
            self.user_variables,
        ]

    def resolve(self, package: Optional[Package] = None) -> Dict[str, Any]:
        """Merged view for ``package`` (or the package-less view)."""
        return merge(self.layers(package))

    def has_variable(self, name: str, package: Optional[Package] = None) -> bool:
        return any(name in layer for layer in self.layers(package))


def profile_name_from_variables(
    user_variables: Mapping[str, Any], environment: Mapping[str, str]
) -> Optional[str]:
    """Profile requested through DOTR_PROFILE, user overrides first."""
    value = user_variables.get(PROFILE_VARIABLE) or environment.get(PROFILE_VARIABLE)
    if isinstance(value, str) and value:
        return value
    return None


# ============================================================================
# PROMPTS
# ============================================================================


def collect_prompts(
    config: Config, packages: Iterable[Package], profile: Optional[Profile] = None
) -> Dict[str, str]:
    """Gather prompt messages from the config, the profile and each package."""
    prompts: Dict[str, str] = dict(config.prompts)
    if profile is not None:
        prompts.update(profile.prompts)
    for package in packages:
        for name, message in package.prompts.items():
            prompts.setdefault(name, message)
    return prompts


def missing_prompts(
    prompts: Mapping[str, str],
    context: VariableContext,
    packages: Iterable[Package] = (),
) -> Dict[str, str]:
    """Prompts whose variable is not defined in any layer yet."""
    packages = list(packages)
    missing = {}
    for name, message in prompts.items():
        if context.has_variable(name):
            continue
        if any(name in pkg.variables for pkg in packages):
            continue
        missing[name] = message or f"Enter a value for {name}"
    return missing
