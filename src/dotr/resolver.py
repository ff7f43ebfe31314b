"""Package selection and dependency closure for dotr."""

from typing import Dict, Iterable, List, Optional

from .config import Package, Profile
from .exceptions import DependencyNotFoundError, PackageNotFoundError


def base_selection(
    packages: Dict[str, Package],
    names: Optional[Iterable[str]] = None,
    profile: Optional[Profile] = None,
) -> List[Package]:
    """Packages selected before dependencies are added.

    Explicit names win over the profile; with neither, every package that is
    not marked ``skip`` is selected.
    """
    if names:
        selected = []
        for name in names:
            if name not in packages:
                raise PackageNotFoundError(name)
            selected.append(packages[name])
        return selected

    if profile is not None:
        selected = []
        for name in profile.dependencies:
            if name not in packages:
                raise PackageNotFoundError(
                    name,
                    f"Package '{name}' required by profile '{profile.name}' "
                    "not found in configuration",
                )
            selected.append(packages[name])
        return selected

    return [pkg for pkg in packages.values() if not pkg.skip]


def resolve_packages(
    packages: Dict[str, Package],
    names: Optional[Iterable[str]] = None,
    profile: Optional[Profile] = None,
) -> List[Package]:
    """Return the selection plus its transitive dependencies, sorted by name.

    Every package is visited at most once, so dependency cycles terminate
    and each member appears a single time.
    """
    resolved: Dict[str, Package] = {}
    pending = list(base_selection(packages, names, profile))

    while pending:
        package = pending.pop()
        if package.name in resolved:
            continue
        resolved[package.name] = package
        for dep in package.dependencies:
            if dep not in packages:
                raise DependencyNotFoundError(dep, required_by=package.name)
            if dep not in resolved:
                pending.append(packages[dep])

    return [resolved[name] for name in sorted(resolved)]
