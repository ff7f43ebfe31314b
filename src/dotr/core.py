"""Core functionality for dotr - a templating dotfiles deployer."""

import difflib
import filecmp
import fnmatch
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import typer
from git import InvalidGitRepositoryError, Repo
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.tree import Tree

from .config import (
    CONFIG_FILENAME,
    DOTFILES_DIR_NAME,
    GITIGNORE_FILENAME,
    USER_VARIABLES_FILENAME,
    Config,
    Package,
    Profile,
)
from .exceptions import (
    ActionFailedError,
    BackupConflictError,
    DotrFileNotFoundError,
    DotrIOError,
    OperationResultDict,
    ProfileNotFoundError,
)
from .resolver import resolve_packages
from .templates import is_templated, package_is_templated, read_text, render_string
from .variables import (
    VariableContext,
    collect_prompts,
    merge,
    missing_prompts,
    profile_name_from_variables,
)

# Constants
BACKUP_EXT = "dotrbak"
DEFAULT_SHELL = "/bin/sh"

# Global console instance
console = Console()


# ============================================================================
# PATH MANAGEMENT
# ============================================================================


def get_home_dir() -> Path:
    """Get the home directory, respecting environment variables for testing."""
    if "HOME" in os.environ:
        return Path(os.environ["HOME"])
    return Path.home()


def resolve_path(path: str, working_dir: Path) -> Path:
    """Resolve a configured path against the home and working directories."""
    if path == "~":
        return get_home_dir()
    if path.startswith("~/"):
        return get_home_dir() / path[2:]
    if os.path.isabs(path):
        return Path(path)
    return Path(os.path.abspath(Path(working_dir) / path))


def normalize_home_path(path: Union[str, Path]) -> str:
    """Express paths inside the home directory as ``~/...``."""
    path = Path(path)
    home = get_home_dir()
    if path == home:
        return "~"
    if path.is_relative_to(home):
        return f"~/{path.relative_to(home).as_posix()}"
    return str(path)


def backup_path_for(path: Path) -> Path:
    """The fixed backup location for a live path."""
    return path.with_name(f"{path.name}.{BACKUP_EXT}")


def is_backup_path(path: Path) -> bool:
    return path.name.endswith(f".{BACKUP_EXT}")


def get_package_name(path: str, working_dir: Path) -> str:
    """Derive a package name from a file or directory path.

    ``~/.config/nvim`` becomes ``d_nvim`` and ``~/.tmux-3.2.conf`` becomes
    ``f_tmux``: leading dots and a trailing ``-<version>`` are dropped, then
    ``-`` and ``.`` become ``_``.
    """
    resolved = resolve_path(path, working_dir)
    name = resolved.name.lstrip(".")
    name = re.sub(r"-\d.*$", "", name)
    prefix = "d_" if resolved.is_dir() else "f_"
    return f"{prefix}{name}".replace("-", "_").replace(".", "_")


# ============================================================================
# CONTEXT
# ============================================================================


@dataclass
class Context:
    """Everything one invocation needs to operate on packages."""

    working_dir: Path
    variables: VariableContext = field(default_factory=VariableContext)
    profile: Optional[Profile] = None
    action_timeout: Optional[float] = None
    quiet: bool = False


def build_context(
    config: Config,
    working_dir: Path,
    profile_name: Optional[str] = None,
    quiet: bool = False,
    environment: Optional[Dict[str, str]] = None,
) -> Context:
    """Build the invocation context and select the active profile.

    An explicit ``profile_name`` wins over DOTR_PROFILE.
    """
    working_dir = Path(working_dir)
    variables = VariableContext.build(config, working_dir, environment=environment)
    if profile_name is None:
        profile_name = profile_name_from_variables(
            variables.user_variables, variables.environment
        )

    profile = None
    if profile_name:
        if profile_name not in config.profiles:
            raise ProfileNotFoundError(profile_name)
        profile = config.profiles[profile_name]
        variables.profile = profile

    return Context(
        working_dir=working_dir,
        variables=variables,
        profile=profile,
        action_timeout=config.action_timeout,
        quiet=quiet,
    )


def resolve_src(package: Package, ctx: Context) -> Path:
    return resolve_path(package.src, ctx.working_dir)


def resolve_dest(package: Package, ctx: Context) -> Path:
    """The live path, honouring the active profile's target override."""
    if ctx.profile is not None and ctx.profile.name in package.targets:
        return resolve_path(package.targets[ctx.profile.name], ctx.working_dir)
    return resolve_path(package.dest, ctx.working_dir)


# ============================================================================
# IGNORE PATTERNS
# ============================================================================


def is_ignored(relative_path: Union[str, Path], patterns: Iterable[str]) -> bool:
    """Check a path, relative to the package root, against ignore patterns.

    Patterns without ``/`` match any single path segment, so ``*.log`` or
    ``node_modules`` apply at every depth. Patterns with ``/`` are anchored at
    the package root and matched against the path and each of its parent
    directories, which excludes whole subtrees. ``**/``, ``/**`` and ``/**/``
    also match zero directories. Matching is case-sensitive.
    """
    path = Path(relative_path).as_posix()
    if path in ("", "."):
        return False
    parts = path.split("/")
    prefixes = ["/".join(parts[: i + 1]) for i in range(len(parts))]

    for pattern in patterns:
        pattern = pattern.strip()
        if pattern.startswith("./"):
            pattern = pattern[2:]
        pattern = pattern.rstrip("/")
        if not pattern:
            continue

        if "/" not in pattern:
            if any(fnmatch.fnmatchcase(part, pattern) for part in parts):
                return True
            continue

        candidates = [pattern]
        if pattern.startswith("**/"):
            candidates.append(pattern[3:])
        if pattern.endswith("/**"):
            candidates.append(pattern[:-3])
        if "/**/" in pattern:
            candidates.append(pattern.replace("/**/", "/"))
        for candidate in candidates:
            if any(fnmatch.fnmatchcase(prefix, candidate) for prefix in prefixes):
                return True
    return False


# ============================================================================
# REPOSITORY INITIALIZATION
# ============================================================================


def init_repo(working_dir: Path, quiet: bool = False) -> bool:
    """Create config.toml, the dotfiles store and a git repository."""
    working_dir = Path(working_dir)
    if (working_dir / CONFIG_FILENAME).exists():
        if not quiet:
            typer.secho(
                "config.toml already exists. Initialization skipped.",
                fg=typer.colors.YELLOW,
            )
        return False

    Config().save(working_dir)
    (working_dir / DOTFILES_DIR_NAME).mkdir(exist_ok=True)

    gitignore = working_dir / GITIGNORE_FILENAME
    entries = gitignore.read_text().splitlines() if gitignore.exists() else []
    if USER_VARIABLES_FILENAME not in entries:
        entries.append(USER_VARIABLES_FILENAME)
        gitignore.write_text("\n".join(entries) + "\n")

    try:
        Repo(str(working_dir), search_parent_directories=True)
    except InvalidGitRepositoryError:
        Repo.init(str(working_dir))
        if not quiet:
            typer.secho("Initialized git repository", fg=typer.colors.BLUE)

    if not quiet:
        typer.secho("Default config.toml created.", fg=typer.colors.GREEN)
    return True


# ============================================================================
# ACTIONS
# ============================================================================


def run_action(
    command: str,
    variables: Dict[str, Any],
    working_dir: Path,
    timeout: Optional[float] = None,
    quiet: bool = False,
) -> None:
    """Render ``command`` and run it through the user's shell."""
    rendered = render_string(command, variables)
    shell = os.environ.get("SHELL") or DEFAULT_SHELL
    if not quiet:
        typer.secho(f"Running action: {rendered}", fg=typer.colors.BLUE)
    try:
        result = subprocess.run(
            [shell, "-c", rendered], cwd=working_dir, timeout=timeout
        )
    except subprocess.TimeoutExpired as e:
        raise ActionFailedError(command, None) from e
    except OSError as e:
        raise DotrIOError(f"Could not run action '{command}': {e}") from e
    if result.returncode != 0:
        raise ActionFailedError(command, result.returncode)


def run_actions(actions: List[str], variables: Dict[str, Any], ctx: Context) -> None:
    for action in actions:
        run_action(
            action,
            variables,
            ctx.working_dir,
            timeout=ctx.action_timeout,
            quiet=ctx.quiet,
        )


# ============================================================================
# DEPLOY
# ============================================================================


def backup_existing(dest: Path, quiet: bool = False) -> Optional[Path]:
    """Move the current live content aside by renaming it.

    A stale backup from an earlier run is removed first.
    """
    if not (dest.exists() or dest.is_symlink()):
        return None

    backup = backup_path_for(dest)
    try:
        if backup.is_dir() and not backup.is_symlink():
            shutil.rmtree(backup)
        elif backup.exists() or backup.is_symlink():
            backup.unlink()
        os.rename(dest, backup)
    except OSError as e:
        raise BackupConflictError(f"Could not back up {dest} to {backup}: {e}") from e

    if not quiet:
        typer.secho(f"Backed up {dest} to {backup}", fg=typer.colors.BLUE)
    return backup


def deploy_file(
    src: Path, dest: Path, variables: Dict[str, Any], quiet: bool = False
) -> None:
    """Render a templated text file, or copy anything else verbatim."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    text = read_text(src)
    if text is not None and is_templated(text):
        rendered = render_string(text, variables, path=str(src))
        with open(dest, "w", encoding="utf-8", newline="") as f:
            f.write(rendered)
        shutil.copymode(src, dest)
        if not quiet:
            typer.secho(f"Rendered {src} to {dest}", fg=typer.colors.GREEN)
    else:
        shutil.copy2(src, dest)
        if not quiet:
            typer.secho(f"Deployed {src} to {dest}", fg=typer.colors.GREEN)


def deploy_package(package: Package, ctx: Context) -> Path:
    """Deploy one package from the store to its live location.

    Order: pre-actions, backup of the current destination, copy/render,
    post-actions. Returns the destination path.
    """
    src = resolve_src(package, ctx)
    dest = resolve_dest(package, ctx)
    if not src.exists():
        raise DotrFileNotFoundError(
            f"Source '{src}' of package '{package.name}' does not exist"
        )

    variables = ctx.variables.resolve(package)
    run_actions(package.pre_actions, variables, ctx)
    backup_existing(dest, quiet=ctx.quiet)

    try:
        if src.is_dir():
            dest.mkdir(parents=True, exist_ok=True)
            for root, dirs, files in os.walk(src):
                rel_root = Path(root).relative_to(src)
                dirs[:] = sorted(
                    d for d in dirs if not is_ignored(rel_root / d, package.ignore)
                )
                for d in dirs:
                    (dest / rel_root / d).mkdir(exist_ok=True)
                for name in sorted(files):
                    rel = rel_root / name
                    if is_ignored(rel, package.ignore):
                        if not ctx.quiet:
                            typer.secho(f"Ignored {rel}", fg=typer.colors.YELLOW)
                        continue
                    deploy_file(Path(root) / name, dest / rel, variables, ctx.quiet)
        else:
            deploy_file(src, dest, variables, ctx.quiet)
    except OSError as e:
        raise DotrIOError(f"Failed to deploy package '{package.name}': {e}") from e

    run_actions(package.post_actions, variables, ctx)
    if not ctx.quiet:
        typer.secho(f"Deployed package '{package.name}'", fg=typer.colors.GREEN)
    return dest


# ============================================================================
# UPDATE (LIVE -> STORE)
# ============================================================================


def copy_if_changed(src: Path, dest: Path, quiet: bool = False) -> bool:
    """Copy ``src`` over ``dest`` unless their contents already match."""
    if dest.is_file() and filecmp.cmp(src, dest, shallow=False):
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dest)
    if not quiet:
        typer.secho(f"Updated {dest} from {src}", fg=typer.colors.GREEN)
    return True


def sync_into_store(
    live: Path, store: Path, ignore: List[str], quiet: bool = False
) -> int:
    """Copy live content into the store, returning the number of files written.

    Backup files and ignored paths are left out.
    """
    if not live.is_dir():
        return int(copy_if_changed(live, store, quiet))

    written = 0
    store.mkdir(parents=True, exist_ok=True)
    for root, dirs, files in os.walk(live):
        rel_root = Path(root).relative_to(live)
        dirs[:] = sorted(
            d
            for d in dirs
            if not is_backup_path(Path(d)) and not is_ignored(rel_root / d, ignore)
        )
        for d in dirs:
            (store / rel_root / d).mkdir(exist_ok=True)
        for name in sorted(files):
            rel = rel_root / name
            if is_backup_path(rel) or is_ignored(rel, ignore):
                continue
            written += copy_if_changed(Path(root) / name, store / rel, quiet)
    return written


def update_package(package: Package, ctx: Context) -> bool:
    """Copy a package's live content back into the store.

    Templated packages are skipped so stored templates are never replaced by
    rendered output. Returns False when the package was skipped.
    """
    src = resolve_src(package, ctx)
    dest = resolve_dest(package, ctx)

    if package_is_templated(src):
        if not ctx.quiet:
            typer.secho(
                f"Skipping update for templated package '{package.name}'",
                fg=typer.colors.YELLOW,
            )
        return False

    if not dest.exists():
        raise DotrFileNotFoundError(
            f"Destination '{dest}' of package '{package.name}' does not exist"
        )

    try:
        written = sync_into_store(dest, src, package.ignore, ctx.quiet)
    except OSError as e:
        raise DotrIOError(f"Failed to update package '{package.name}': {e}") from e

    if not ctx.quiet:
        if written:
            typer.secho(
                f"Updated package '{package.name}' ({written} files)",
                fg=typer.colors.GREEN,
            )
        else:
            typer.secho(
                f"Package '{package.name}' is unchanged", fg=typer.colors.YELLOW
            )
    return True


# ============================================================================
# DIFF
# ============================================================================


@dataclass
class FileDiff:
    """A single difference between the store and the live location."""

    path: str
    status: str  # "modified", "missing" (not deployed) or "extra" (live only)
    diff: str = ""


@dataclass
class DiffReport:
    package: str
    source: Path
    destination: Path
    deployed: bool
    files: List[FileDiff] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.files)


def diff_file(
    src: Path, dest: Path, rel: str, variables: Dict[str, Any]
) -> Optional[FileDiff]:
    """Compare a stored file (rendered if templated) with its live copy."""
    if not dest.is_file():
        return FileDiff(rel, "missing")

    expected = read_text(src)
    actual = read_text(dest)
    if expected is None or actual is None:
        if src.read_bytes() == dest.read_bytes():
            return None
        return FileDiff(rel, "modified", "Binary files differ")

    if is_templated(expected):
        expected = render_string(expected, variables, path=str(src))
    if expected == actual:
        return None

    lines = difflib.unified_diff(
        actual.splitlines(),
        expected.splitlines(),
        fromfile=f"live/{rel}",
        tofile=f"store/{rel}",
        lineterm="",
    )
    return FileDiff(rel, "modified", "\n".join(lines))


def diff_package(package: Package, ctx: Context) -> DiffReport:
    """Compare a package's store content with its live location (read-only)."""
    src = resolve_src(package, ctx)
    dest = resolve_dest(package, ctx)
    if not src.exists():
        raise DotrFileNotFoundError(
            f"Source '{src}' of package '{package.name}' does not exist"
        )

    report = DiffReport(
        package=package.name, source=src, destination=dest, deployed=dest.exists()
    )
    if not report.deployed:
        return report

    variables = ctx.variables.resolve(package)
    try:
        if not src.is_dir():
            if dest.is_dir():
                report.files.append(
                    FileDiff(dest.name, "modified", "File replaced by a directory")
                )
            else:
                result = diff_file(src, dest, dest.name, variables)
                if result is not None:
                    report.files.append(result)
            return report

        seen = set()
        for root, dirs, files in os.walk(src):
            rel_root = Path(root).relative_to(src)
            dirs[:] = sorted(
                d for d in dirs if not is_ignored(rel_root / d, package.ignore)
            )
            for name in sorted(files):
                rel = rel_root / name
                if is_ignored(rel, package.ignore):
                    continue
                seen.add(rel.as_posix())
                result = diff_file(
                    Path(root) / name, dest / rel, rel.as_posix(), variables
                )
                if result is not None:
                    report.files.append(result)

        if dest.is_dir():
            for root, dirs, files in os.walk(dest):
                rel_root = Path(root).relative_to(dest)
                dirs[:] = sorted(
                    d
                    for d in dirs
                    if not is_backup_path(Path(d))
                    and not is_ignored(rel_root / d, package.ignore)
                )
                for name in sorted(files):
                    rel = rel_root / name
                    if rel.as_posix() in seen or is_backup_path(rel):
                        continue
                    if is_ignored(rel, package.ignore):
                        continue
                    report.files.append(FileDiff(rel.as_posix(), "extra"))
    except OSError as e:
        raise DotrIOError(f"Failed to diff package '{package.name}': {e}") from e

    return report


def print_diff_report(report: DiffReport) -> None:
    if not report.deployed:
        typer.secho(
            f"{report.package}: no differences "
            f"(not deployed yet: {report.destination})",
            fg=typer.colors.YELLOW,
        )
        return
    if not report.has_changes:
        typer.secho(f"{report.package}: no differences", fg=typer.colors.GREEN)
        return

    typer.secho(f"Changes in {report.package}:", fg=typer.colors.CYAN, bold=True)
    for item in report.files:
        if item.status == "missing":
            typer.secho(f"  {item.path}: not deployed", fg=typer.colors.YELLOW)
        elif item.status == "extra":
            typer.secho(f"  {item.path}: only in live location", fg=typer.colors.YELLOW)
        else:
            typer.secho(f"  {item.path}: modified", fg=typer.colors.WHITE)
            console.print(Syntax(item.diff, "diff", theme="ansi_dark"))


# ============================================================================
# IMPORT
# ============================================================================


def import_package(
    config: Config,
    path: str,
    ctx: Context,
    name: Optional[str] = None,
    profile_name: Optional[str] = None,
) -> Package:
    """Copy a live file or directory into the store and register it.

    Under a profile, the package is marked ``skip`` and attached to the
    profile (created on demand) with a profile-specific target.
    """
    live = resolve_path(path, ctx.working_dir)
    if not live.exists():
        raise DotrFileNotFoundError(f"Path '{live}' does not exist")

    pkg_name = name or get_package_name(path, ctx.working_dir)
    dest = path if path.startswith("~") else normalize_home_path(live)
    if not ctx.quiet:
        typer.secho(f"Importing {live} as '{pkg_name}'", fg=typer.colors.BLUE)

    package = config.packages.get(pkg_name)
    if package is None:
        package = Package(
            name=pkg_name, src=f"{DOTFILES_DIR_NAME}/{pkg_name}", dest=dest
        )

    if profile_name:
        package.skip = True
        package.targets[profile_name] = dest
        profile = config.profiles.setdefault(profile_name, Profile(name=profile_name))
        if pkg_name not in profile.dependencies:
            profile.dependencies.append(pkg_name)

    store = resolve_src(package, ctx)
    if package_is_templated(store):
        if not ctx.quiet:
            typer.secho(
                f"Skipping copy for templated package '{pkg_name}'",
                fg=typer.colors.YELLOW,
            )
    else:
        try:
            sync_into_store(live, store, package.ignore, ctx.quiet)
        except OSError as e:
            raise DotrIOError(f"Failed to import {live}: {e}") from e

    config.packages[pkg_name] = package
    config.save(ctx.working_dir)
    if not ctx.quiet:
        typer.secho(
            f"Package '{pkg_name}' imported successfully", fg=typer.colors.GREEN
        )
    return package


# ============================================================================
# BATCH OPERATIONS
# ============================================================================


def select_packages(
    config: Config, ctx: Context, names: Optional[List[str]] = None
) -> List[Package]:
    """Resolve the working set for ``names`` or the active profile."""
    return resolve_packages(config.packages, names, ctx.profile)


def pending_prompts(
    config: Config, ctx: Context, packages: List[Package]
) -> Dict[str, str]:
    """Prompted variables that still have no value in any layer."""
    prompts = collect_prompts(config, packages, ctx.profile)
    return missing_prompts(prompts, ctx.variables, packages)


def deploy_packages(
    config: Config, ctx: Context, names: Optional[List[str]] = None
) -> List[str]:
    """Deploy the resolved working set; the first failure aborts the run."""
    packages = select_packages(config, ctx, names)
    if not packages and not ctx.quiet:
        typer.secho("No packages to deploy", fg=typer.colors.YELLOW)
    for package in packages:
        deploy_package(package, ctx)
    return [package.name for package in packages]


def update_packages(
    config: Config, ctx: Context, names: Optional[List[str]] = None
) -> OperationResultDict:
    """Update the store from live content for the resolved working set."""
    result: OperationResultDict = {"processed": [], "skipped": []}
    for package in select_packages(config, ctx, names):
        if update_package(package, ctx):
            result["processed"].append(package.name)
        else:
            result["skipped"].append(package.name)
    return result


def diff_packages(
    config: Config, ctx: Context, names: Optional[List[str]] = None
) -> List[DiffReport]:
    return [diff_package(pkg, ctx) for pkg in select_packages(config, ctx, names)]


def build_variable_tree(label: str, variables: Dict[str, Any]) -> Tree:
    tree = Tree(escape(label))

    def add(node: Tree, key: str, value: Any) -> None:
        if isinstance(value, dict):
            branch = node.add(f"[bold]{escape(key)}[/bold]")
            for k, v in value.items():
                add(branch, k, v)
        elif isinstance(value, list):
            branch = node.add(f"[bold]{escape(key)}[/bold]")
            for i, item in enumerate(value):
                add(branch, f"- {i}", item)
        else:
            node.add(f"[bold]{escape(key)}[/bold] = {escape(str(value))}")

    for key in sorted(variables):
        add(tree, key, variables[key])
    return tree


def print_variables(ctx: Context, include_environment: bool = False) -> None:
    """Print the package-independent merged variables as a tree."""
    layers = ctx.variables.layers()
    if not include_environment:
        layers = layers[1:]
    merged = merge(layers)

    label = "Variables"
    if ctx.profile is not None:
        label += f" (profile: {ctx.profile.name})"
    if not merged:
        typer.echo(f"{label}:\n  (none)")
        return
    console.print(build_variable_tree(label, merged))
