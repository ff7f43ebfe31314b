"""CLI commands for dotr - a templating dotfiles deployer."""

from importlib.metadata import PackageNotFoundError, version as get_version
from pathlib import Path
from typing import Dict, List, NoReturn, Optional, Tuple

import typer
from typing_extensions import Annotated

from . import __version__
from .config import Config, save_user_variables
from .core import (
    Context,
    build_context,
    deploy_packages,
    diff_packages,
    import_package,
    init_repo,
    pending_prompts,
    print_diff_report,
    print_variables,
    select_packages,
    update_packages,
)
from .exceptions import DotrError

BANNER = r"""
     _       _
  __| | ___ | |_ _ __
 / _` |/ _ \| __| '__|
| (_| | (_) | |_| |
 \__,_|\___/ \__|_|
"""

# Global app instance
app = typer.Typer(help="dotr - deploy templated dotfiles from a repository")

# Options shared by every command, set by the callback
state: Dict[str, Path] = {}

PackagesOption = Annotated[
    Optional[List[str]],
    typer.Option(
        "--packages", "-p", help="Package to operate on (repeatable, default: all)"
    ),
]
ProfileOption = Annotated[
    Optional[str],
    typer.Option("--profile", help="Profile to activate (overrides DOTR_PROFILE)"),
]
QuietOption = Annotated[
    bool, typer.Option("--quiet", "-q", help="Suppress progress output")
]


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


def fail(error: Exception) -> NoReturn:
    typer.secho(f"Error: {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def load_config(show_banner: bool = True) -> Config:
    config = Config.from_path(state["working_dir"])
    if show_banner and config.banner:
        typer.secho(BANNER, fg=typer.colors.CYAN)
    return config


def load(profile: Optional[str], quiet: bool = False) -> Tuple[Config, Context]:
    config = load_config(show_banner=not quiet)
    ctx = build_context(config, state["working_dir"], profile, quiet=quiet)
    return config, ctx


def ask_prompts(config: Config, ctx: Context, names: Optional[List[str]]) -> Context:
    """Ask for prompted variables that are still unset and persist the answers."""
    packages = select_packages(config, ctx, names)
    missing = pending_prompts(config, ctx, packages)
    if not missing:
        return ctx

    answers = {}
    for name, message in missing.items():
        answers[name] = typer.prompt(message)
    save_user_variables(ctx.working_dir, answers)
    typer.secho(
        f"Saved {len(answers)} variables to .uservariables.toml",
        fg=typer.colors.BLUE,
    )
    profile_name = ctx.profile.name if ctx.profile is not None else None
    return build_context(config, ctx.working_dir, profile_name, quiet=ctx.quiet)


# ============================================================================
# MAIN COMMANDS
# ============================================================================


@app.callback()
def main(
    working_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--working-dir", "-w", help="Dotfiles repository (default: current dir)"
        ),
    ] = None,
) -> None:
    """dotr - deploy templated dotfiles from a repository"""
    if working_dir is None:
        state["working_dir"] = Path.cwd()
        return
    if not working_dir.exists():
        fail(DotrError(f"Working directory {working_dir} does not exist"))
    state["working_dir"] = working_dir.resolve()


@app.command()
def init() -> None:
    """Initialize a dotfiles repository in the working directory."""
    typer.secho("Initializing configuration...", fg=typer.colors.BLUE)
    try:
        init_repo(state["working_dir"])
    except (DotrError, OSError) as e:
        fail(e)


@app.command("import")
def import_(
    path: Annotated[str, typer.Argument(help="File or directory to import")],
    name: Annotated[
        Optional[str], typer.Option("--name", "-n", help="Custom package name")
    ] = None,
    profile: Annotated[
        Optional[str],
        typer.Option("--profile", help="Import the package for this profile only"),
    ] = None,
    quiet: QuietOption = False,
) -> None:
    """Import a dotfile into the repository and register it as a package."""
    try:
        config = load_config(show_banner=not quiet)
        ctx = Context(working_dir=state["working_dir"], quiet=quiet)
        import_package(config, path, ctx, name=name, profile_name=profile)
    except DotrError as e:
        fail(e)


@app.command()
def deploy(
    packages: PackagesOption = None,
    profile: ProfileOption = None,
    quiet: QuietOption = False,
) -> None:
    """Deploy dotfiles from the repository to their live locations."""
    try:
        config, ctx = load(profile, quiet)
        ctx = ask_prompts(config, ctx, packages)
        deployed = deploy_packages(config, ctx, packages)
    except DotrError as e:
        fail(e)
    if not quiet:
        typer.secho(f"Deployed {len(deployed)} packages", fg=typer.colors.GREEN)


@app.command()
def update(
    packages: PackagesOption = None,
    profile: ProfileOption = None,
    quiet: QuietOption = False,
) -> None:
    """Copy live dotfiles back into the repository."""
    try:
        config, ctx = load(profile, quiet)
        result = update_packages(config, ctx, packages)
    except DotrError as e:
        fail(e)
    if not quiet:
        typer.secho(
            f"Updated {len(result['processed'])} packages, "
            f"skipped {len(result['skipped'])}",
            fg=typer.colors.GREEN,
        )


@app.command()
def diff(
    packages: PackagesOption = None,
    profile: ProfileOption = None,
) -> None:
    """Show differences between the repository and live dotfiles."""
    try:
        config, ctx = load(profile, quiet=True)
        reports = diff_packages(config, ctx, packages)
    except DotrError as e:
        fail(e)
    for report in reports:
        print_diff_report(report)


@app.command("print-vars")
def print_vars(
    profile: ProfileOption = None,
    env: Annotated[
        bool, typer.Option("--env", help="Include environment variables")
    ] = False,
) -> None:
    """Print the merged variables available to templates."""
    try:
        _, ctx = load(profile, quiet=True)
    except DotrError as e:
        fail(e)
    print_variables(ctx, include_environment=env)


@app.command()
def version() -> None:
    """Show the dotr version."""
    try:
        version_str = get_version("dotr")
    except PackageNotFoundError:
        version_str = __version__
    typer.secho(f"dotr version {version_str}", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
