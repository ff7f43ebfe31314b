"""
dotr - deploy templated dotfiles from a version-controlled repository.

dotr imports configuration files into a repository, renders them with
layered variables and deploys them back to their live locations, keeping a
backup of whatever was there before.
"""

__version__ = "0.5.0"
__license__ = "GPL-3.0-or-later"

from .config import Config, Package, Profile
from .core import (
    Context,
    build_context,
    deploy_package,
    deploy_packages,
    diff_package,
    diff_packages,
    import_package,
    init_repo,
    is_ignored,
    update_package,
    update_packages,
)
from .resolver import resolve_packages
from .templates import is_templated, render_string
from .variables import VariableContext, merge

__all__ = [
    "Config",
    "Package",
    "Profile",
    "Context",
    "VariableContext",
    "build_context",
    "init_repo",
    "import_package",
    "resolve_packages",
    "deploy_package",
    "deploy_packages",
    "update_package",
    "update_packages",
    "diff_package",
    "diff_packages",
    # Building blocks
    "merge",
    "is_ignored",
    "is_templated",
    "render_string",
]
