"""Template detection and rendering for dotr.

Stored dotfiles may contain Jinja2 markup. Rendering is plain string
interpolation: autoescaping is off so paths, quotes and shell metacharacters
come out exactly as written in the variables.
"""

import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional

from jinja2 import BaseLoader, Environment, TemplateError

from .exceptions import RenderError

# Expression, statement and comment markers, with or without "-" trimming.
TEMPLATE_PATTERN = re.compile(
    r"\{\{-?.*?-?\}\}|\{%-?.*?-?%\}|\{#-?.*?-?#\}",
    re.DOTALL,
)

_environment = Environment(
    loader=BaseLoader(),
    autoescape=False,
    keep_trailing_newline=True,
)
# Jinja2 normalizes every line break to newline_sequence on output.
_crlf_environment = _environment.overlay(newline_sequence="\r\n")


def is_templated(text: str) -> bool:
    """Return True if ``text`` contains any template marker pair."""
    return TEMPLATE_PATTERN.search(text) is not None


def read_text(path: Path) -> Optional[str]:
    """Read ``path`` as UTF-8, or None for binary/unreadable content."""
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            return f.read()
    except (UnicodeDecodeError, OSError):
        return None


def is_templated_file(path: Path) -> bool:
    """Binary and unreadable files are never templated."""
    text = read_text(path)
    return text is not None and is_templated(text)


def package_is_templated(src_path: Path) -> bool:
    """Decide whether a stored package is a template.

    A file package is checked directly. For a directory package only the
    first readable text file found during a sorted walk is inspected.
    """
    src_path = Path(src_path)
    if src_path.is_file():
        return is_templated_file(src_path)
    if not src_path.is_dir():
        return False

    for root, dirs, files in os.walk(src_path):
        dirs.sort()
        for name in sorted(files):
            text = read_text(Path(root) / name)
            if text is not None:
                return is_templated(text)
    return False


def render_string(
    text: str, variables: Mapping[str, Any], path: Optional[str] = None
) -> str:
    """Render ``text`` against ``variables``.

    Undefined variables render as empty strings. Templates written with
    CRLF line endings are rendered with CRLF line endings.
    """
    environment = _crlf_environment if "\r\n" in text else _environment
    try:
        template = environment.from_string(text)
        return template.render(dict(variables))
    except TemplateError as e:
        raise RenderError(str(e), path=path) from e
