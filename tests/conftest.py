"""Shared pytest fixtures and configuration."""

from pathlib import Path
from typing import Callable, Optional

import pytest

from dotr.config import Config
from dotr.core import Context, build_context


@pytest.fixture
def temp_home(tmp_path: Path, monkeypatch) -> Path:
    """Create a temporary home directory and point HOME at it."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("DOTR_PROFILE", raising=False)
    return home


@pytest.fixture
def repo_dir(tmp_path: Path, temp_home: Path) -> Path:
    """Create an empty dotfiles repository with a dotfiles/ store."""
    repo = tmp_path / "repo"
    (repo / "dotfiles").mkdir(parents=True)
    return repo


@pytest.fixture
def make_context(repo_dir: Path) -> Callable[..., Context]:
    """Factory for quiet contexts that ignore the real process environment."""

    def _make(
        config: Config, profile: Optional[str] = None, environment=None
    ) -> Context:
        return build_context(
            config,
            repo_dir,
            profile,
            quiet=True,
            environment=environment if environment is not None else {},
        )

    return _make
