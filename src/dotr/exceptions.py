"""Exception classes for dotr - a templating dotfiles deployer."""

from typing import List, Optional, TypedDict


# Type definitions for structured data
class OperationResultDict(TypedDict):
    """Type definition for batch operation results (deploy/update)."""

    processed: List[str]
    skipped: List[str]


class DotrError(Exception):
    """Base exception for all dotr-related errors."""

    pass


class DotrConfigurationError(DotrError):
    """Errors related to configuration management."""

    pass


class ConfigNotFoundError(DotrConfigurationError):
    """Raised when config.toml is missing from the working directory."""

    pass


class ConfigParseError(DotrConfigurationError):
    """Raised when config.toml or .uservariables.toml cannot be parsed."""

    pass


class PackageNotFoundError(DotrError):
    """Raised when a selection names a package that is not configured."""

    def __init__(self, name: str, message: Optional[str] = None):
        self.name = name
        super().__init__(message or f"Package '{name}' not found in configuration")


class DependencyNotFoundError(PackageNotFoundError):
    """Raised when a package depends on a package that is not configured."""

    def __init__(self, name: str, required_by: Optional[str] = None):
        self.required_by = required_by
        if required_by:
            message = f"Dependency '{name}' of package '{required_by}' not found"
        else:
            message = f"Dependency '{name}' not found"
        super().__init__(name, message)


class ProfileNotFoundError(DotrError):
    """Raised when the requested profile is not configured."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Profile '{name}' not found in configuration")


class ActionFailedError(DotrError):
    """Raised when a pre/post action exits with a non-zero status."""

    def __init__(self, command: str, exit_code: Optional[int]):
        self.command = command
        self.exit_code = exit_code
        if exit_code is None:
            message = f"Action '{command}' timed out"
        else:
            message = f"Action '{command}' failed with exit code {exit_code}"
        super().__init__(message)


class DotrTemplateError(DotrError):
    """Errors related to template operations."""

    pass


class RenderError(DotrTemplateError):
    """Raised when a template cannot be rendered."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"Failed to render '{path}': {message}"
        super().__init__(message)


class BackupConflictError(DotrError):
    """Raised when a previous live state cannot be moved out of the way."""

    pass


class DotrIOError(DotrError):
    """Errors related to file operations."""

    pass


class DotrFileNotFoundError(DotrIOError):
    """Raised when a file or directory cannot be found."""

    pass
