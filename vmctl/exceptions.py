"""Custom exceptions for vmctl."""

from __future__ import annotations

from typing import List, Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class NotFoundError(ManagerError):
    """No descriptor exists for the requested VM."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"VM '{name}' does not exist")


class AlreadyExistsError(ManagerError):
    """A VM with the requested name has already been created."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"VM '{name}' already exists")


class CorruptStateError(ManagerError):
    """A descriptor is present on disk but cannot be parsed."""

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"VM '{name}' has an unreadable descriptor: {reason}")


class DependencyMissingError(ManagerError):
    """A required binary or firmware image is not available on this host."""


class ExternalToolError(ManagerError):
    """An external tool exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        argv: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        self.argv = list(argv or [])
        self.returncode = returncode
        self.output = output
        detail = f"{message} (exit code {returncode})" if returncode is not None else message
        if output:
            detail += f"\n{output}"
        super().__init__(detail)


class PrivilegeError(ManagerError):
    """An operation needs elevated privileges that were not granted."""


class BootTimeoutError(ManagerError):
    """The boot sentinel was not observed before the deadline."""

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(
            f"VM '{name}' did not finish provisioning within {int(timeout)}s; "
            f"it is still running, check again with: vmctl status {name}"
        )


class VMBusyError(ManagerError):
    """Another vmctl process holds the lock for this VM."""


class ImageError(ManagerError):
    """A base image is unknown or could not be fetched."""
