"""Exception hierarchy shared by every stage of a build invocation."""

from __future__ import annotations


class HcloudBuildError(Exception):
    """Base error. ``arch`` and ``phase`` are filled in when they are known."""

    def __init__(
        self,
        message: str,
        *,
        arch: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.arch = arch
        self.phase = phase

    def __str__(self) -> str:
        prefix = ""
        if self.arch:
            prefix += f"[{self.arch}] "
        if self.phase:
            prefix += f"{self.phase}: "
        return f"{prefix}{self.message}"


class PrerequisiteError(HcloudBuildError):
    pass


class ConfigurationError(PrerequisiteError):
    pass


class ProviderError(HcloudBuildError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        arch: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, arch=arch, phase=phase)
        self.status_code = status_code
        self.code = code


class ProvisionError(HcloudBuildError):
    pass


class RegistrationTimeout(HcloudBuildError):
    pass


class ConnectivityTimeout(HcloudBuildError):
    pass


class TransportError(HcloudBuildError):
    pass


class RemoteScriptError(HcloudBuildError):
    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        output: str = "",
        arch: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, arch=arch, phase=phase)
        self.exit_code = exit_code
        self.output = output


class ArtifactNotFound(HcloudBuildError):
    pass


class SnapshotCreationError(HcloudBuildError):
    pass


class AmbiguousSnapshotError(HcloudBuildError):
    def __init__(self, message: str, *, image_ids: list[int], arch: str | None = None) -> None:
        super().__init__(message, arch=arch, phase="snapshot")
        self.image_ids = image_ids


class BuildFailed(HcloudBuildError):
    """Raised after a parallel build once every task has finished."""

    def __init__(self, message: str, *, failed: list[str], log_paths: dict[str, str]) -> None:
        super().__init__(message, phase="build")
        self.failed = failed
        self.log_paths = log_paths
