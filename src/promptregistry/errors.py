from __future__ import annotations


class PromptRegistryError(RuntimeError):
    pass


class ExtractionError(PromptRegistryError):
    pass


class InvalidManifestError(PromptRegistryError):
    pass


class BundleIdMismatchError(PromptRegistryError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Bundle ID mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class BundleVersionMismatchError(PromptRegistryError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Bundle version mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class NoWorkspaceError(PromptRegistryError):
    pass


class NoWorkspaceStorageError(PromptRegistryError):
    pass


class InstallationCancelled(PromptRegistryError):
    """Raised when the user declines to overwrite an existing skill."""


class SkillNotFoundError(PromptRegistryError):
    pass


class BundleDownloadError(PromptRegistryError):
    pass


class BundleHTTPError(BundleDownloadError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body
