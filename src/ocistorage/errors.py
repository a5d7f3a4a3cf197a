from __future__ import annotations


class OciStorageError(RuntimeError):
    """Base class for every error raised by ocistorage."""


class ConfigurationError(OciStorageError, ValueError):
    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("Invalid OCI configuration: " + "; ".join(self.problems))


class SigningError(OciStorageError):
    pass


class PrivateKeyNotFoundError(SigningError):
    def __init__(self, key_path: str):
        self.key_path = key_path
        super().__init__(
            f"OCI private key file not found at path: {key_path}. "
            "Please ensure the file exists and is readable."
        )


class PrivateKeyUnreadableError(SigningError):
    def __init__(self, key_path: str):
        self.key_path = key_path
        super().__init__(
            f"OCI private key file exists but is not readable at path: {key_path}. "
            "Please check file permissions."
        )


class MalformedPrivateKeyError(SigningError):
    pass


class TransientNetworkError(OciStorageError):
    """Connection failure, timeout or retryable HTTP status. Safe for the caller to retry."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ProtocolError(OciStorageError):
    def __init__(self, message: str, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"{message} (status={status_code})")


class ObjectNotFoundError(OciStorageError, LookupError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Object not found: {path!r}")


class InvalidVisibilityError(OciStorageError, ValueError):
    pass


class InvalidRestoreWindowError(OciStorageError, ValueError):
    pass


class CopyNotConfirmedError(OciStorageError):
    def __init__(self, source: str, destination: str, attempts: int):
        self.source = source
        self.destination = destination
        super().__init__(
            f"Copy of {source!r} to {destination!r} was accepted but not visible after "
            f"{attempts} checks; source left in place"
        )
