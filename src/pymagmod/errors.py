"""Exceptions for pymagmod: local validation, transport/device failures and macro files."""

from pathlib import Path


class PyMagmodError(Exception):
    """Base exception for pymagmod."""

    pass


class InvalidOperation(PyMagmodError):
    """Raised before any network call when an edit or request is not allowed
    (read-only bank, address or value out of range, span too long)."""

    def __init__(
        self,
        message: str,
        *,
        bank: str | None = None,
        address: int | None = None,
    ) -> None:
        self.bank = bank
        self.address = address
        super().__init__(message)


class TransportError(PyMagmodError):
    """Raised when the TCP session fails (connect, socket error, timeout). Fatal to the session."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class DeviceException(PyMagmodError):
    """Raised when the device answers with a Modbus exception response. The session stays up."""

    def __init__(
        self,
        message: str,
        *,
        bank: str | None = None,
        address: int | None = None,
        exception_code: int | None = None,
    ) -> None:
        self.bank = bank
        self.address = address
        self.exception_code = exception_code
        super().__init__(message)


class FormatError(PyMagmodError):
    """Raised when a macro file is malformed or carries an unknown version."""

    def __init__(self, message: str, *, path: Path | None = None, offset: int | None = None) -> None:
        self.path = path
        self.offset = offset
        super().__init__(message)


class MacroIOError(PyMagmodError):
    """Raised when a macro file cannot be read or written."""

    def __init__(self, message: str, *, path: Path | None = None, cause: BaseException | None = None) -> None:
        self.path = path
        self.cause = cause
        super().__init__(message)
