"""
Exceptions raised by the retyping engine and its host adapters.

Everything except :class:`DescriptorError` and :class:`RetypingCancelled` is scoped to a single
call site or function; the driver turns those into diagnostics and keeps going.
"""
from __future__ import annotations


class RetypingError(Exception):
    """Base class for all retyping related errors."""


class FieldNotFound(RetypingError):
    """Raised when a structure has no member of the requested name."""

    def __init__(self, type_name: str, field_name: str):
        super().__init__(f"Could not find UDT member {type_name}::{field_name}")
        self.type_name = type_name
        self.field_name = field_name


class TypeIntrospectionFailed(RetypingError):
    """Raised when the structural details of a type cannot be obtained."""


class DecompilationFailed(RetypingError):
    """Raised by a host when it cannot produce IR for a function."""

    def __init__(self, function_address: int, reason: str = ""):
        message = f"could not decompile function @ {function_address:#x}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.function_address = function_address
        self.reason = reason


class TypeWriteRejected(RetypingError):
    """Raised by a host when it refuses to persist a variable type."""


class DescriptorError(RetypingError):
    """
    Raised when a service descriptor violates its arity invariants. This is the only fatal error
    of a run and is raised while the descriptor tables are being built.
    """


class RecordFormatError(RetypingError):
    """Raised when a protocol report or GUID file entry cannot be parsed."""


class RetypingCancelled(BaseException):
    """
    Raised when the user cancels the process via the monitor dialog.
    """


__all__ = [
    "RetypingError",
    "FieldNotFound",
    "TypeIntrospectionFailed",
    "DecompilationFailed",
    "TypeWriteRejected",
    "DescriptorError",
    "RecordFormatError",
    "RetypingCancelled",
]
