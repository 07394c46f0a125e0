"""
The boundary between the retyping engine and the reverse engineering tool hosting it.
"""
from __future__ import annotations

from typing import Optional, Protocol
from uuid import UUID

from . import log
from .errors import TypeWriteRejected
from .ir import Function, LocalVariable
from .typeinfo import TypeInfo, type_name


class DecompilerHost(Protocol):
    """
    What the engine needs from the host tool. Every call blocks until the host is done.
    """

    def decompile(self, function_address: int) -> Function:
        """Produce the IR of a function; raises DecompilationFailed when the host cannot."""

    def function_containing(self, address: int) -> Optional[int]:
        """Entry address of the function containing ``address``, if any."""

    def read_guid(self, address: int) -> Optional[UUID]:
        """Read the 16-byte EFI_GUID stored at ``address``; None if it cannot be read."""

    def set_variable_type(
        self, function_address: int, variable: LocalVariable, typ: TypeInfo
    ) -> None:
        """Persist ``typ`` for ``variable``; raises TypeWriteRejected when the host refuses."""


class VariableTypeWriter:
    """
    Applies resolved types to local variables in the host's saved variable metadata.
    """

    def __init__(self, host: DecompilerHost):
        self.host = host

    def set_variable_type(
        self, function_address: int, variable: LocalVariable, typ: TypeInfo
    ) -> bool:
        """
        Ask the host to persist ``typ`` as the declared type of ``variable``. The next decompilation
        of the function reflects the new type.

        Parameters:
            function_address (int): Entry address of the function owning the variable.
            variable (LocalVariable): The variable to retype.
            typ (TypeInfo): The new declared type.

        Returns:
            bool: True if the host accepted the type, False if it refused.
        """
        try:
            self.host.set_variable_type(function_address, variable, typ)
        except TypeWriteRejected as e:
            log.error(
                f"{function_address:#x}: could not modify lvar type for {variable.name}: {e}"
            )
            return False

        log.detail(
            f"{function_address:#x}: applied type {type_name(typ)} to variable {variable.name}"
        )
        return True
