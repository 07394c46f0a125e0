"""
Descriptors of the service table functions whose calls hand out protocol interfaces.

A :class:`ServiceDescriptor` names a table of function pointers (e.g. ``EFI_BOOT_SERVICES``) and
lists the members that are interesting to the retyping pass: where they sit in the table, how many
arguments they take, and which arguments carry the GUID and the output interface pointer.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .errors import DescriptorError, FieldNotFound, TypeIntrospectionFailed
from .typeinfo import TypeInfo, field_offset


@dataclass(frozen=True)
class TargetFunctionPointer:
    function_name: str
    vtable_offset: int
    arg_count: int
    guid_arg_index: int
    interface_arg_index: int

    def __post_init__(self):
        for index_name in ("guid_arg_index", "interface_arg_index"):
            index = getattr(self, index_name)
            if not 0 <= index < self.arg_count:
                raise DescriptorError(
                    f"{self.function_name}: {index_name} {index} is out of range for "
                    f"{self.arg_count} arguments"
                )
        if self.guid_arg_index == self.interface_arg_index:
            raise DescriptorError(
                f"{self.function_name}: GUID and interface arguments share index "
                f"{self.guid_arg_index}"
            )
        if self.vtable_offset < 0:
            raise DescriptorError(
                f"{self.function_name}: negative table offset {self.vtable_offset}"
            )


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    functions: Tuple[TargetFunctionPointer, ...]

    def __post_init__(self):
        if not self.name:
            raise DescriptorError("service descriptors need a table name")
        seen: Dict[int, str] = {}
        for entry in self.functions:
            if entry.vtable_offset in seen:
                raise DescriptorError(
                    f"{self.name}: {entry.function_name} and {seen[entry.vtable_offset]} share "
                    f"table offset {entry.vtable_offset:#x}"
                )
            seen[entry.vtable_offset] = entry.function_name

    def at_offset(self, offset: int) -> Optional[TargetFunctionPointer]:
        for entry in self.functions:
            if entry.vtable_offset == offset:
                return entry
        return None


class ServiceDescriptorTable:
    """
    An immutable mapping from table names to their descriptors.

    Tables are built through :class:`ServiceDescriptorTableBuilder` once per run and are shared
    read-only by every visitor working on the same batch of protocol records.
    """

    def __init__(self, descriptors: Mapping[str, ServiceDescriptor]):
        self._descriptors = MappingProxyType(dict(descriptors))

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def match_call(self, table_name: str, dispatched_offset: int) -> Optional[TargetFunctionPointer]:
        """
        Look up the function a call dispatched through ``table_name`` at ``dispatched_offset``
        invokes.

        Matching is by (table, offset) rather than by member name, since distinct tables expose
        same-named members at different offsets.

        Parameters:
            table_name (str): Name of the table type the call's base pointer refers to.
            dispatched_offset (int): Byte offset of the function pointer that was called.

        Returns:
            TargetFunctionPointer | None: The matching entry, or None for any other call.
        """
        descriptor = self._descriptors.get(table_name)
        if descriptor is None:
            return None
        return descriptor.at_offset(dispatched_offset)

    def verify_layout(self, table_name: str, struct_type: TypeInfo) -> List[str]:
        """
        Cross-check the registered offsets of a table against the host's layout of that structure.

        Members the structure does not know about are skipped.

        Parameters:
            table_name (str): The descriptor to check.
            struct_type (TypeInfo): The host's structure type of the same name.

        Returns:
            list[str]: Names of the functions whose registered offset disagrees with the layout.
        """
        descriptor = self._descriptors.get(table_name)
        if descriptor is None:
            return []

        mismatches = []
        for entry in descriptor.functions:
            try:
                actual = field_offset(struct_type, entry.function_name)
            except FieldNotFound:
                log.debug(f"{table_name} has no member {entry.function_name}, not checked")
                continue
            except TypeIntrospectionFailed:
                log.warning(f"Could not inspect the layout of {table_name}, skipping offset check")
                return []
            if actual != entry.vtable_offset:
                log.debug(
                    f"{table_name}::{entry.function_name} is registered at "
                    f"{entry.vtable_offset:#x} but the structure places it at {actual:#x}"
                )
                mismatches.append(entry.function_name)
        return mismatches


class ServiceDescriptorTableBuilder:
    """Collects descriptors until :meth:`build` freezes them into a table."""

    def __init__(self):
        self._descriptors: Dict[str, ServiceDescriptor] = {}
        self._built = False

    def register(self, descriptor: ServiceDescriptor) -> "ServiceDescriptorTableBuilder":
        """Insert a descriptor, replacing an earlier one of the same name."""
        if self._built:
            raise DescriptorError("descriptor table has already been built")
        if descriptor.name in self._descriptors:
            log.debug(f"Replacing service descriptor {descriptor.name}")
        self._descriptors[descriptor.name] = descriptor
        return self

    def add(
        self, table_name: str, functions: Iterable[Tuple[str, int, int, int, int]]
    ) -> "ServiceDescriptorTableBuilder":
        """
        Register a descriptor from ``(name, offset, arg_count, guid_index, interface_index)`` rows.
        """
        entries = tuple(TargetFunctionPointer(*row) for row in functions)
        return self.register(ServiceDescriptor(table_name, entries))

    def build(self) -> ServiceDescriptorTable:
        self._built = True
        return ServiceDescriptorTable(self._descriptors)


###################################################################################################
#    EFI SERVICE TABLES                                                                           #
###################################################################################################
BOOT_SERVICES = "EFI_BOOT_SERVICES"
SMM_SERVICES = "_EFI_SMM_SYSTEM_TABLE2"

BOOT_SERVICES_FUNCTIONS = (
    ("HandleProtocol", 0x98, 3, 1, 2),
    ("LocateProtocol", 0x140, 3, 0, 2),
    ("OpenProtocol", 0x118, 6, 1, 2),
)

SMM_SERVICES_FUNCTIONS = (
    ("SmmHandleProtocol", 0xB8, 3, 1, 2),
    ("SmmLocateProtocol", 0xD0, 3, 0, 2),
)


def default_tables() -> List[ServiceDescriptorTable]:
    """
    Build fresh descriptor tables for the boot services and the SMM system table, one table per
    retyping pass.
    """
    boot = ServiceDescriptorTableBuilder().add(BOOT_SERVICES, BOOT_SERVICES_FUNCTIONS).build()
    smm = ServiceDescriptorTableBuilder().add(SMM_SERVICES, SMM_SERVICES_FUNCTIONS).build()
    return [boot, smm]
