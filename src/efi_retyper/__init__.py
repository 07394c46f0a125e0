"""
Retypes the variables receiving EFI protocol interfaces in decompiled firmware functions.
"""
from .descriptors import (
    ServiceDescriptor,
    ServiceDescriptorTable,
    ServiceDescriptorTableBuilder,
    TargetFunctionPointer,
    default_tables,
)
from .driver import Driver, apply_all_types_for_interfaces
from .records import GuidDirectory, ProtocolRecord, load_protocol_records
from .report import Diagnostic, DiagnosticKind, RetypingReport
from .visitor import ProtocolRetypingVisitor, RetypingContext

__all__ = [
    "Diagnostic",
    "DiagnosticKind",
    "Driver",
    "GuidDirectory",
    "ProtocolRecord",
    "ProtocolRetypingVisitor",
    "RetypingContext",
    "RetypingReport",
    "ServiceDescriptor",
    "ServiceDescriptorTable",
    "ServiceDescriptorTableBuilder",
    "TargetFunctionPointer",
    "apply_all_types_for_interfaces",
    "default_tables",
    "load_protocol_records",
]
