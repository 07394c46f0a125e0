"""
Outcomes of a retyping run: the types that were applied and the per-site diagnostics explaining
the sites that were not retyped.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from . import log
from .typeinfo import TypeInfo, type_name


class DiagnosticKind(Enum):
    UNRESOLVED_GUID = "unresolved GUID"
    UNRESOLVED_TARGET = "unresolved target"
    UNCORRELATED = "no correlating protocol record"
    GUID_MISMATCH = "GUID mismatch"
    SERVICE_MISMATCH = "service mismatch"
    UNKNOWN_INTERFACE = "unknown interface type"
    TYPE_WRITE_REJECTED = "type write rejected"
    DECOMPILATION_FAILED = "decompilation failed"
    NO_OWNER_FUNCTION = "no owner function"


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    function_address: Optional[int]
    call_address: Optional[int]
    message: str = ""

    def __str__(self) -> str:
        where = []
        if self.function_address is not None:
            where.append(f"function {self.function_address:#x}")
        if self.call_address is not None:
            where.append(f"call {self.call_address:#x}")
        location = ", ".join(where) or "<no location>"
        text = f"{self.kind.value} @ {location}"
        return f"{text}: {self.message}" if self.message else text


@dataclass(frozen=True)
class AppliedType:
    function_address: int
    call_address: int
    variable_name: str
    service_name: str
    type: TypeInfo

    def __str__(self) -> str:
        return (
            f"{self.call_address:#x} {self.service_name}: {self.variable_name} -> "
            f"{type_name(self.type)}"
        )


@dataclass
class RetypingReport:
    applied: List[AppliedType] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    functions_processed: int = 0

    def add_diagnostic(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)
        log.debug(str(diagnostic))

    def extend(self, other: "RetypingReport") -> None:
        self.applied.extend(other.applied)
        self.diagnostics.extend(other.diagnostics)
        self.functions_processed += other.functions_processed

    def counts(self) -> Dict[DiagnosticKind, int]:
        return dict(Counter(diagnostic.kind for diagnostic in self.diagnostics))

    def of_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [diagnostic for diagnostic in self.diagnostics if diagnostic.kind is kind]

    def summary(self) -> List[str]:
        """Human readable statistics lines for the end of a run."""
        lines = [
            f"Statistics: Number of processed functions: {self.functions_processed}",
            f"Statistics: Number of retyped variables: {len(self.applied)}",
        ]
        for kind, count in sorted(self.counts().items(), key=lambda item: item[0].value):
            lines.append(f"Statistics: Number of sites with {kind.value}: {count}")
        return lines
