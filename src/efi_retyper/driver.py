"""
Orchestration of a retyping run over the protocol records of one binary.
"""
from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Sequence

from . import log
from .descriptors import ServiceDescriptorTable, default_tables
from .errors import DecompilationFailed, RetypingCancelled
from .host import DecompilerHost, VariableTypeWriter
from .records import GuidDirectory, ProtocolRecord
from .report import Diagnostic, DiagnosticKind, RetypingReport
from .visitor import ProtocolRetypingVisitor, RetypingContext


class Driver:
    """
    Runs the retyping visitors over every function that owns at least one protocol record.

    Each function is decompiled once and walked once per descriptor table; a function the host
    cannot decompile is reported and skipped.

    Parameters:
        host (DecompilerHost): The host tool.
        directory (GuidDirectory): GUID to interface type lookup.
        tables (Sequence[ServiceDescriptorTable] | None): Defaults to :func:`default_tables`.
        is_cancelled (callable | None): Polled between functions; returning True aborts the run
            with :class:`RetypingCancelled`.
    """

    def __init__(
        self,
        host: DecompilerHost,
        directory: GuidDirectory,
        tables: Optional[Sequence[ServiceDescriptorTable]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ):
        self.host = host
        self.directory = directory
        self.tables = list(default_tables() if tables is None else tables)
        self.is_cancelled = is_cancelled
        writer = VariableTypeWriter(host)
        self.visitors = [
            ProtocolRetypingVisitor(RetypingContext(table), host, directory, writer)
            for table in self.tables
        ]

    def check_cancel(self) -> None:
        if self.is_cancelled is not None and self.is_cancelled():
            raise RetypingCancelled

    def group_records(
        self, records: Iterable[ProtocolRecord], report: RetypingReport
    ) -> Dict[int, List[ProtocolRecord]]:
        """
        Partition records by owner function, dropping exact duplicates.

        Records without an owner get the function containing their call site; records outside of
        any function are reported.

        Returns:
            dict[int, list[ProtocolRecord]]: Owner function address to its records, in input order.
        """
        groups: Dict[int, List[ProtocolRecord]] = {}
        seen = set()
        for record in records:
            if record.owner_function_address is None:
                owner = self.host.function_containing(record.call_address)
                if owner is None:
                    report.add_diagnostic(
                        Diagnostic(
                            DiagnosticKind.NO_OWNER_FUNCTION, None, record.call_address,
                            f"{record.service_name} is not inside a function",
                        )
                    )
                    continue
                record = record.with_owner(owner)

            if record in seen:
                continue
            seen.add(record)
            groups.setdefault(record.owner_function_address, []).append(record)
        return groups

    def process_function(
        self, function_address: int, records: Sequence[ProtocolRecord]
    ) -> RetypingReport:
        """
        Decompile one function and run every visitor over it.

        Parameters:
            function_address (int): Entry address of the function.
            records (Sequence[ProtocolRecord]): The records owned by that function.

        Returns:
            RetypingReport: Outcome for this function.
        """
        report = RetypingReport()
        try:
            function = self.host.decompile(function_address)
        except DecompilationFailed as e:
            report.add_diagnostic(
                Diagnostic(DiagnosticKind.DECOMPILATION_FAILED, function_address, None, str(e))
            )
            log.warning(str(e))
            return report

        matched = set()
        for visitor in self.visitors:
            # the context only changes here, between two walks
            visitor.context.function_address = function_address
            visitor.context.call_address = None
            visitor.context.set_records(records)
            visitor.matched_calls.clear()

            report.extend(visitor.apply_to(function))
            matched |= visitor.matched_calls

        for record in records:
            if record.call_address not in matched:
                report.add_diagnostic(
                    Diagnostic(
                        DiagnosticKind.UNRESOLVED_TARGET, function_address, record.call_address,
                        f"no {record.service_name} call found at the reported call site",
                    )
                )

        report.functions_processed = 1
        return report

    def run(self, records: Iterable[ProtocolRecord]) -> RetypingReport:
        """
        Retype the interface variables for all given protocol records.

        Returns:
            RetypingReport: Everything that was applied, and why the rest was not.
        """
        report = RetypingReport()

        log.info("[1/2] Grouping protocol records by function...")
        groups = self.group_records(records, report)

        log.info(f"[2/2] Retyping interface variables in {len(groups)} functions...")
        for function_address, function_records in groups.items():
            self.check_cancel()
            log.detail(
                f"Processing function @ {function_address:#x} with {len(function_records)} records"
            )
            report.extend(self.process_function(function_address, function_records))

        return report


def apply_all_types_for_interfaces(
    host: DecompilerHost,
    directory: GuidDirectory,
    records: Iterable[ProtocolRecord],
    tables: Optional[Sequence[ServiceDescriptorTable]] = None,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> RetypingReport:
    """Run a complete retyping pass with freshly built descriptor tables."""
    return Driver(host, directory, tables, is_cancelled).run(records)
