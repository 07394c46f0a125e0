"""
The protocol interface retyping pass over one decompiled function.

Calls such as ``gBS->LocateProtocol(&gEfiPciIoProtocolGuid, NULL, &v5)`` hand out an interface
through their output pointer argument. For every such call the discovery stage reported, the
visitor finds the variable behind the output pointer and declares it with the interface's type, so
the function reads ``EFI_PCI_IO_PROTOCOL *v5`` instead of ``void *v5``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union
from uuid import UUID

from . import config, log
from .descriptors import ServiceDescriptorTable, TargetFunctionPointer
from .host import DecompilerHost, VariableTypeWriter
from .ir import (
    Add,
    AddressOf,
    Call,
    Cast,
    Const,
    Deref,
    Expr,
    Function,
    GlobalRef,
    GuidLiteral,
    Index,
    LocalVariable,
    MemberPtr,
    Var,
    calls,
    render,
    strip_casts,
)
from .records import GuidDirectory, ProtocolRecord
from .report import AppliedType, Diagnostic, DiagnosticKind, RetypingReport
from .typeinfo import Array, TypeInfo, is_primitive_array, make_pointer, pointee_name, type_name


###################################################################################################
#    STATE                                                                                        #
###################################################################################################
@dataclass
class RetypingContext:
    """
    State a visitor works against. The driver updates it between passes; it stays fixed while a
    function is being walked.

    ``call_address`` narrows a pass to a single call site; None considers every call.
    """

    table: ServiceDescriptorTable
    function_address: Optional[int] = None
    call_address: Optional[int] = None
    records: Tuple[ProtocolRecord, ...] = ()
    _by_call: Dict[int, Tuple[ProtocolRecord, ...]] = field(
        default_factory=dict, init=False, repr=False
    )

    def __post_init__(self):
        self.set_records(self.records)

    def set_records(self, records: Iterable[ProtocolRecord]) -> None:
        self.records = tuple(records)
        by_call: Dict[int, List[ProtocolRecord]] = {}
        for record in self.records:
            by_call.setdefault(record.call_address, []).append(record)
        self._by_call = {address: tuple(group) for address, group in by_call.items()}

    def records_at(self, call_address: int) -> Tuple[ProtocolRecord, ...]:
        return self._by_call.get(call_address, ())


@dataclass(frozen=True)
class VariableTarget:
    variable: LocalVariable
    depth: int


@dataclass(frozen=True)
class ArrayElementTarget:
    variable: LocalVariable
    index: int
    depth: int


ResolvedTarget = Union[VariableTarget, ArrayElementTarget]


###################################################################################################
#    VISITOR                                                                                      #
###################################################################################################
class ProtocolRetypingVisitor:
    """
    Walks a function's IR and retypes the output variables of the service calls described by the
    context's descriptor table.

    Parameters:
        context (RetypingContext): Active table, function and protocol records.
        host (DecompilerHost): Used to read GUIDs and to persist types.
        directory (GuidDirectory): Resolves GUIDs to interface types.
        writer (VariableTypeWriter | None): Defaults to a writer on ``host``.
    """

    def __init__(
        self,
        context: RetypingContext,
        host: DecompilerHost,
        directory: GuidDirectory,
        writer: Optional[VariableTypeWriter] = None,
    ):
        self.context = context
        self.host = host
        self.directory = directory
        self.writer = writer or VariableTypeWriter(host)
        self.report = RetypingReport()
        self._function_address = context.function_address
        # call sites that matched a descriptor during this visitor's passes
        self.matched_calls: Set[int] = set()

    def apply_to(self, function: Function) -> RetypingReport:
        """
        Run one pass over ``function``.

        Returns:
            RetypingReport: Types applied and diagnostics raised by this pass only.
        """
        self._function_address = self.context.function_address
        if self._function_address is None:
            self._function_address = function.address

        self.report = RetypingReport()
        for call in calls(function.body):
            if self.context.call_address is not None and call.address != self.context.call_address:
                continue
            self.visit_call(call)
        return self.report

    # ------------------------------------------------------------------------------------------- #
    def visit_call(self, call: Call) -> bool:
        """
        Evaluate a single call expression. Returns True if a type was applied.
        """
        # 1. locate the call site: a function pointer fetched from a registered table
        entry = self.match_call(call)
        if entry is None:
            return False

        # 2. arity check, the decompiler may have settled on a different prototype
        if len(call.args) != entry.arg_count:
            log.debug(
                f"{call.address:#x}: {entry.function_name} called with {len(call.args)} "
                f"arguments, expected {entry.arg_count}"
            )
            return False
        self.matched_calls.add(call.address)

        # 3. resolve the GUID operand
        guid_expr = call.args[entry.guid_arg_index]
        local_guid = self.resolve_guid(guid_expr)
        if local_guid is None:
            self._diagnose(
                DiagnosticKind.UNRESOLVED_GUID, call,
                f"cannot resolve GUID argument {render(guid_expr)}",
            )
            return False

        # 4. correlate with the discovery stage's record of this call site
        record = self.correlate(call, entry, local_guid)
        if record is None:
            return False

        # 5. resolve the output target
        target_expr = call.args[entry.interface_arg_index]
        target = self.resolve_target(target_expr)
        if target is None:
            self._diagnose(
                DiagnosticKind.UNRESOLVED_TARGET, call,
                f"unrecognized output operand {render(target_expr)}",
            )
            return False

        # 6. apply the interface type
        interface_type = self.interface_type_for(record)
        if interface_type is None:
            self._diagnose(
                DiagnosticKind.UNKNOWN_INTERFACE, call,
                f"no interface type known for {record.protocol_name or record.guid}",
            )
            return False
        return self.apply_type(call, entry, target, interface_type)

    # ------------------------------------------------------------------------------------------- #
    def match_call(self, call: Call) -> Optional[TargetFunctionPointer]:
        """
        Match the call target against the active table.

        Two shapes are table member dereferences: ``base->member`` and ``*(base + offset)``, where
        the type of ``base`` (or of a cast around it) points to one of the table's structures.
        """
        target = strip_casts(call.target)
        if isinstance(target, MemberPtr):
            base, offset = target.base, target.offset
        elif isinstance(target, Deref):
            address = strip_casts(target.operand)
            if not isinstance(address, Add):
                return None
            left, right = strip_casts(address.left), strip_casts(address.right)
            if isinstance(right, Const):
                base, offset = address.left, right.value
            elif isinstance(left, Const):
                base, offset = address.right, left.value
            else:
                return None
        else:
            return None

        table_name = self._table_name(base)
        if table_name is None:
            return None

        entry = self.context.table.match_call(table_name, offset)
        if entry is not None:
            log.detail(f"{call.address:#x}: call through {table_name} matches {entry.function_name}")
        return entry

    def _table_name(self, base: Expr) -> Optional[str]:
        # look through the cast chain for a pointer to one of the registered tables
        expr = base
        while True:
            name = pointee_name(expr.type)
            if name is not None and name in self.context.table:
                return name
            if not isinstance(expr, Cast):
                return None
            expr = expr.operand

    def resolve_guid(self, expr: Expr) -> Optional[UUID]:
        """
        Resolve a GUID argument to a concrete value: a literal at the call, or a reference to a GUID
        constant elsewhere in the binary that the host reads.
        """
        expr = strip_casts(expr)
        if isinstance(expr, AddressOf):
            expr = strip_casts(expr.operand)

        if isinstance(expr, GuidLiteral):
            return expr.guid
        if isinstance(expr, GlobalRef):
            return self.host.read_guid(expr.address)
        # a constant used as a pointer, which is how unlabeled data shows up
        if isinstance(expr, Const) and expr.value:
            return self.host.read_guid(expr.value)
        return None

    def correlate(
        self, call: Call, entry: TargetFunctionPointer, local_guid: UUID
    ) -> Optional[ProtocolRecord]:
        """
        Find the protocol record of this call site among those naming the called service. The
        record's GUID is authoritative; a GUID resolved here that disagrees is reported, and abandons
        the site in strict mode.
        """
        candidates = self.context.records_at(call.address)
        if not candidates:
            self._diagnose(
                DiagnosticKind.UNCORRELATED, call,
                f"{entry.function_name} with GUID {local_guid} has no protocol record",
            )
            return None

        same_service = [r for r in candidates if r.service_name == entry.function_name]
        if not same_service:
            self._diagnose(
                DiagnosticKind.SERVICE_MISMATCH, call,
                f"record names {candidates[0].service_name}, call site is {entry.function_name}",
            )
            return None

        # prefer the record agreeing with the local GUID, duplicates are harmless
        record = next((r for r in same_service if r.guid == local_guid), same_service[0])

        if record.guid != local_guid:
            self._diagnose(
                DiagnosticKind.GUID_MISMATCH, call,
                f"record has {record.guid}, call site passes {local_guid}",
            )
            if config.STRICT_GUID_CHECK:
                return None
        return record

    def resolve_target(self, expr: Expr) -> Optional[ResolvedTarget]:
        """
        Resolve the output pointer argument to the storage it points to.

        Address-of layers (and any casts between them) are unwrapped, counting the depth. The
        storage must be a local variable or a constant-index element of a local array; arrays are
        accepted only when they are synthetic arrays of primitives or pointers to primitives.

        Returns:
            ResolvedTarget | None: The target, or None if the operand shape is not recognized.
        """
        expr = strip_casts(expr)
        depth = 0
        while isinstance(expr, AddressOf):
            depth += 1
            expr = strip_casts(expr.operand)

        if isinstance(expr, Var):
            variable = expr.variable
            if isinstance(variable.type, Array):
                if not is_primitive_array(variable.type, config.ARRAY_POINTER_DEPTH):
                    log.debug(f"{variable.name}: {type_name(variable.type)} is not a stack slot")
                    return None
                # the array itself stands for the address of its first element
                return ArrayElementTarget(variable, 0, max(depth, 1))
            if depth == 0:
                return None
            return VariableTarget(variable, depth)

        if isinstance(expr, Index) and depth > 0:
            base, index = strip_casts(expr.base), strip_casts(expr.index)
            if not isinstance(base, Var) or not isinstance(index, Const):
                return None
            array_type = base.variable.type
            if not is_primitive_array(array_type, config.ARRAY_POINTER_DEPTH):
                log.debug(f"{base.variable.name}: {type_name(array_type)} is not a stack slot")
                return None
            if array_type.count is not None and not 0 <= index.value < array_type.count:
                log.debug(f"{render(expr)}: index out of bounds of {type_name(array_type)}")
                return None
            return ArrayElementTarget(base.variable, index.value, depth)

        return None

    def interface_type_for(self, record: ProtocolRecord) -> Optional[TypeInfo]:
        if record.interface_type is not None:
            return record.interface_type
        return self.directory.resolve_interface_type(record.guid)

    def apply_type(
        self,
        call: Call,
        entry: TargetFunctionPointer,
        target: ResolvedTarget,
        interface_type: TypeInfo,
    ) -> bool:
        """
        Write the interface type to the variable owning the target. The output argument holds the
        address of an interface pointer, so every address-of layer beyond the first adds a pointer
        layer; an array element never hands its array type on.
        """
        new_type = make_pointer(interface_type, target.depth - 1)
        variable = target.variable
        function_address = self._function_address

        if not self.writer.set_variable_type(function_address, variable, new_type):
            self._diagnose(
                DiagnosticKind.TYPE_WRITE_REJECTED, call,
                f"host refused {type_name(new_type)} for {variable.name}",
            )
            return False

        if isinstance(target, ArrayElementTarget):
            log.detail(f"{call.address:#x}: retyped {variable.name}[{target.index}] array slot")
        self.report.applied.append(
            AppliedType(
                function_address=function_address,
                call_address=call.address,
                variable_name=variable.name,
                service_name=entry.function_name,
                type=new_type,
            )
        )
        log.debug(
            f"{call.address:#x}: {entry.function_name} -> {variable.name} is now "
            f"{type_name(new_type)}"
        )
        return True

    def _diagnose(self, kind: DiagnosticKind, call: Call, message: str) -> None:
        self.report.add_diagnostic(
            Diagnostic(kind, self._function_address, call.address, message)
        )
