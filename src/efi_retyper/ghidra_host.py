"""
Ghidra implementation of the host interface, for use from a PyGhidra script.

The decompiler's high p-code is lifted into the retyping IR: every CALL and CALLIND becomes a call
expression whose operands are rebuilt from the defining p-code operations, so
``LOAD(PTRSUB(gBS, 0x140))`` reads as ``gBS->LocateProtocol`` and ``PTRSUB(RSP, -0x28)`` reads as
``&local_28``.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple
from uuid import UUID

from ghidra.app.decompiler import DecompInterface, DecompileOptions                 # type: ignore
from ghidra.program.model.address import AddressOutOfBoundsException                # type: ignore
from ghidra.program.model.data import (                                             # type: ignore
    AbstractFloatDataType,
    AbstractIntegerDataType,
    ArrayDataType,
    BooleanDataType,
    FunctionDefinition,
    PointerDataType,
    Structure,
    TypeDef,
    Undefined,
    VoidDataType,
)
from ghidra.program.model.data import Array as GhidraArray                          # type: ignore
from ghidra.program.model.data import Enum as GhidraEnum                            # type: ignore
from ghidra.program.model.data import Pointer as GhidraPointer                      # type: ignore
from ghidra.program.model.listing import Program                                    # type: ignore
from ghidra.program.model.mem import MemoryAccessException                          # type: ignore
from ghidra.program.model.pcode import HighFunctionDBUtil, PcodeOp                  # type: ignore
from ghidra.program.model.symbol import SourceType                                  # type: ignore
from ghidra.util.exception import DuplicateNameException, InvalidInputException     # type: ignore
from ghidra.util.task import TaskMonitor                                            # type: ignore
from java.lang import IllegalArgumentException                                      # type: ignore
from java.util import ArrayList                                                     # type: ignore

from . import config, log
from .errors import DecompilationFailed, TypeWriteRejected
from .ir import (
    Add,
    AddressOf,
    Block,
    Call,
    Cast,
    Const,
    Deref,
    Expr,
    ExprStmt,
    Function,
    GlobalRef,
    Index,
    LocalVariable,
    MemberPtr,
    Opaque,
    Var,
)
from .typeinfo import (
    Array,
    Field,
    FunctionType,
    Pointer,
    Primitive,
    Struct,
    TypeInfo,
    Void,
    type_name,
)

# operand trees deeper than this are cut off as opaque
MAX_LIFT_DEPTH = 16


class GhidraHost:
    """
    Host adapter around a Ghidra program and its decompiler.

    Parameters:
        program (ghidra.program.model.listing.Program): The program being analysed.
        monitor (ghidra.util.task.TaskMonitor): Monitor passed on to the decompiler.
        timeout (int | None): Seconds the decompiler may spend per function, defaults to the config.
    """

    def __init__(self, program: Program, monitor: TaskMonitor, timeout: Optional[int] = None):
        self.program = program
        self.monitor = monitor
        self.timeout = config.DECOMPILE_TIMEOUT if timeout is None else timeout
        self._data_types: Dict[str, object] = {}

        self._decompiler = DecompInterface()
        options = DecompileOptions()
        options.grabFromProgram(program)
        self._decompiler.setOptions(options)
        self._decompiler.openProgram(program)

    def dispose(self) -> None:
        self._decompiler.dispose()

    def to_addr(self, offset: int):
        return self.program.getAddressFactory().getDefaultAddressSpace().getAddress(offset)

    # ------------------------------------------------------------------------------------------- #
    def function_containing(self, address: int) -> Optional[int]:
        function = self.program.getFunctionManager().getFunctionContaining(self.to_addr(address))
        if function is None:
            return None
        return function.getEntryPoint().getOffset()

    def read_guid(self, address: int) -> Optional[UUID]:
        """
        Read the 16-byte EFI_GUID at ``address``.

        Returns:
            uuid.UUID | None: The GUID, or None if the bytes cannot be read.
        """
        memory = self.program.getMemory()
        try:
            start = self.to_addr(address)
            raw = bytes(memory.getByte(start.add(i)) & 0xFF for i in range(16))
        except (MemoryAccessException, AddressOutOfBoundsException):
            log.debug(f"Could not read GUID bytes @ {address:#x}")
            return None
        return UUID(bytes_le=raw)

    def decompile(self, function_address: int) -> Function:
        """
        Decompile the function at ``function_address`` and lift its calls.

        Raises:
            DecompilationFailed: If there is no function or the decompiler gives up on it.
        """
        function = self.program.getFunctionManager().getFunctionAt(self.to_addr(function_address))
        if function is None:
            raise DecompilationFailed(function_address, "no function defined")

        results = self._decompiler.decompileFunction(function, self.timeout, self.monitor)
        if results is None or not results.decompileCompleted():
            reason = results.getErrorMessage() if results is not None else ""
            raise DecompilationFailed(function_address, reason or "decompilation did not complete")

        high_function = results.getHighFunction()
        if high_function is None:
            raise DecompilationFailed(function_address, "no high function")
        return PcodeLifter(self, high_function).lift()

    def set_variable_type(self, function_address: int, variable: LocalVariable, typ: TypeInfo) -> None:
        """
        Commit ``typ`` for the high symbol behind ``variable``.

        Raises:
            TypeWriteRejected: If the variable has no symbol, the type is unknown to the program,
                or Ghidra refuses the update.
        """
        symbol = variable.handle
        if symbol is None:
            raise TypeWriteRejected(f"{variable.name} has no symbol in @ {function_address:#x}")

        data_type = self.to_data_type(typ)
        if data_type is None:
            raise TypeWriteRejected(f"no data type {type_name(typ)} in the program")

        try:
            HighFunctionDBUtil.updateDBVariable(symbol, None, data_type, SourceType.USER_DEFINED)
        except (DuplicateNameException, InvalidInputException, IllegalArgumentException) as e:
            raise TypeWriteRejected(str(e)) from e

    # ------------------------------------------------------------------------------------------- #
    def find_data_type(self, name: str):
        """
        Look a named data type up in the program's data type manager, preferring structures.
        """
        if name in self._data_types:
            return self._data_types[name]

        found = ArrayList()
        self.program.getDataTypeManager().findDataTypes(name, found)
        data_type = None
        for candidate in found:
            if isinstance(candidate, Structure):
                data_type = candidate
                break
            if data_type is None:
                data_type = candidate
        self._data_types[name] = data_type
        return data_type

    def struct_type(self, name: str) -> Optional[TypeInfo]:
        """Return the program's structure called ``name`` in the retyping type model."""
        data_type = self.find_data_type(name)
        if data_type is None:
            return None
        return self.from_data_type(data_type)

    def from_data_type(self, data_type, expand: bool = True) -> Optional[TypeInfo]:
        """
        Convert a Ghidra data type into the retyping type model.

        Structure members are converted with ``expand`` off, so nested and self-referencing
        structures end up as named structures without a layout.
        """
        if data_type is None:
            return None
        if isinstance(data_type, TypeDef):
            data_type = data_type.getBaseDataType()

        if isinstance(data_type, GhidraPointer):
            # a generic "void *" has no pointee
            return Pointer(self.from_data_type(data_type.getDataType(), False) or Void())
        if isinstance(data_type, GhidraArray):
            return Array(
                self.from_data_type(data_type.getDataType(), False), data_type.getNumElements()
            )
        if isinstance(data_type, Structure):
            if not expand or data_type.isNotYetDefined():
                return Struct(data_type.getName())
            fields = tuple(
                Field(
                    component.getFieldName() or component.getDefaultFieldName(),
                    self.from_data_type(component.getDataType(), False),
                    component.getOffset() * 8,
                )
                for component in data_type.getDefinedComponents()
            )
            return Struct(data_type.getName(), fields)
        if isinstance(data_type, FunctionDefinition):
            return FunctionType(data_type.getName())
        if isinstance(data_type, VoidDataType):
            return Void()
        if isinstance(data_type, AbstractFloatDataType):
            return Primitive(data_type.getName(), data_type.getLength(), "float")
        if isinstance(data_type, BooleanDataType):
            return Primitive(data_type.getName(), data_type.getLength(), "bool")
        if isinstance(data_type, (AbstractIntegerDataType, GhidraEnum, Undefined)):
            return Primitive(data_type.getName(), data_type.getLength(), "int")
        # unions and anything else are treated as opaque aggregates
        return Struct(data_type.getName())

    def to_data_type(self, typ: TypeInfo):
        """Convert a type of the retyping model back into a Ghidra data type, or None."""
        if isinstance(typ, Pointer):
            target = self.to_data_type(typ.target)
            if target is None:
                return None
            return PointerDataType(target, self.program.getDataTypeManager())
        if isinstance(typ, Void):
            return VoidDataType.dataType
        if isinstance(typ, Array):
            element = self.to_data_type(typ.element)
            if element is None or typ.count is None:
                return None
            return ArrayDataType(element, typ.count, element.getLength())
        if isinstance(typ, (Struct, Primitive)):
            return self.find_data_type(typ.name)
        return None


class PcodeLifter:
    """
    Rebuilds the operand trees of the call operations of one high function.
    """

    def __init__(self, host: GhidraHost, high_function):
        self.host = host
        self.high_function = high_function
        self.stack_pointer = host.program.getCompilerSpec().getStackPointer()
        self.variables: Dict[str, LocalVariable] = {}
        # (stack offset, size, variable) of every stack allocated local
        self.stack_slots: List[Tuple[int, int, LocalVariable]] = []

    def lift(self) -> Function:
        self.collect_variables()
        statements = []
        for op in self.high_function.getPcodeOps():
            if op.getOpcode() not in (PcodeOp.CALL, PcodeOp.CALLIND):
                continue
            statements.append(ExprStmt(self.lift_call(op)))

        function = self.high_function.getFunction()
        return Function(
            address=function.getEntryPoint().getOffset(),
            body=Block(tuple(statements)),
            name=function.getName(),
            variables=tuple(self.variables.values()),
        )

    def collect_variables(self) -> None:
        for symbol in self.high_function.getLocalSymbolMap().getSymbols():
            variable = LocalVariable(
                symbol.getName(), self.host.from_data_type(symbol.getDataType()), handle=symbol
            )
            self.variables[symbol.getName()] = variable
            storage = symbol.getStorage()
            if storage.isStackStorage():
                self.stack_slots.append((storage.getStackOffset(), symbol.getSize(), variable))

    def lift_call(self, op) -> Call:
        target = op.getInput(0)
        if op.getOpcode() == PcodeOp.CALL:
            callee = GlobalRef(target.getOffset(), self.global_name(target.getOffset()))
        else:
            callee = self.lift_value(target, 0)
        args = tuple(self.lift_value(op.getInput(i), 0) for i in range(1, op.getNumInputs()))
        return Call(op.getSeqnum().getTarget().getOffset(), callee, args)

    # ------------------------------------------------------------------------------------------- #
    def lift_value(self, varnode, depth: int) -> Expr:
        if depth > MAX_LIFT_DEPTH:
            return Opaque("...")
        typ = self.high_type(varnode)

        if varnode.isConstant():
            return Const(varnode.getOffset(), typ)
        if varnode.isAddress():
            # a global variable read directly from memory
            return GlobalRef(varnode.getOffset(), self.global_name(varnode.getOffset()), typ)

        variable = self.named_variable(varnode)
        if variable is not None:
            return Var(variable)

        op = varnode.getDef()
        if op is None:
            return Opaque(str(varnode), (), typ)

        opcode = op.getOpcode()
        if opcode == PcodeOp.CAST:
            return Cast(self.lift_value(op.getInput(0), depth + 1), typ)
        if opcode in (PcodeOp.COPY, PcodeOp.INDIRECT):
            return self.lift_value(op.getInput(0), depth + 1)
        if opcode == PcodeOp.PTRSUB:
            return self.lift_ptrsub(op, typ, depth)
        if opcode == PcodeOp.LOAD:
            return self.lift_load(op, typ, depth)
        if opcode == PcodeOp.INT_ADD:
            return Add(
                self.lift_value(op.getInput(0), depth + 1),
                self.lift_value(op.getInput(1), depth + 1),
                typ,
            )
        if opcode == PcodeOp.PTRADD:
            index, size = op.getInput(1), op.getInput(2)
            base = self.lift_value(op.getInput(0), depth + 1)
            if index.isConstant():
                return Add(base, Const(index.getOffset() * size.getOffset()), typ)
            return Add(base, Opaque(op.getMnemonic(), (self.lift_value(index, depth + 1),)), typ)

        operands = tuple(self.lift_value(vn, depth + 1) for vn in op.getInputs())
        return Opaque(op.getMnemonic(), operands, typ)

    def lift_ptrsub(self, op, typ: Optional[TypeInfo], depth: int) -> Expr:
        base, offset = op.getInput(0), op.getInput(1)
        if not offset.isConstant():
            return Opaque(op.getMnemonic(), (), typ)

        # PTRSUB(0, addr) is the address of a global
        if base.isConstant() and base.getOffset() == 0:
            address = offset.getOffset()
            return AddressOf(GlobalRef(address, self.global_name(address)), typ)

        # PTRSUB(SP, off) is the address of a stack local
        if self.is_stack_base(base):
            return self.stack_address(self.signed(offset), typ)

        member = MemberPtr(self.lift_value(base, depth + 1), offset.getOffset())
        return AddressOf(member, typ)

    def lift_load(self, op, typ: Optional[TypeInfo], depth: int) -> Expr:
        pointer = op.getInput(1)
        pointer_op = pointer.getDef()
        # LOAD(PTRSUB(base, off)) is the member "base->field" of a structure pointer
        if (
            pointer_op is not None
            and pointer_op.getOpcode() == PcodeOp.PTRSUB
            and pointer_op.getInput(1).isConstant()
            and not pointer_op.getInput(0).isConstant()
            and not self.is_stack_base(pointer_op.getInput(0))
        ):
            base = self.lift_value(pointer_op.getInput(0), depth + 1)
            field = pointer_op.getInput(1).getOffset()
            return MemberPtr(base, field, self.member_name(base, field), typ)
        return Deref(self.lift_value(pointer, depth + 1), typ)

    def stack_address(self, stack_offset: int, typ: Optional[TypeInfo]) -> Expr:
        for slot_offset, size, variable in self.stack_slots:
            if slot_offset == stack_offset and not isinstance(variable.type, Array):
                return AddressOf(Var(variable), typ)
            if slot_offset <= stack_offset < slot_offset + size and isinstance(variable.type, Array):
                element = variable.type.element
                element_size = self.size_of(element)
                if not element_size:
                    break
                index = (stack_offset - slot_offset) // element_size
                return AddressOf(Index(Var(variable), Const(index)), typ)
        return Opaque(f"stack[{stack_offset:#x}]", (), typ)

    # ------------------------------------------------------------------------------------------- #
    def is_stack_base(self, varnode) -> bool:
        return (
            varnode.isRegister()
            and self.stack_pointer is not None
            and varnode.getAddress().equals(self.stack_pointer.getAddress())
        )

    def named_variable(self, varnode) -> Optional[LocalVariable]:
        high = varnode.getHigh()
        if high is None:
            return None
        symbol = high.getSymbol()
        if symbol is None:
            return None
        return self.variables.get(symbol.getName())

    def high_type(self, varnode) -> Optional[TypeInfo]:
        high = varnode.getHigh()
        if high is None:
            return None
        return self.host.from_data_type(high.getDataType(), False)

    def global_name(self, address: int) -> str:
        symbol = self.host.program.getSymbolTable().getPrimarySymbol(self.host.to_addr(address))
        return symbol.getName() if symbol is not None else ""

    def member_name(self, base: Expr, offset: int) -> str:
        base_type = base.type
        if isinstance(base_type, Pointer) and isinstance(base_type.target, Struct):
            struct = self.host.struct_type(base_type.target.name)
            if isinstance(struct, Struct) and struct.fields:
                for member in struct.fields:
                    if member.bit_offset == offset * 8:
                        return member.name
        return ""

    def size_of(self, typ: Optional[TypeInfo]) -> int:
        if isinstance(typ, Primitive):
            return typ.size
        if isinstance(typ, Pointer):
            return self.host.program.getDefaultPointerSize()
        data_type = self.host.to_data_type(typ) if typ is not None else None
        return data_type.getLength() if data_type is not None else 0

    @staticmethod
    def signed(varnode) -> int:
        value = varnode.getOffset()
        bits = varnode.getSize() * 8
        if value >= 1 << (bits - 1):
            value -= 1 << bits
        return value
