"""An in-memory host and builders for the IR of typical UEFI call sites."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from efi_retyper.errors import DecompilationFailed, TypeWriteRejected
from efi_retyper.ir import (
    AddressOf,
    Block,
    Call,
    Const,
    Expr,
    ExprStmt,
    Function,
    GlobalRef,
    LocalVariable,
    MemberPtr,
)
from efi_retyper.records import ProtocolRecord
from efi_retyper.typeinfo import FunctionType, Pointer, Primitive, Struct, TypeInfo, Void

BOOT_SERVICES_PTR = Pointer(Struct("EFI_BOOT_SERVICES"))
SMM_SERVICES_PTR = Pointer(Struct("_EFI_SMM_SYSTEM_TABLE2"))

PCI_IO_GUID = UUID("4cf5b200-68b8-4ca5-9eec-b23e3f50029a")
PCI_IO_GUID_ADDRESS = 0x2000
PCI_IO_TYPE = Pointer(Struct("EFI_PCI_IO_PROTOCOL"))

SMM_VARIABLE_GUID = UUID("ed32d533-99e6-4209-9cc0-2d72cdd998a7")
SMM_VARIABLE_GUID_ADDRESS = 0x2010
SMM_VARIABLE_TYPE = Pointer(Struct("EFI_SMM_VARIABLE_PROTOCOL"))

INT32 = Primitive("int32", 4)
VOID_PTR = Pointer(Void())

gBS = GlobalRef(0x3000, "gBS", BOOT_SERVICES_PTR)
gSmst = GlobalRef(0x3008, "gSmst", SMM_SERVICES_PTR)


class FakeHost:
    """Host double recording every decompile request and type write."""

    def __init__(
        self,
        functions: Iterable[Function] = (),
        guids: Optional[Dict[int, UUID]] = None,
        owners: Optional[Dict[int, int]] = None,
        reject: Iterable[str] = (),
    ):
        self.functions = {function.address: function for function in functions}
        self.guids = {
            PCI_IO_GUID_ADDRESS: PCI_IO_GUID,
            SMM_VARIABLE_GUID_ADDRESS: SMM_VARIABLE_GUID,
        }
        self.guids.update(guids or {})
        self.owners = dict(owners or {})
        self.reject = set(reject)
        self.decompiled: List[int] = []
        self.writes: List[Tuple[int, str, TypeInfo]] = []

    def decompile(self, function_address: int) -> Function:
        self.decompiled.append(function_address)
        if function_address not in self.functions:
            raise DecompilationFailed(function_address, "unsupported function")
        return self.functions[function_address]

    def function_containing(self, address: int) -> Optional[int]:
        return self.owners.get(address)

    def read_guid(self, address: int) -> Optional[UUID]:
        return self.guids.get(address)

    def set_variable_type(self, function_address: int, variable: LocalVariable, typ: TypeInfo):
        if variable.name in self.reject:
            raise TypeWriteRejected(f"{variable.name} cannot hold {typ}")
        self.writes.append((function_address, variable.name, typ))


def guid_ref(address: int = PCI_IO_GUID_ADDRESS, name: str = "gEfiPciIoProtocolGuid") -> Expr:
    return AddressOf(GlobalRef(address, name))


def service_call(address: int, base: Expr, offset: int, args: Iterable[Expr]) -> Call:
    return Call(address, MemberPtr(base, offset, type=Pointer(FunctionType())), tuple(args))


def locate_protocol(address: int, out: Expr, guid: Optional[Expr] = None) -> Call:
    """``gBS->LocateProtocol(&guid, NULL, out)``"""
    return service_call(address, gBS, 0x140, (guid or guid_ref(), Const(0), out))


def handle_protocol(address: int, out: Expr, guid: Optional[Expr] = None) -> Call:
    """``gBS->HandleProtocol(ImageHandle, &guid, out)``"""
    handle = GlobalRef(0x3010, "gImageHandle", VOID_PTR)
    return service_call(address, gBS, 0x98, (handle, guid or guid_ref(), out))


def smm_locate_protocol(address: int, out: Expr) -> Call:
    """``gSmst->SmmLocateProtocol(&guid, NULL, out)``"""
    guid = guid_ref(SMM_VARIABLE_GUID_ADDRESS, "gEfiSmmVariableProtocolGuid")
    return service_call(address, gSmst, 0xD0, (guid, Const(0), out))


def make_function(address: int, *calls: Call) -> Function:
    return Function(address, Block(tuple(ExprStmt(call) for call in calls)), f"sub_{address:X}")


def record(
    call_address: int,
    owner: Optional[int],
    service: str = "LocateProtocol",
    guid: UUID = PCI_IO_GUID,
    **extra,
) -> ProtocolRecord:
    return ProtocolRecord(
        call_address=call_address,
        service_name=service,
        guid=guid,
        owner_function_address=owner,
        **extra,
    )
