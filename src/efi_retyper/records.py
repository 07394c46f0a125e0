"""
Inputs produced outside the retyping engine: the protocol records emitted by the discovery stage
and the directory mapping GUIDs to interface structure types.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from uuid import UUID

from . import log
from .errors import RecordFormatError
from .typeinfo import Pointer, Struct, TypeInfo

GuidLike = Union[UUID, str, bytes, List[int]]


###################################################################################################
#    GUIDS                                                                                        #
###################################################################################################
def parse_guid(value: GuidLike) -> UUID:
    """
    Convert the GUID spellings found in discovery reports into a UUID.

    Accepted forms are UUID objects, canonical strings (with or without braces), 16 raw bytes in EFI
    layout, and the 11-component list ``[Data1, Data2, Data3, b0, ..., b7]``.

    Parameters:
        value (UUID | str | bytes | list[int]): The GUID to convert.

    Returns:
        uuid.UUID: The parsed GUID.

    Raises:
        RecordFormatError: If the value is not a GUID in any of the accepted forms.
    """
    if isinstance(value, UUID):
        return value
    try:
        if isinstance(value, str):
            return UUID(value.strip().strip("{}"))
        if isinstance(value, (bytes, bytearray)):
            # EFI_GUID stores its first three fields little-endian
            return UUID(bytes_le=bytes(value))
        if isinstance(value, (list, tuple)) and len(value) == 11:
            data1, data2, data3, *data4 = (int(part) for part in value)
            if not (
                0 <= data1 <= 0xFFFFFFFF
                and 0 <= data2 <= 0xFFFF
                and 0 <= data3 <= 0xFFFF
                and all(0 <= part <= 0xFF for part in data4)
            ):
                raise ValueError("GUID component out of range")
            data4_hex = "".join(f"{part:02x}" for part in data4)
            return UUID(f"{data1:08x}-{data2:04x}-{data3:04x}-{data4_hex[:4]}-{data4_hex[4:]}")
    except (ValueError, TypeError) as e:
        raise RecordFormatError(f"malformed GUID {value!r}: {e}") from e
    raise RecordFormatError(f"malformed GUID {value!r}")


def parse_address(value: Any) -> int:
    """Accept addresses as ints or as (hex) strings like "0x1d4c"."""
    if isinstance(value, bool):
        raise RecordFormatError(f"malformed address {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0) if value.lower().startswith("0x") else int(value, 16)
        except ValueError as e:
            raise RecordFormatError(f"malformed address {value!r}") from e
    raise RecordFormatError(f"malformed address {value!r}")


###################################################################################################
#    PROTOCOL RECORDS                                                                             #
###################################################################################################
@dataclass(frozen=True)
class ProtocolRecord:
    """
    A call site at which the discovery stage saw a service function request a protocol interface.
    The GUID reported here is authoritative for the retyping pass.
    """

    call_address: int
    service_name: str
    guid: UUID
    owner_function_address: Optional[int] = None
    protocol_name: str = ""
    interface_type: Optional[TypeInfo] = field(default=None, compare=False)

    def with_owner(self, owner_function_address: int) -> "ProtocolRecord":
        return ProtocolRecord(
            call_address=self.call_address,
            service_name=self.service_name,
            guid=self.guid,
            owner_function_address=owner_function_address,
            protocol_name=self.protocol_name,
            interface_type=self.interface_type,
        )


# keys under which the discovery report stores each piece of information, in order of preference
_CALL_KEYS = ("ea", "xref", "call_address")
_OWNER_KEYS = ("func_ea", "function", "owner_function_address")
_NAME_KEYS = ("prot_name", "protocol_name", "name")


def _first(entry: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if entry.get(key) is not None:
            return entry[key]
    return None


def record_from_json(entry: Dict[str, Any]) -> ProtocolRecord:
    """
    Build a record from one entry of a discovery report.

    Raises:
        RecordFormatError: If the call address, service name or GUID is missing or malformed.
    """
    if not isinstance(entry, dict):
        raise RecordFormatError(f"protocol entry is not an object: {entry!r}")

    call_address = _first(entry, _CALL_KEYS)
    service_name = entry.get("service")
    guid = entry.get("guid")
    if call_address is None or not service_name or guid is None:
        raise RecordFormatError(f"protocol entry lacks ea, service or guid: {entry!r}")

    owner = _first(entry, _OWNER_KEYS)
    return ProtocolRecord(
        call_address=parse_address(call_address),
        service_name=str(service_name),
        guid=parse_guid(guid),
        owner_function_address=None if owner is None else parse_address(owner),
        protocol_name=str(_first(entry, _NAME_KEYS) or ""),
    )


def _protocol_entries(document: Any) -> List[Any]:
    # a plain list, {"protocols": [...]}, or a report grouping protocols by service table
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        if isinstance(document.get("protocols"), list):
            return document["protocols"]
        entries = []
        for key, value in document.items():
            if key.endswith("protocols") and isinstance(value, list):
                entries.extend(value)
        return entries
    raise RecordFormatError("protocol report must be a list or an object")


def load_protocol_records(path: Union[str, Path]) -> List[ProtocolRecord]:
    """
    Read the protocol records of a discovery report.

    Malformed entries are reported and skipped; a report that is not JSON at all raises.

    Parameters:
        path (str | Path): The report file.

    Returns:
        list[ProtocolRecord]: The records in file order.
    """
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise RecordFormatError(f"{path}: not a JSON document: {e}") from e

    records = []
    for entry in _protocol_entries(document):
        try:
            records.append(record_from_json(entry))
        except RecordFormatError as e:
            log.warning(f"{path}: skipping protocol entry: {e}")
    log.debug(f"Loaded {len(records)} protocol records from {path}")
    return records


###################################################################################################
#    GUID DIRECTORY                                                                               #
###################################################################################################
def interface_name_for(guid_name: str) -> str:
    """Derive the interface structure name from a GUID name, e.g. EFI_PCI_IO_PROTOCOL_GUID."""
    return guid_name[: -len("_GUID")] if guid_name.endswith("_GUID") else guid_name


class GuidDirectory:
    """
    Maps GUIDs to the interface structure types they name.

    Parameters:
        names (dict[UUID, str]): GUID to GUID-name mapping.
        type_lookup (callable | None): Resolves a structure name to the host's type. Without it,
            interfaces resolve to opaque structures of the derived name.
    """

    def __init__(
        self,
        names: Dict[UUID, str],
        type_lookup: Optional[Callable[[str], Optional[TypeInfo]]] = None,
    ):
        self._names = dict(names)
        self._type_lookup = type_lookup

    @classmethod
    def from_json(cls, path: Union[str, Path], type_lookup=None) -> "GuidDirectory":
        """
        Load a ``guids.json`` style file: ``{"EFI_PCI_IO_PROTOCOL_GUID": [0x4CF5B200, ...], ...}``.
        """
        try:
            document = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RecordFormatError(f"{path}: not a JSON document: {e}") from e
        if not isinstance(document, dict):
            raise RecordFormatError(f"{path}: GUID file must map names to GUIDs")

        names = {}
        for name, value in document.items():
            try:
                names[parse_guid(value)] = name
            except RecordFormatError as e:
                log.warning(f"{path}: skipping {name}: {e}")
        return cls(names, type_lookup)

    def __len__(self) -> int:
        return len(self._names)

    def name_for(self, guid: UUID) -> Optional[str]:
        return self._names.get(guid)

    def resolve_interface_type(self, guid: UUID) -> Optional[TypeInfo]:
        """
        Return the pointer-to-interface type for a GUID, or None if the GUID has no known type.
        """
        guid_name = self._names.get(guid)
        if guid_name is None:
            return None

        struct_name = interface_name_for(guid_name)
        if self._type_lookup is None:
            return Pointer(Struct(struct_name))

        struct_type = self._type_lookup(struct_name)
        if struct_type is None:
            log.debug(f"No type {struct_name} known for {guid_name}")
            return None
        return Pointer(struct_type)
