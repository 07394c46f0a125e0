import json
from uuid import UUID

import pytest

from efi_retyper.errors import RecordFormatError
from efi_retyper.records import (
    GuidDirectory,
    ProtocolRecord,
    interface_name_for,
    load_protocol_records,
    parse_address,
    parse_guid,
    record_from_json,
)
from efi_retyper.typeinfo import Field, Pointer, Primitive, Struct

PCI_IO_GUID = UUID("4cf5b200-68b8-4ca5-9eec-b23e3f50029a")
PCI_IO_GUID_LIST = [0x4CF5B200, 0x68B8, 0x4CA5, 0x9E, 0xEC, 0xB2, 0x3E, 0x3F, 0x50, 0x02, 0x9A]


@pytest.mark.parametrize(
    "value",
    [
        PCI_IO_GUID,
        "4cf5b200-68b8-4ca5-9eec-b23e3f50029a",
        "{4CF5B200-68B8-4CA5-9EEC-B23E3F50029A}",
        PCI_IO_GUID_LIST,
        tuple(PCI_IO_GUID_LIST),
        PCI_IO_GUID.bytes_le,
    ],
    ids=["uuid", "string", "braced", "list", "tuple", "efi-bytes"],
)
def test_parse_guid(value) -> None:
    assert parse_guid(value) == PCI_IO_GUID


@pytest.mark.parametrize(
    "value",
    ["not-a-guid", [1, 2, 3], [0x1FFFFFFFF, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0], b"short", None, 42],
)
def test_parse_guid_rejects(value) -> None:
    with pytest.raises(RecordFormatError):
        parse_guid(value)


def test_parse_address() -> None:
    assert parse_address(0x1D4C) == 0x1D4C
    assert parse_address("0x1d4c") == 0x1D4C
    assert parse_address("1d4c") == 0x1D4C
    for bad in ("xyz", None, True, 1.5):
        with pytest.raises(RecordFormatError):
            parse_address(bad)


def test_record_from_json() -> None:
    entry = {
        "ea": 0x1D4C,
        "service": "LocateProtocol",
        "guid": PCI_IO_GUID_LIST,
        "prot_name": "EFI_PCI_IO_PROTOCOL_GUID",
        "module": "PciBus",
    }
    record = record_from_json(entry)

    assert record == ProtocolRecord(0x1D4C, "LocateProtocol", PCI_IO_GUID, None, "EFI_PCI_IO_PROTOCOL_GUID")
    assert record_from_json({**entry, "func_ea": "0x1c00"}).owner_function_address == 0x1C00


@pytest.mark.parametrize("missing", ["ea", "service", "guid"])
def test_record_from_json_requires_fields(missing) -> None:
    entry = {"ea": 0x1D4C, "service": "LocateProtocol", "guid": PCI_IO_GUID_LIST}
    del entry[missing]
    with pytest.raises(RecordFormatError):
        record_from_json(entry)


def test_with_owner_keeps_everything_else() -> None:
    record = ProtocolRecord(0x1D4C, "LocateProtocol", PCI_IO_GUID, protocol_name="PCI")
    owned = record.with_owner(0x1C00)
    assert owned.owner_function_address == 0x1C00
    assert (owned.call_address, owned.service_name, owned.guid, owned.protocol_name) == (
        0x1D4C, "LocateProtocol", PCI_IO_GUID, "PCI",
    )


def test_load_protocol_records_list(tmp_path) -> None:
    path = tmp_path / "report.json"
    path.write_text(
        json.dumps(
            [
                {"ea": 0x10, "service": "LocateProtocol", "guid": PCI_IO_GUID_LIST},
                {"ea": 0x20, "service": "HandleProtocol"},
                {"xref": "0x30", "service": "OpenProtocol", "guid": str(PCI_IO_GUID)},
            ]
        )
    )
    records = load_protocol_records(path)

    assert [r.call_address for r in records] == [0x10, 0x30]
    assert records[1].service_name == "OpenProtocol"


def test_load_protocol_records_grouped_report(tmp_path) -> None:
    path = tmp_path / "report.json"
    path.write_text(
        json.dumps(
            {
                "bs_protocols": [{"ea": 0x10, "service": "LocateProtocol", "guid": PCI_IO_GUID_LIST}],
                "smm_protocols": [{"ea": 0x20, "service": "SmmLocateProtocol", "guid": PCI_IO_GUID_LIST}],
                "nvram": [{"name": "Setup"}],
            }
        )
    )
    records = load_protocol_records(path)
    assert [(r.call_address, r.service_name) for r in records] == [
        (0x10, "LocateProtocol"),
        (0x20, "SmmLocateProtocol"),
    ]


def test_load_protocol_records_rejects_non_json(tmp_path) -> None:
    path = tmp_path / "report.json"
    path.write_text("protocols: none")
    with pytest.raises(RecordFormatError):
        load_protocol_records(path)


def test_interface_name_for() -> None:
    assert interface_name_for("EFI_PCI_IO_PROTOCOL_GUID") == "EFI_PCI_IO_PROTOCOL"
    assert interface_name_for("EFI_SMM_VARIABLE_PROTOCOL") == "EFI_SMM_VARIABLE_PROTOCOL"


def test_guid_directory_from_json(tmp_path) -> None:
    path = tmp_path / "guids.json"
    path.write_text(
        json.dumps({"EFI_PCI_IO_PROTOCOL_GUID": PCI_IO_GUID_LIST, "BROKEN_GUID": [1, 2]})
    )
    directory = GuidDirectory.from_json(path)

    assert len(directory) == 1
    assert directory.name_for(PCI_IO_GUID) == "EFI_PCI_IO_PROTOCOL_GUID"
    assert directory.resolve_interface_type(PCI_IO_GUID) == Pointer(Struct("EFI_PCI_IO_PROTOCOL"))
    assert directory.resolve_interface_type(UUID(int=0)) is None


@pytest.mark.parametrize("text", ["EFI_PCI_IO_PROTOCOL_GUID = {0x4cf5b200}", "[]"])
def test_guid_directory_rejects_bad_files(tmp_path, text) -> None:
    path = tmp_path / "guids.json"
    path.write_text(text)
    with pytest.raises(RecordFormatError):
        GuidDirectory.from_json(path)


def test_guid_directory_type_lookup() -> None:
    layout = Struct("EFI_PCI_IO_PROTOCOL", (Field("PollMem", Primitive("UINT64", 8), 0),))
    known = {"EFI_PCI_IO_PROTOCOL": layout}
    other = UUID("ed32d533-99e6-4209-9cc0-2d72cdd998a7")
    directory = GuidDirectory(
        {PCI_IO_GUID: "EFI_PCI_IO_PROTOCOL_GUID", other: "EFI_SMM_VARIABLE_PROTOCOL_GUID"},
        type_lookup=known.get,
    )

    assert directory.resolve_interface_type(PCI_IO_GUID) == Pointer(layout)
    # a GUID whose structure the host does not know has no type
    assert directory.resolve_interface_type(other) is None
