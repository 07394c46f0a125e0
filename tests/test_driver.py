import pytest

from helpers import (
    PCI_IO_TYPE,
    SMM_VARIABLE_GUID,
    SMM_VARIABLE_TYPE,
    VOID_PTR,
    FakeHost,
    locate_protocol,
    make_function,
    record,
    smm_locate_protocol,
)
from efi_retyper.descriptors import ServiceDescriptorTableBuilder, default_tables
from efi_retyper.driver import Driver, apply_all_types_for_interfaces
from efi_retyper.errors import RetypingCancelled
from efi_retyper.ir import AddressOf, LocalVariable, Var
from efi_retyper.report import DiagnosticKind, RetypingReport

interface = LocalVariable("Interface", VOID_PTR)
smm_variable = LocalVariable("SmmVariable", VOID_PTR)


def two_functions():
    first = make_function(
        0x1000,
        locate_protocol(0x1010, AddressOf(Var(interface))),
        smm_locate_protocol(0x1020, AddressOf(Var(smm_variable))),
    )
    second = make_function(0x2100, locate_protocol(0x2110, AddressOf(Var(interface))))
    records = [
        record(0x1010, 0x1000),
        record(0x1020, 0x1000, "SmmLocateProtocol", SMM_VARIABLE_GUID),
        record(0x2110, 0x2100),
    ]
    return [first, second], records


def test_each_function_is_decompiled_once(directory) -> None:
    functions, records = two_functions()
    host = FakeHost(functions)

    report = apply_all_types_for_interfaces(host, directory, records)

    assert host.decompiled == [0x1000, 0x2100]
    assert host.writes == [
        (0x1000, "Interface", PCI_IO_TYPE),
        (0x1000, "SmmVariable", SMM_VARIABLE_TYPE),
        (0x2100, "Interface", PCI_IO_TYPE),
    ]
    assert report.functions_processed == 2
    assert report.diagnostics == []


def test_decompilation_failure_skips_to_next_function(directory) -> None:
    functions, records = two_functions()
    host = FakeHost(functions[1:])

    report = apply_all_types_for_interfaces(host, directory, records)

    assert host.decompiled == [0x1000, 0x2100]
    assert host.writes == [(0x2100, "Interface", PCI_IO_TYPE)]
    failed = report.of_kind(DiagnosticKind.DECOMPILATION_FAILED)
    assert [(d.function_address, d.call_address) for d in failed] == [(0x1000, None)]
    assert report.functions_processed == 1


def test_second_run_applies_the_same_types(directory) -> None:
    functions, records = two_functions()
    host = FakeHost(functions)
    driver = Driver(host, directory)

    first = driver.run(records)
    second = driver.run(records)

    assert host.writes[:3] == host.writes[3:]
    assert [a.type for a in first.applied] == [a.type for a in second.applied]
    assert second.diagnostics == []


def test_duplicate_records_are_processed_once(directory) -> None:
    functions, records = two_functions()
    host = FakeHost(functions)

    report = apply_all_types_for_interfaces(host, directory, records + records[:1])

    assert len(report.applied) == 3
    assert host.decompiled == [0x1000, 0x2100]


def test_record_without_matching_call_does_not_block_others(directory) -> None:
    function = make_function(0x1000, locate_protocol(0x1010, AddressOf(Var(interface))))
    host = FakeHost([function])
    records = [record(0x1010, 0x1000), record(0x1080, 0x1000, "HandleProtocol")]

    report = apply_all_types_for_interfaces(host, directory, records)

    assert host.writes == [(0x1000, "Interface", PCI_IO_TYPE)]
    unresolved = report.of_kind(DiagnosticKind.UNRESOLVED_TARGET)
    assert [(d.call_address, d.message) for d in unresolved] == [
        (0x1080, "no HandleProtocol call found at the reported call site")
    ]


def test_owner_is_resolved_through_host(directory) -> None:
    function = make_function(0x1000, locate_protocol(0x1010, AddressOf(Var(interface))))
    host = FakeHost([function], owners={0x1010: 0x1000})

    report = apply_all_types_for_interfaces(
        host, directory, [record(0x1010, None), record(0x7777, None)]
    )

    assert host.writes == [(0x1000, "Interface", PCI_IO_TYPE)]
    orphans = report.of_kind(DiagnosticKind.NO_OWNER_FUNCTION)
    assert [(d.function_address, d.call_address) for d in orphans] == [(None, 0x7777)]


def test_group_records_keeps_input_order(directory) -> None:
    host = FakeHost(owners={0x30: 0x3000})
    driver = Driver(host, directory)
    records = [record(0x20, 0x2000), record(0x10, 0x1000), record(0x30, None), record(0x21, 0x2000)]

    groups = driver.group_records(records, RetypingReport())

    assert list(groups) == [0x2000, 0x1000, 0x3000]
    assert [r.call_address for r in groups[0x2000]] == [0x20, 0x21]
    assert groups[0x3000][0].owner_function_address == 0x3000


def test_cancellation_stops_between_functions(directory) -> None:
    functions, records = two_functions()
    host = FakeHost(functions)
    polls = []

    def is_cancelled():
        polls.append(True)
        return len(polls) > 1

    with pytest.raises(RetypingCancelled):
        apply_all_types_for_interfaces(host, directory, records, is_cancelled=is_cancelled)
    assert host.decompiled == [0x1000]


def test_custom_tables_limit_the_services(directory) -> None:
    functions, records = two_functions()
    host = FakeHost(functions)
    boot, _ = default_tables()

    report = Driver(host, directory, tables=[boot]).run(records)

    assert (0x1000, "SmmVariable", SMM_VARIABLE_TYPE) not in host.writes
    assert [d.call_address for d in report.of_kind(DiagnosticKind.UNRESOLVED_TARGET)] == [0x1020]


def test_empty_table_retypes_nothing(directory) -> None:
    functions, records = two_functions()
    host = FakeHost(functions)

    report = Driver(host, directory, tables=[ServiceDescriptorTableBuilder().build()]).run(records)

    assert host.writes == []
    assert report.counts() == {DiagnosticKind.UNRESOLVED_TARGET: 3}


def test_summary(directory) -> None:
    functions, records = two_functions()
    host = FakeHost(functions[1:])

    report = apply_all_types_for_interfaces(host, directory, records)

    assert report.summary() == [
        "Statistics: Number of processed functions: 1",
        "Statistics: Number of retyped variables: 1",
        "Statistics: Number of sites with decompilation failed: 1",
    ]
