# Applies EFI protocol interface types to the local variables that receive them from
# HandleProtocol/LocateProtocol/OpenProtocol style service calls.
# @category UEFI
# @keybinding
# @menupath
# @toolbar
# @runtime PyGhidra
# -*- coding: utf-8 -*-
"""
Applies EFI protocol interface types to the local variables that receive them from service calls.

Expects a protocol discovery report (JSON records of call site, service and GUID) and a GUID
file mapping GUID names to GUIDs. Interface structures (e.g. EFI_PCI_IO_PROTOCOL) must already
be present in the program's data types, for example from an EFI data type archive.
"""
from __future__ import annotations

import pyghidra

from pathlib import Path
from typing import TYPE_CHECKING, cast, Any, Optional

if TYPE_CHECKING:
    from ghidra.ghidra_builtins import *                                        # type: ignore

from ghidra.program.model.listing import Program                                # type: ignore
from ghidra.util.exception import CancelledException                            # type: ignore
from ghidra.util.task import TaskMonitor                                        # type: ignore

from efi_retyper import config
from efi_retyper.descriptors import default_tables
from efi_retyper.driver import Driver
from efi_retyper.errors import RetypingCancelled
from efi_retyper.ghidra_host import GhidraHost
from efi_retyper.log import debug, info, warning
from efi_retyper.records import GuidDirectory, load_protocol_records

if _g := globals():

    def ask_file(title: str, approve: str) -> Any:
        return _g["askFile"](title, approve)

    currentProgram = cast(Program, _g["currentProgram"])
    monitor = cast(TaskMonitor, _g["monitor"])
else:
    raise RuntimeError("could not access ghidra scripting global variables")


def choose_input(setting: Optional[str], title: str) -> Path:
    """
    Return the configured input path, or ask the user for one.

    Parameters:
        setting (str | None): Path preset in the config module.
        title (str): Title of the file chooser.

    Returns:
        Path: The file to read.
    """
    if setting:
        return Path(setting)
    try:
        return Path(ask_file(title, "Open").getAbsolutePath())
    except CancelledException:
        raise RetypingCancelled


def main() -> None:
    """
    Load the inputs, check the service table layouts and retype every reported call site.
    """
    protocols_path = choose_input(config.PROTOCOLS_JSON, "Protocol discovery report")
    guids_path = choose_input(config.GUIDS_JSON, "GUID definitions")

    host = GhidraHost(currentProgram, monitor)
    try:
        info(f"Loading protocol records from {protocols_path}...")
        records = load_protocol_records(protocols_path)
        directory = GuidDirectory.from_json(guids_path, type_lookup=host.struct_type)
        info(f"Loaded {len(records)} protocol records and {len(directory)} GUIDs.")

        # the registered offsets must agree with the program's own service table layouts
        tables = default_tables()
        for table in tables:
            for name in table.names:
                struct_type = host.struct_type(name)
                if struct_type is None:
                    warning(f"Service table {name} is not a known data type in this program.")
                    continue
                mismatches = table.verify_layout(name, struct_type)
                if mismatches:
                    warning(
                        f"Service table {name} disagrees with the registered offsets of "
                        f"{', '.join(mismatches)}; calls through these members are matched by the "
                        f"registered offsets."
                    )

        report = Driver(host, directory, tables, is_cancelled=monitor.isCancelled).run(records)
    finally:
        host.dispose()

    for applied in report.applied:
        debug(str(applied))
    for diagnostic in report.diagnostics:
        debug(str(diagnostic))
    for line in report.summary():
        info(line)
    info("Finished.")


if pyghidra.started():
    try:
        main()
    except RetypingCancelled:
        pass
