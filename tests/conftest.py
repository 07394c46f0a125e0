"""Shared fixtures for the retyping tests."""

from __future__ import annotations

import pytest

from efi_retyper import config
from efi_retyper.records import GuidDirectory
from helpers import PCI_IO_GUID, SMM_VARIABLE_GUID


@pytest.fixture
def directory() -> GuidDirectory:
    return GuidDirectory(
        {
            PCI_IO_GUID: "EFI_PCI_IO_PROTOCOL_GUID",
            SMM_VARIABLE_GUID: "EFI_SMM_VARIABLE_PROTOCOL_GUID",
        }
    )


@pytest.fixture(autouse=True)
def quiet(monkeypatch):
    """Silence progress output and pin the retyping settings for every test."""
    monkeypatch.setattr(config, "VERBOSE_INFO", False)
    monkeypatch.setattr(config, "VERBOSE_WARNING", False)
    monkeypatch.setattr(config, "VERBOSE_ERROR", False)
    monkeypatch.setattr(config, "ARRAY_POINTER_DEPTH", 1)
    monkeypatch.setattr(config, "STRICT_GUID_CHECK", False)
