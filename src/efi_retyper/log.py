"""
Console printing helpers, each gated by its verbosity flag in :mod:`efi_retyper.config`.

The flags are looked up on every call so they can be flipped while a run is in progress.
"""
from __future__ import annotations

from . import config


def detail(msg: str) -> None:
    """
    Print a per-site trace line, e.g. which table slot a call matched, if VERBOSE_DETAIL is on.

    Parameters:
        msg (str): The trace line.
    """
    if config.VERBOSE_DETAIL:
        print(f"[DETAIL] {msg}")


def debug(msg: str) -> None:
    """
    Print a retyping decision or diagnostic if VERBOSE_DEBUG is on.

    Parameters:
        msg (str): The decision or diagnostic text.
    """
    if config.VERBOSE_DEBUG:
        print(f"[DEBUG] {msg}")


def info(msg: str) -> None:
    """
    Print run progress and the closing statistics if VERBOSE_INFO is on.

    Parameters:
        msg (str): The progress line.
    """
    if config.VERBOSE_INFO:
        print(f"[INFO] {msg}")


def warning(msg: str) -> None:
    """
    Print a problem with the inputs or the program's types that the run works around, if
    VERBOSE_WARNING is on.

    Parameters:
        msg (str): Description of the problem.
    """
    if config.VERBOSE_WARNING:
        print(f"[WARNING] {msg}")


def error(msg: str) -> None:
    """
    Print a failed lookup or a type update the host refused, if VERBOSE_ERROR is on.

    Parameters:
        msg (str): Description of the failure.
    """
    if config.VERBOSE_ERROR:
        print(f"[ERROR] {msg}")
