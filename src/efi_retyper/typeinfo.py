"""
A small, closed model of the decompiler's type system together with the introspection helpers the
retyping pass relies on.

Host adapters translate their native types into these dataclasses, so every decision about arrays,
pointers and structure layouts is made against the same vocabulary.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from . import log
from .errors import FieldNotFound, TypeIntrospectionFailed


###################################################################################################
#    TYPE MODEL                                                                                   #
###################################################################################################
@dataclass(frozen=True)
class Primitive:
    """An integer, floating point, boolean or character type."""

    name: str
    size: int
    kind: str = "int"


@dataclass(frozen=True)
class Void:
    name: str = "void"


@dataclass(frozen=True)
class Pointer:
    target: "TypeInfo"


@dataclass(frozen=True)
class Array:
    # element is None when the host could not report the array details
    element: Optional["TypeInfo"]
    count: Optional[int] = None


@dataclass(frozen=True)
class Field:
    name: str
    type: "TypeInfo"
    # member offsets are stored in bits, the way the decompiler reports them
    bit_offset: int


@dataclass(frozen=True)
class Struct:
    """
    A user-defined structure. ``fields`` is None for forward declarations whose layout is unknown.
    """

    name: str
    fields: Optional[Tuple[Field, ...]] = None

    def find_field(self, name: str) -> Optional[Field]:
        if self.fields is None:
            return None
        for member in self.fields:
            if member.name == name:
                return member
        return None


@dataclass(frozen=True)
class FunctionType:
    name: str = "code"


TypeInfo = Union[Primitive, Void, Pointer, Array, Struct, FunctionType]


###################################################################################################
#    HELPER FUNCTIONS                                                                             #
###################################################################################################
def is_primitive(typ: TypeInfo) -> bool:
    """Return True for the "plain old data" leaves of the model, including void."""
    return isinstance(typ, (Primitive, Void))


def remove_pointer(typ: TypeInfo) -> TypeInfo:
    """
    Remove one layer of indirection.

    Raises:
        TypeIntrospectionFailed: If the type is not a pointer.
    """
    if not isinstance(typ, Pointer):
        raise TypeIntrospectionFailed(f"{type_name(typ)} is not a pointer")
    return typ.target


def make_pointer(typ: TypeInfo, depth: int = 1) -> TypeInfo:
    for _ in range(depth):
        typ = Pointer(typ)
    return typ


def pointee_name(typ: Optional[TypeInfo]) -> Optional[str]:
    """
    Return the structure name a pointer type refers to, e.g. "EFI_BOOT_SERVICES" for
    "EFI_BOOT_SERVICES *", or None for anything else.
    """
    if isinstance(typ, Pointer) and isinstance(typ.target, Struct):
        return typ.target.name
    return None


def type_name(typ: Optional[TypeInfo]) -> str:
    """
    Render a type in C declarator style, e.g. "int32 **[10]" or "EFI_PCI_IO_PROTOCOL *".

    Parameters:
        typ (TypeInfo | None): The type to render.

    Returns:
        str: A printable name; "<unknown>" when no type is available.
    """
    if typ is None:
        return "<unknown>"
    if isinstance(typ, (Primitive, Void, Struct, FunctionType)):
        return typ.name

    if isinstance(typ, Array):
        count = "" if typ.count is None else str(typ.count)
        return f"{type_name(typ.element)}[{count}]"

    # collect the pointer layers wrapped around the innermost non-pointer type
    stars = 0
    while isinstance(typ, Pointer):
        stars += 1
        typ = typ.target
    return f"{type_name(typ)} {'*' * stars}"


###################################################################################################
#    INTROSPECTION                                                                                #
###################################################################################################
def field_offset(struct_type: TypeInfo, field_name: str) -> int:
    """
    Given a user-defined structure type, look up the specified member by its name and retrieve its
    byte offset.

    Parameters:
        struct_type (TypeInfo): The structure to inspect.
        field_name (str): The member to look up.

    Returns:
        int: The member's offset in bytes (its bit offset divided by 8, truncated).

    Raises:
        TypeIntrospectionFailed: If the type is not a structure or its layout is unknown.
        FieldNotFound: If the structure has no member of that name.
    """
    if not isinstance(struct_type, Struct) or struct_type.fields is None:
        name = type_name(struct_type)
        log.error(f"Could not retrieve structure details for {name}")
        raise TypeIntrospectionFailed(f"no structure details available for {name}")

    member = struct_type.find_field(field_name)
    if member is None:
        log.error(f"Could not find UDT member {struct_type.name}::{field_name}")
        raise FieldNotFound(struct_type.name, field_name)

    return member.bit_offset >> 3


def is_primitive_array(typ: Optional[TypeInfo], max_pointer_depth: int = 0) -> bool:
    """
    Detect arrays of primitive types, or of pointers to primitive types.

    The decompiler sometimes turns a single stack slot into an array, so a value whose address is
    handed to a protocol lookup shows up as e.g. "void *v5[2]" rather than as a variable. The
    maximum pointer depth decides how many pointer layers an element may carry: at depth 1,
    "int *[10]" is accepted, at depth 2, "int **[10]" is accepted as well.

    Parameters:
        typ (TypeInfo | None): The type to check.
        max_pointer_depth (int): Number of pointer layers that may be removed from the element.

    Returns:
        bool: True if typ is an array of primitives up to the given pointer depth.
    """
    # if it's not an array, we're done
    if not isinstance(typ, Array):
        return False

    # an array without element details cannot be judged
    if typ.element is None:
        log.error(f"{type_name(typ)}: can't get array details, despite being an array")
        return False

    element = typ.element

    # start off with depth + 1, so the loop executes at least once
    remaining = max_pointer_depth + 1
    while remaining > 0:
        log.detail(f"is_primitive_array[{remaining}]: element type = {type_name(element)}")

        if is_primitive(element):
            return True

        remaining -= 1
        if remaining > 0:
            # remove one layer of indirection, unless there is none left to remove
            if not isinstance(element, Pointer):
                return False
            element = element.target

    # the element did not reach a primitive within the allowed pointer depth
    return False
