"""
The decompiled function representation walked by the retyping visitor.

Node kinds form a closed set of dataclasses. Host adapters lift whatever their decompiler produces
into these nodes; shapes they cannot express become :class:`Opaque` nodes, which are still walked
but never match a pattern.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Tuple, Union
from uuid import UUID

from .typeinfo import TypeInfo, type_name


###################################################################################################
#    VARIABLES                                                                                    #
###################################################################################################
@dataclass(frozen=True)
class LocalVariable:
    """
    A local variable slot of one decompiled function.

    ``handle`` is the host's own object for the variable (e.g. a Ghidra HighSymbol) and is passed
    back to the host untouched when the variable gets retyped.
    """

    name: str
    type: Optional[TypeInfo] = None
    handle: Any = field(default=None, compare=False, repr=False)


###################################################################################################
#    EXPRESSIONS                                                                                  #
###################################################################################################
@dataclass(frozen=True)
class Const:
    value: int
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class GuidLiteral:
    """A GUID value the decompiler embedded directly at the call site."""

    guid: UUID
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class GlobalRef:
    """A reference to a global object, e.g. a GUID constant in the data section."""

    address: int
    name: str = ""
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class Var:
    variable: LocalVariable

    @property
    def type(self) -> Optional[TypeInfo]:
        return self.variable.type


@dataclass(frozen=True)
class AddressOf:
    operand: "Expr"
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class Deref:
    operand: "Expr"
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class Cast:
    operand: "Expr"
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class Add:
    left: "Expr"
    right: "Expr"
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class MemberPtr:
    """``base->member``, where ``offset`` is the member's byte offset within the pointee."""

    base: "Expr"
    offset: int
    name: str = ""
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class Index:
    """``base[index]``"""

    base: "Expr"
    index: "Expr"
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class Call:
    address: int
    target: "Expr"
    args: Tuple["Expr", ...] = ()
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class Assign:
    target: "Expr"
    value: "Expr"
    type: Optional[TypeInfo] = None


@dataclass(frozen=True)
class Opaque:
    """Any operation the model does not name; its operands are still walked."""

    text: str
    operands: Tuple["Expr", ...] = ()
    type: Optional[TypeInfo] = None


Expr = Union[
    Const, GuidLiteral, GlobalRef, Var, AddressOf, Deref, Cast, Add, MemberPtr, Index, Call,
    Assign, Opaque,
]


###################################################################################################
#    STATEMENTS                                                                                   #
###################################################################################################
@dataclass(frozen=True)
class ExprStmt:
    expr: Expr


@dataclass(frozen=True)
class Block:
    body: Tuple["Stmt", ...] = ()


@dataclass(frozen=True)
class If:
    cond: Expr
    then: Block
    otherwise: Optional[Block] = None


@dataclass(frozen=True)
class Loop:
    cond: Optional[Expr]
    body: Block


@dataclass(frozen=True)
class Return:
    value: Optional[Expr] = None


Stmt = Union[ExprStmt, Block, If, Loop, Return]
Node = Union[Expr, Stmt]


@dataclass(frozen=True)
class Function:
    """The decompiled body of one function, owned by the host for the duration of a pass."""

    address: int
    body: Block
    name: str = ""
    variables: Tuple[LocalVariable, ...] = ()


###################################################################################################
#    TRAVERSAL                                                                                    #
###################################################################################################
def children(node: Node) -> Tuple[Node, ...]:
    """Return the direct sub-nodes of a node, in source order."""
    if isinstance(node, (Const, GuidLiteral, GlobalRef, Var)):
        return ()
    if isinstance(node, (AddressOf, Deref, Cast)):
        return (node.operand,)
    if isinstance(node, Add):
        return (node.left, node.right)
    if isinstance(node, MemberPtr):
        return (node.base,)
    if isinstance(node, Index):
        return (node.base, node.index)
    if isinstance(node, Call):
        return (node.target, *node.args)
    if isinstance(node, Assign):
        return (node.target, node.value)
    if isinstance(node, Opaque):
        return node.operands
    if isinstance(node, ExprStmt):
        return (node.expr,)
    if isinstance(node, Block):
        return node.body
    if isinstance(node, If):
        return (node.cond, node.then) if node.otherwise is None else (
            node.cond, node.then, node.otherwise
        )
    if isinstance(node, Loop):
        return (node.body,) if node.cond is None else (node.cond, node.body)
    if isinstance(node, Return):
        return () if node.value is None else (node.value,)
    raise TypeError(f"not an IR node: {node!r}")


def walk(node: Node) -> Iterator[Node]:
    """
    Yield ``node`` and all nodes below it, depth-first and in source order.

    The walk is iterative, so deeply nested expressions do not hit the recursion limit.
    """
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(children(current)))


def calls(node: Node) -> Iterator[Call]:
    for sub in walk(node):
        if isinstance(sub, Call):
            yield sub


def strip_casts(expr: Expr) -> Expr:
    while isinstance(expr, Cast):
        expr = expr.operand
    return expr


###################################################################################################
#    PRINTING                                                                                     #
###################################################################################################
def render(expr: Expr) -> str:
    """
    Get a printable, C-like string for an expression, used in diagnostics.
    """
    if isinstance(expr, Const):
        return hex(expr.value) if expr.value > 9 else str(expr.value)
    if isinstance(expr, GuidLiteral):
        return f"{{{expr.guid}}}"
    if isinstance(expr, GlobalRef):
        return expr.name or f"unk_{expr.address:X}"
    if isinstance(expr, Var):
        return expr.variable.name
    if isinstance(expr, AddressOf):
        return f"&{render(expr.operand)}"
    if isinstance(expr, Deref):
        return f"*{render(expr.operand)}"
    if isinstance(expr, Cast):
        return f"({type_name(expr.type)}){render(expr.operand)}"
    if isinstance(expr, Add):
        return f"({render(expr.left)} + {render(expr.right)})"
    if isinstance(expr, MemberPtr):
        return f"{render(expr.base)}->{expr.name or f'field_{expr.offset:x}'}"
    if isinstance(expr, Index):
        return f"{render(expr.base)}[{render(expr.index)}]"
    if isinstance(expr, Call):
        return f"{render(expr.target)}({', '.join(render(arg) for arg in expr.args)})"
    if isinstance(expr, Assign):
        return f"{render(expr.target)} = {render(expr.value)}"
    if isinstance(expr, Opaque):
        if not expr.operands:
            return expr.text
        return f"{expr.text}({', '.join(render(arg) for arg in expr.operands)})"
    raise TypeError(f"not an IR expression: {expr!r}")
