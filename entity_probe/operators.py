from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


class OperatorFamily(str, Enum):
    comparison = "Comparison"
    text = "Text"
    defined = "Null / Defined"
    list = "List"
    collection_size = "Collection Size"
    numeric = "Numeric"


@dataclass(frozen=True, slots=True)
class OperatorSpec:
    code: str
    label: str
    family: OperatorFamily
    takes_value: bool = True
    two_values: bool = False
    multiline: bool = False
    hint: str = ""


_CATALOG: tuple[OperatorSpec, ...] = (
    OperatorSpec("EQ", "= Equals", OperatorFamily.comparison, hint="Exact match. Prefix value with ~! to negate."),
    OperatorSpec("NEQ", "≠ Not Equals", OperatorFamily.comparison),
    OperatorSpec("GR", "> Greater Than", OperatorFamily.comparison),
    OperatorSpec("GREQ", "≥ Greater or Equal", OperatorFamily.comparison),
    OperatorSpec("LE", "< Less Than", OperatorFamily.comparison),
    OperatorSpec("LEQ", "≤ Less or Equal", OperatorFamily.comparison),
    OperatorSpec(
        "BETWEENINCL",
        "↔ Between (inclusive)",
        OperatorFamily.comparison,
        two_values=True,
        hint="Comma-separated: from,to",
    ),
    OperatorSpec("CONTAINS", "⊃ Contains", OperatorFamily.text, hint="LIKE %value%. Space-separated terms = AND."),
    OperatorSpec("NOTCONTAINS", "⊅ Not Contains", OperatorFamily.text),
    OperatorSpec("STARTSWITH", "Starts With", OperatorFamily.text),
    OperatorSpec("NOTSTARTSWITH", "Not Starts With", OperatorFamily.text),
    OperatorSpec("ENDSWITH", "Ends With", OperatorFamily.text),
    OperatorSpec(
        "DEFINED",
        "Is Defined",
        OperatorFamily.defined,
        takes_value=False,
        hint="NOT NULL and not empty string",
    ),
    OperatorSpec(
        "NOTDEFINED",
        "Not Defined",
        OperatorFamily.defined,
        takes_value=False,
        hint="IS NULL or empty string",
    ),
    OperatorSpec("NOTDEFINEDORZERO", "Not Defined or Zero", OperatorFamily.defined, takes_value=False),
    OperatorSpec("INCOMMALIST", "∈ In (comma-separated)", OperatorFamily.list, hint="Values separated by commas"),
    OperatorSpec(
        "INLIST",
        "∈ In (line-separated)",
        OperatorFamily.list,
        multiline=True,
        hint="Values separated by newlines",
    ),
    OperatorSpec(
        "NOTINLIST",
        "∉ Not In (line-separated)",
        OperatorFamily.list,
        multiline=True,
        hint="Values separated by newlines",
    ),
    OperatorSpec(
        "HASEQELEMENTS",
        "Has = N Elements",
        OperatorFamily.collection_size,
        hint="Count of related items. 0 = empty.",
    ),
    OperatorSpec("HASNEQELEMENTS", "Has ≠ N Elements", OperatorFamily.collection_size),
    OperatorSpec("NUMGR", "> Numeric Greater", OperatorFamily.numeric),
    OperatorSpec("NUMGREQ", "≥ Numeric Greater or Equal", OperatorFamily.numeric),
    OperatorSpec("NUMLE", "< Numeric Less", OperatorFamily.numeric),
    OperatorSpec("NUMLEQ", "≤ Numeric Less or Equal", OperatorFamily.numeric),
)

OPERATORS = MappingProxyType({operator.code: operator for operator in _CATALOG})
NO_VALUE_OPERATORS = frozenset(operator.code for operator in _CATALOG if not operator.takes_value)
DEFAULT_OPERATOR = "EQ"


def get_operator(code: str) -> OperatorSpec:
    try:
        return OPERATORS[code]
    except KeyError:
        raise KeyError(f"Unknown filter operator: {code!r}") from None


def operators_by_family() -> dict[OperatorFamily, list[OperatorSpec]]:
    groups: dict[OperatorFamily, list[OperatorSpec]] = {family: [] for family in OperatorFamily}
    for operator in _CATALOG:
        groups[operator.family].append(operator)
    return groups
