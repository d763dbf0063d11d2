"""
DAX Text Rendering
Builds the formula-language text used by the measure generator and the
reference forms matched by the rename propagator.

DAX Name Quoting Rules:
  - Table names with spaces, special chars, leading digits or reserved words
    MUST be wrapped in single quotes; an embedded ' is doubled
    - 'Sales Data'[Amount]   (spaces - MUST quote)
    - Sales[Amount]          (no quote needed)
  - Inside [...] an embedded ] is doubled
  - Inside "..." an embedded " is doubled
"""
from typing import Iterable

PERCENT_FORMAT_STRING = "#,##0.00 %;(#,##0.00 %)"

# Characters that require quoting in DAX table names
DAX_SPECIAL_CHARS = set(' \t\n\r\'\"[]{}().,;:!@#$%^&*+-=<>?/\\|`~')
DAX_RESERVED_WORDS = {'var', 'return', 'define', 'evaluate', 'measure', 'column', 'table',
                      'order', 'by', 'asc', 'desc', 'start', 'at', 'true', 'false',
                      'in', 'not', 'and', 'or', 'date', 'time', 'currency', 'boolean'}


def needs_dax_table_quoting(name: str) -> bool:
    """
    Check if a table name needs single quotes in a DAX expression

    Rules:
    - Names with spaces or special characters need quotes
    - Names starting with digits need quotes
    - Reserved words need quotes
    """
    if not name:
        return False

    if any(c in DAX_SPECIAL_CHARS for c in name):
        return True

    if name[0].isdigit():
        return True

    if name.lower() in DAX_RESERVED_WORDS:
        return True

    return False


def quote_dax_table_name(name: str) -> str:
    """Quote a table name if needed, escaping embedded single quotes"""
    if needs_dax_table_quoting(name):
        escaped = name.replace("'", "''")
        return f"'{escaped}'"
    return name


def fully_qualified_reference(table_name: str, object_name: str) -> str:
    """
    Build a Table[Object] reference

    >>> fully_qualified_reference("Sales", "Sales")
    'Sales[Sales]'
    >>> fully_qualified_reference("Sales Data", "Amount")
    "'Sales Data'[Amount]"
    """
    escaped = object_name.replace("]", "]]")
    return f"{quote_dax_table_name(table_name)}[{escaped}]"


def bracket_reference(name: str) -> str:
    """Unqualified measure reference as it appears in expressions: [Name]"""
    return f"[{name}]"


def quoted_literal(name: str) -> str:
    """String literal form used in value-equality checks against a selector column"""
    return f'"{name}"'


def escape_dax_string(value: str) -> str:
    return value.replace('"', '""')


def calculation_item_filter(group_name: str, column_name: str, item_name: str,
                            escape_quotes: bool = False) -> str:
    """Filter argument selecting one calculation item: '<group>'[<column>]= "<item>" """
    value = escape_dax_string(item_name) if escape_quotes else item_name
    return f"'{group_name}'[{column_name}]= \"{value}\""


def render_time_intelligence_expression(base_reference: str, group_name: str, column_name: str,
                                        item_name: str, escape_quotes: bool = False) -> str:
    """
    Render the filter-scoped evaluation of a base measure for one calculation item

    The output is a compatibility contract: reruns must produce byte-identical
    text for measures that were already generated.

    Args:
        base_reference: Fully qualified reference of the base measure, e.g. Sales[Sales]
        group_name: Calculation group table name
        column_name: Identifying column of the calculation group
        item_name: Calculation item name used as the filter value
        escape_quotes: Double embedded " in the item name. Off by default,
            historical output writes the item name verbatim.

    Returns:
        CALCULATE( <ref>, '<group>'[<column>]= "<item>" )
    """
    item_filter = calculation_item_filter(group_name, column_name, item_name, escape_quotes)
    return f"CALCULATE( {base_reference}, {item_filter} )"


def is_time_intelligence_expression(expression: str, group_name: str, column_name: str,
                                    item_name: str, escape_quotes: bool = False) -> bool:
    """Check whether an expression has the exact rendered shape for this calculation item"""
    item_filter = calculation_item_filter(group_name, column_name, item_name, escape_quotes)
    return expression.startswith("CALCULATE( ") and expression.endswith(f", {item_filter} )")


def is_percentage_item(item_name: str, indicators: Iterable[str]) -> bool:
    """Check whether a calculation item name contains any percentage indicator"""
    return any(indicator and indicator in item_name for indicator in indicators)
