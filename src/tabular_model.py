"""
Tabular Model Objects and Repository
Entities of a tabular semantic model (tables, measures, calculation groups)
and the narrow repository interface the batch operations work against.

Backing stores:
  - InMemoryModelRepository: plain Python objects (tests, offline snapshots)
  - TOMModelRepository (powerbi_tom_connector): live Power BI Desktop model
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ModelError(Exception):
    """Raised when the model cannot satisfy a repository operation"""


def new_lineage_tag() -> str:
    """Generate a fresh identity token for a model object"""
    return str(uuid.uuid4())


@dataclass
class Measure:
    """A named calculation owned by exactly one table"""
    name: str
    table_name: str
    expression: str = ""
    display_folder: str = ""
    format_string: str = ""
    is_hidden: bool = False
    description: str = ""
    lineage_tag: str = field(default_factory=new_lineage_tag)
    # Host object backing this measure (TOM Measure), None for in-memory models
    handle: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'expression': self.expression,
            'display_folder': self.display_folder,
            'format_string': self.format_string,
            'is_hidden': self.is_hidden,
            'description': self.description,
            'lineage_tag': self.lineage_tag
        }


@dataclass
class CalculationItem:
    """One named calculation template within a calculation group"""
    name: str
    expression: str = ""
    format_string_expression: str = ""
    ordinal: int = 0
    handle: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'expression': self.expression,
            'format_string_expression': self.format_string_expression,
            'ordinal': self.ordinal
        }


@dataclass
class Table:
    """Named container of measures and columns"""
    name: str
    measures: List[Measure] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)

    @property
    def is_calculation_group(self) -> bool:
        return False

    def has_column(self, column_name: str) -> bool:
        return column_name in self.columns

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'columns': list(self.columns),
            'measures': [m.to_dict() for m in self.measures]
        }


@dataclass
class CalculationGroupTable(Table):
    """Table that owns a calculation group"""
    calculation_items: List[CalculationItem] = field(default_factory=list)

    @property
    def is_calculation_group(self) -> bool:
        return True

    def find_item(self, item_name: str) -> Optional[CalculationItem]:
        for item in self.calculation_items:
            if item.name == item_name:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['calculation_items'] = [i.to_dict() for i in self.calculation_items]
        return data


class ModelRepository(ABC):
    """
    Narrow interface over a tabular model

    The measure generator and the rename propagator only talk to the model
    through these operations. Every mutation takes effect immediately and is
    visible to subsequent reads.
    """

    @abstractmethod
    def tables(self) -> List[Table]:
        """All tables, calculation group tables included, in host order"""

    @abstractmethod
    def create_measure(self, table_name: str, name: str, expression: str,
                       display_folder: str = "", format_string: str = "",
                       description: str = "") -> Measure:
        """Add a new measure to a table"""

    @abstractmethod
    def update_measure(self, measure: Measure, expression: Optional[str] = None,
                       display_folder: Optional[str] = None,
                       format_string: Optional[str] = None) -> Measure:
        """Change measure properties in place (identity is preserved)"""

    @abstractmethod
    def rename_measure(self, measure: Measure, new_name: str) -> Measure:
        """Rename a measure in place"""

    @abstractmethod
    def delete_measure(self, measure: Measure) -> None:
        """Remove a measure from its table"""

    @abstractmethod
    def update_calculation_item(self, table_name: str, item: CalculationItem,
                                expression: Optional[str] = None,
                                format_string_expression: Optional[str] = None) -> CalculationItem:
        """Change calculation item expressions in place"""

    def measures(self) -> List[Measure]:
        """All measures of the model, in table order"""
        result = []
        for table in self.tables():
            result.extend(table.measures)
        return result

    def calculation_groups(self) -> List[CalculationGroupTable]:
        return [t for t in self.tables() if t.is_calculation_group]

    def find_table(self, name: str) -> Optional[Table]:
        for table in self.tables():
            if table.name == name:
                return table
        return None

    def find_measure(self, name: str, include_hidden: bool = False) -> Optional[Measure]:
        """
        Find a measure by exact name anywhere in the model

        Args:
            name: Measure name
            include_hidden: Whether hidden measures count as a match

        Returns:
            The first matching measure, or None
        """
        for measure in self.measures():
            if measure.name != name:
                continue
            if measure.is_hidden and not include_hidden:
                continue
            return measure
        return None

    def get_model_summary(self) -> Dict[str, Any]:
        """Get a summary of the model"""
        tables = self.tables()
        return {
            'table_count': len(tables),
            'total_measures': sum(len(t.measures) for t in tables),
            'calculation_groups': [t.name for t in tables if t.is_calculation_group],
            'tables': [
                {
                    'name': t.name,
                    'measure_count': len(t.measures),
                    'column_count': len(t.columns),
                    'is_calculation_group': t.is_calculation_group
                }
                for t in tables
            ]
        }


class InMemoryModelRepository(ModelRepository):
    """
    Model held in plain Python objects

    Usage:
        repo = InMemoryModelRepository()
        repo.add_table(Table(name="Sales", columns=["Amount"]))
        repo.create_measure("Sales", "Sales", "SUM(Sales[Amount])")
    """

    def __init__(self, tables: Optional[List[Table]] = None):
        self._tables: Dict[str, Table] = {}
        for table in tables or []:
            self.add_table(table)

    def add_table(self, table: Table) -> Table:
        if table.name in self._tables:
            raise ModelError(f"Table '{table.name}' already exists")
        for measure in table.measures:
            measure.table_name = table.name
        self._tables[table.name] = table
        return table

    def tables(self) -> List[Table]:
        return list(self._tables.values())

    def find_table(self, name: str) -> Optional[Table]:
        return self._tables.get(name)

    def _owning_table(self, measure: Measure) -> Table:
        table = self._tables.get(measure.table_name)
        if table is None or not any(m is measure for m in table.measures):
            raise ModelError(f"Measure '{measure.name}' is not part of this model")
        return table

    def create_measure(self, table_name: str, name: str, expression: str,
                       display_folder: str = "", format_string: str = "",
                       description: str = "") -> Measure:
        table = self._tables.get(table_name)
        if table is None:
            raise ModelError(f"Table '{table_name}' not found")

        measure = Measure(
            name=name,
            table_name=table_name,
            expression=expression,
            display_folder=display_folder,
            format_string=format_string,
            description=description
        )
        table.measures.append(measure)
        logger.debug(f"Created measure: '{name}' in table '{table_name}'")
        return measure

    def update_measure(self, measure: Measure, expression: Optional[str] = None,
                       display_folder: Optional[str] = None,
                       format_string: Optional[str] = None) -> Measure:
        self._owning_table(measure)
        if expression is not None:
            measure.expression = expression
        if display_folder is not None:
            measure.display_folder = display_folder
        if format_string is not None:
            measure.format_string = format_string
        return measure

    def rename_measure(self, measure: Measure, new_name: str) -> Measure:
        self._owning_table(measure)
        measure.name = new_name
        return measure

    def delete_measure(self, measure: Measure) -> None:
        table = self._owning_table(measure)
        table.measures = [m for m in table.measures if m is not measure]
        logger.debug(f"Deleted measure: '{measure.name}' from table '{table.name}'")

    def update_calculation_item(self, table_name: str, item: CalculationItem,
                                expression: Optional[str] = None,
                                format_string_expression: Optional[str] = None) -> CalculationItem:
        table = self._tables.get(table_name)
        if table is None or not table.is_calculation_group:
            raise ModelError(f"Calculation group '{table_name}' not found")
        if not any(i is item for i in table.calculation_items):
            raise ModelError(f"Calculation item '{item.name}' is not part of '{table_name}'")

        if expression is not None:
            item.expression = expression
        if format_string_expression is not None:
            item.format_string_expression = format_string_expression
        return item

    # ==================== SNAPSHOTS ====================

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InMemoryModelRepository":
        """
        Build a model from a snapshot dictionary

        Expected shape:
            {"tables": [{"name": ..., "columns": [...], "measures": [...],
                         "calculation_items": [...]}]}

        A table with a "calculation_items" key becomes a calculation group.
        """
        repo = cls()
        for table_data in data.get('tables') or []:
            name = table_data.get('name')
            if not name:
                raise ModelError("Every table in a model snapshot needs a name")

            measures = [
                Measure(
                    name=m['name'],
                    table_name=name,
                    expression=m.get('expression') or "",
                    display_folder=m.get('display_folder') or "",
                    format_string=m.get('format_string') or "",
                    is_hidden=bool(m.get('is_hidden', False)),
                    description=m.get('description') or "",
                    lineage_tag=m.get('lineage_tag') or new_lineage_tag()
                )
                for m in table_data.get('measures') or []
            ]
            columns = list(table_data.get('columns') or [])

            if 'calculation_items' in table_data:
                items = [
                    CalculationItem(
                        name=i['name'],
                        expression=i.get('expression') or "",
                        format_string_expression=i.get('format_string_expression') or "",
                        ordinal=i.get('ordinal', ordinal)
                    )
                    for ordinal, i in enumerate(table_data.get('calculation_items') or [])
                ]
                table = CalculationGroupTable(name=name, measures=measures, columns=columns,
                                              calculation_items=items)
            else:
                table = Table(name=name, measures=measures, columns=columns)

            repo.add_table(table)
        return repo

    def to_dict(self) -> Dict[str, Any]:
        return {'tables': [t.to_dict() for t in self._tables.values()]}
