"""
Power BI TOM (Tabular Object Model) Connector
Exposes a live Power BI Desktop model as a ModelRepository so the measure
generator and rename propagator can run against it.
Uses Microsoft.AnalysisServices.Tabular for model modifications
"""
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from tabular_model import (
    CalculationGroupTable,
    CalculationItem,
    Measure,
    ModelError,
    ModelRepository,
    Table,
    new_lineage_tag,
)

logger = logging.getLogger(__name__)

# Find and load TOM DLLs
def _find_tom_dll() -> Optional[Path]:
    """Find Microsoft.AnalysisServices.Tabular.dll"""
    possible_paths = [
        # Power BI Desktop installation (preferred)
        Path(r"C:\Program Files\Microsoft Power BI Desktop\bin"),
        Path(os.path.expandvars(r"%LOCALAPPDATA%\Microsoft\Power BI Desktop\bin")),
        # SQL Server installations
        Path(r"C:\Program Files\Microsoft SQL Server\160\SDK\Assemblies"),
        Path(r"C:\Program Files\Microsoft SQL Server\150\SDK\Assemblies"),
        Path(r"C:\Program Files (x86)\Microsoft SQL Server\160\SDK\Assemblies"),
    ]

    extra = os.getenv("TOM_DLL_PATH")
    if extra:
        possible_paths.insert(0, Path(extra))

    for path in possible_paths:
        if path.exists():
            tabular_dll = path / "Microsoft.AnalysisServices.Tabular.dll"
            if tabular_dll.exists():
                return path
            for dll in path.glob("**/Microsoft.AnalysisServices.Tabular.dll"):
                return dll.parent

    return None


# Initialize TOM
_tom_path = _find_tom_dll()
_tom_available = False
TOM = None

if _tom_path:
    path_str = str(_tom_path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)
    if path_str not in os.environ.get('PATH', ''):
        os.environ['PATH'] = path_str + os.pathsep + os.environ.get('PATH', '')

    try:
        import clr
        clr.AddReference("Microsoft.AnalysisServices.Tabular")
        import Microsoft.AnalysisServices.Tabular as TOM
        _tom_available = True
        logger.info(f"Loaded TOM from: {_tom_path}")
    except Exception as e:
        logger.warning(f"Failed to load TOM: {e}")
else:
    logger.warning("TOM DLL not found - live model operations unavailable")


@dataclass
class OperationResult:
    """Result of a connector operation"""
    success: bool
    message: str
    details: Optional[Dict[str, Any]] = None


class TOMModelRepository(ModelRepository):
    """
    ModelRepository over a connected TOM Model

    Each read builds fresh Measure / CalculationItem objects whose `handle`
    points at the TOM object; mutations write through to the handle.
    """

    def __init__(self, model):
        self.model = model

    def _measure(self, tom_table, tom_measure) -> Measure:
        return Measure(
            name=tom_measure.Name,
            table_name=tom_table.Name,
            expression=tom_measure.Expression or "",
            display_folder=tom_measure.DisplayFolder or "",
            format_string=tom_measure.FormatString or "",
            is_hidden=bool(tom_measure.IsHidden),
            description=tom_measure.Description or "",
            lineage_tag=tom_measure.LineageTag or "",
            handle=tom_measure
        )

    def _calculation_item(self, tom_item) -> CalculationItem:
        format_definition = tom_item.FormatStringDefinition
        return CalculationItem(
            name=tom_item.Name,
            expression=tom_item.Expression or "",
            format_string_expression=(format_definition.Expression or "") if format_definition else "",
            ordinal=tom_item.Ordinal,
            handle=tom_item
        )

    def tables(self) -> List[Table]:
        tables = []
        for tom_table in self.model.Tables:
            measures = [self._measure(tom_table, m) for m in tom_table.Measures]
            columns = [c.Name for c in tom_table.Columns]

            if tom_table.CalculationGroup is not None:
                items = [self._calculation_item(i) for i in tom_table.CalculationGroup.CalculationItems]
                tables.append(CalculationGroupTable(name=tom_table.Name, measures=measures,
                                                    columns=columns, calculation_items=items))
            else:
                tables.append(Table(name=tom_table.Name, measures=measures, columns=columns))
        return tables

    def find_measure(self, name: str, include_hidden: bool = False) -> Optional[Measure]:
        """Find a measure by name using the TOM collection lookup of each table"""
        for tom_table in self.model.Tables:
            tom_measure = tom_table.Measures.Find(name)
            if tom_measure is None:
                continue
            if tom_measure.IsHidden and not include_hidden:
                continue
            return self._measure(tom_table, tom_measure)
        return None

    def _tom_table(self, table_name: str):
        tom_table = self.model.Tables.Find(table_name)
        if tom_table is None:
            raise ModelError(f"Table '{table_name}' not found")
        return tom_table

    @staticmethod
    def _handle(obj):
        if obj.handle is None:
            raise ModelError(f"'{obj.name}' is not bound to the connected model")
        return obj.handle

    def create_measure(self, table_name: str, name: str, expression: str,
                       display_folder: str = "", format_string: str = "",
                       description: str = "") -> Measure:
        tom_table = self._tom_table(table_name)

        tom_measure = TOM.Measure()
        tom_measure.Name = name
        tom_measure.Expression = expression
        tom_measure.LineageTag = new_lineage_tag()
        if display_folder:
            tom_measure.DisplayFolder = display_folder
        if format_string:
            tom_measure.FormatString = format_string
        if description:
            tom_measure.Description = description

        tom_table.Measures.Add(tom_measure)
        return self._measure(tom_table, tom_measure)

    def update_measure(self, measure: Measure, expression: Optional[str] = None,
                       display_folder: Optional[str] = None,
                       format_string: Optional[str] = None) -> Measure:
        tom_measure = self._handle(measure)
        if expression is not None:
            tom_measure.Expression = expression
            measure.expression = expression
        if display_folder is not None:
            tom_measure.DisplayFolder = display_folder
            measure.display_folder = display_folder
        if format_string is not None:
            tom_measure.FormatString = format_string
            measure.format_string = format_string
        return measure

    def rename_measure(self, measure: Measure, new_name: str) -> Measure:
        tom_measure = self._handle(measure)
        tom_measure.Name = new_name
        measure.name = new_name
        return measure

    def delete_measure(self, measure: Measure) -> None:
        tom_measure = self._handle(measure)
        self._tom_table(measure.table_name).Measures.Remove(tom_measure)
        measure.handle = None

    def update_calculation_item(self, table_name: str, item: CalculationItem,
                                expression: Optional[str] = None,
                                format_string_expression: Optional[str] = None) -> CalculationItem:
        tom_item = self._handle(item)
        if expression is not None:
            tom_item.Expression = expression
            item.expression = expression
        if format_string_expression is not None:
            if tom_item.FormatStringDefinition is None:
                tom_item.FormatStringDefinition = TOM.FormatStringDefinition()
            tom_item.FormatStringDefinition.Expression = format_string_expression
            item.format_string_expression = format_string_expression
        return item


class PowerBITOMConnector:
    """
    TOM Connector for Power BI Desktop

    Provides:
    - Connection to a local Power BI Desktop instance by port
    - A ModelRepository over the connected model
    - Save / discard of pending changes
    """

    def __init__(self):
        """Initialize the TOM connector"""
        self.server = None
        self.database = None
        self.model = None
        self.current_port: Optional[int] = None
        self.connection_string: Optional[str] = None

    @staticmethod
    def is_available() -> bool:
        """Check if TOM is available"""
        return _tom_available

    def connect(self, port: int) -> bool:
        """
        Connect to Power BI Desktop instance via TOM

        Args:
            port: Port number of the Power BI Desktop instance

        Returns:
            True if connection successful
        """
        if not _tom_available:
            logger.error("TOM not available - cannot connect")
            return False

        try:
            self.current_port = port
            self.connection_string = f"localhost:{port}"

            self.server = TOM.Server()
            self.server.Connect(self.connection_string)

            # Power BI Desktop hosts exactly one database
            if self.server.Databases.Count > 0:
                self.database = self.server.Databases[0]
                self.model = self.database.Model
                logger.info(f"TOM connected to: {self.database.Name}")
                return True

            logger.error("No database found in Power BI Desktop")
            return False

        except Exception as e:
            logger.error(f"TOM connection failed: {e}")
            self.server = None
            self.database = None
            self.model = None
            return False

    def disconnect(self):
        """Disconnect from the model"""
        if self.server:
            try:
                self.server.Disconnect()
            except Exception as e:
                logger.warning(f"TOM disconnect failed: {e}")
        self.server = None
        self.database = None
        self.model = None
        self.current_port = None

    def is_connected(self) -> bool:
        return self.model is not None

    def repository(self) -> TOMModelRepository:
        """Repository over the connected model"""
        if not self.is_connected():
            raise ModelError("Not connected - call connect() first")
        return TOMModelRepository(self.model)

    def save_changes(self) -> OperationResult:
        """Save pending changes to the model"""
        if not self.is_connected():
            return OperationResult(False, "Not connected")

        try:
            self.model.SaveChanges()
            logger.info("Changes saved successfully")
            return OperationResult(True, "Changes saved successfully")
        except Exception as e:
            logger.error(f"Failed to save changes: {e}")
            return OperationResult(False, f"Failed to save changes: {e}")

    def discard_changes(self) -> OperationResult:
        """Discard pending changes"""
        if not self.is_connected():
            return OperationResult(False, "Not connected")

        try:
            self.model.UndoLocalChanges()
            return OperationResult(True, "Changes discarded")
        except Exception as e:
            logger.error(f"Failed to discard changes: {e}")
            return OperationResult(False, f"Failed to discard changes: {e}")
