"""
Time Intelligence Measure Generator
For each selected base measure and each calculation item of a calculation
group, creates (or updates) a derived measure:

    Sales YTD = CALCULATE( Sales[Sales], 'Time Intelligence'[Time Calculation]= "YTD" )

Reruns are idempotent: generated measures are found by name, then skipped,
updated in place (identity preserved) or deleted and recreated.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from audit import ChangeEventType, ChangeLogger, get_change_logger
from dax_templates import (
    PERCENT_FORMAT_STRING,
    fully_qualified_reference,
    is_percentage_item,
    is_time_intelligence_expression,
    render_time_intelligence_expression,
)
from tabular_model import (
    CalculationGroupTable,
    CalculationItem,
    Measure,
    ModelError,
    ModelRepository,
)

logger = logging.getLogger(__name__)


class CalculationGroupError(ModelError):
    """The configured calculation group cannot drive generation"""


@dataclass
class GeneratorConfig:
    """Options for one generator run"""
    calculation_group: str = "Time Intelligence"
    calculation_item_column: str = "Time Calculation"
    base_measures_display_folder: str = ""  # Prefix filter, empty disables it
    target_display_folder: str = "Time Intelligence"
    include_table_prefixes: List[str] = field(default_factory=list)  # Empty = all tables
    exclude_table_prefixes: List[str] = field(default_factory=list)
    exclude_name_substrings: List[str] = field(default_factory=list)
    percentage_indicators: List[str] = field(default_factory=lambda: ["%", "Percent", "Pct"])
    percentage_format_string: str = PERCENT_FORMAT_STRING
    group_by_calculation_item: bool = False  # False: <folder>\<measure>, True: <folder>\<item>
    overwrite_existing_measures: bool = False
    update_in_place: bool = True  # False: delete and recreate (new lineage tag)
    escape_item_quotes: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GenerationReport:
    """Outcome of a generator run"""
    success: bool = True
    message: str = ""
    aborted: bool = False
    base_measures: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    changes: List[Dict[str, str]] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)

    def summary(self) -> str:
        if self.aborted:
            return f"Generation aborted: {self.message}"
        return (f"Processed {self.base_measures} base measure(s): {self.created} created, "
                f"{self.updated} updated, {self.skipped} skipped, {self.errors} error(s)")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_display_folder(base_folder: str, base_prefix: str, target_prefix: str, leaf: str) -> str:
    """
    Compute the display folder of a generated measure

    The base prefix is replaced as a plain substring (no path-segment
    awareness). With no base prefix the target prefix is put in front of
    the base folder.
    """
    if base_prefix:
        folder = base_folder.replace(base_prefix, target_prefix)
    elif target_prefix and base_folder:
        folder = f"{target_prefix}\\{base_folder}"
    elif target_prefix:
        folder = target_prefix
    else:
        folder = base_folder

    return f"{folder}\\{leaf}" if folder else leaf


class MeasureGenerator:
    """
    Generates calculation-group driven measures

    Usage:
        generator = MeasureGenerator(repository, GeneratorConfig(
            base_measures_display_folder="Base Measures",
            exclude_table_prefixes=["Parameter", "Calendar"]
        ))
        report = generator.run()
        print(report.summary())
    """

    def __init__(self, repository: ModelRepository, config: Optional[GeneratorConfig] = None,
                 change_logger: Optional[ChangeLogger] = None):
        self.repository = repository
        self.config = config or GeneratorConfig()
        self.changes = change_logger or get_change_logger()

    # ==================== VALIDATION ====================

    def validate(self) -> CalculationGroupTable:
        """
        Check the calculation group before anything is touched

        Returns:
            The calculation group table

        Raises:
            CalculationGroupError: group missing, not a calculation group,
                without items, or without the identifying column
        """
        name = self.config.calculation_group
        table = self.repository.find_table(name)
        if table is None:
            raise CalculationGroupError(f"Calculation group '{name}' not found")
        if not table.is_calculation_group:
            raise CalculationGroupError(f"Table '{name}' is not a calculation group")
        if not table.calculation_items:
            raise CalculationGroupError(f"Calculation group '{name}' has no calculation items")
        if not table.has_column(self.config.calculation_item_column):
            raise CalculationGroupError(
                f"Column '{self.config.calculation_item_column}' not found in calculation group '{name}'"
            )
        return table

    # ==================== CANDIDATES ====================

    def select_base_measures(self, items: Optional[List[CalculationItem]] = None) -> List[Measure]:
        """
        Base measures eligible for generation, in host order

        Filters: non-hidden, display folder prefix, include table prefixes,
        exclude table prefixes, excluded name substrings. Measures whose
        expression has the exact generated shape for one of the calculation
        items are output of an earlier run and never bases.

        Args:
            items: Calculation items of the group (looked up when omitted)
        """
        cfg = self.config
        if items is None:
            group = self.repository.find_table(cfg.calculation_group)
            items = group.calculation_items if group is not None and group.is_calculation_group else []
        candidates = []

        for measure in self.repository.measures():
            if measure.is_hidden:
                continue
            if cfg.base_measures_display_folder and \
                    not measure.display_folder.startswith(cfg.base_measures_display_folder):
                continue
            if cfg.include_table_prefixes and \
                    not any(measure.table_name.startswith(p) for p in cfg.include_table_prefixes):
                continue
            if any(measure.table_name.startswith(p) for p in cfg.exclude_table_prefixes):
                continue
            if any(s in measure.name for s in cfg.exclude_name_substrings):
                continue
            if self._is_generated(measure, items):
                continue
            candidates.append(measure)

        return candidates

    def _is_generated(self, measure: Measure, items: List[CalculationItem]) -> bool:
        cfg = self.config
        return any(
            is_time_intelligence_expression(measure.expression, cfg.calculation_group,
                                            cfg.calculation_item_column, item.name,
                                            escape_quotes=cfg.escape_item_quotes)
            for item in items
        )

    # ==================== GENERATION ====================

    def render_measure(self, base: Measure, item: CalculationItem) -> Dict[str, str]:
        """Name, expression, display folder and format string of one derived measure"""
        cfg = self.config
        expression = render_time_intelligence_expression(
            fully_qualified_reference(base.table_name, base.name),
            cfg.calculation_group,
            cfg.calculation_item_column,
            item.name,
            escape_quotes=cfg.escape_item_quotes
        )

        leaf = item.name if cfg.group_by_calculation_item else base.name
        display_folder = build_display_folder(
            base.display_folder,
            cfg.base_measures_display_folder,
            cfg.target_display_folder,
            leaf
        )

        if is_percentage_item(item.name, cfg.percentage_indicators):
            format_string = cfg.percentage_format_string
        else:
            format_string = base.format_string

        return {
            'name': f"{base.name} {item.name}",
            'expression': expression,
            'display_folder': display_folder,
            'format_string': format_string
        }

    def _apply(self, base: Measure, item: CalculationItem) -> str:
        """Create, update or skip one derived measure, returns the action taken"""
        target = self.render_measure(base, item)
        name = target['name']
        existing = self.repository.find_measure(name)

        if existing is None:
            self.repository.create_measure(
                base.table_name, name, target['expression'],
                display_folder=target['display_folder'],
                format_string=target['format_string']
            )
            self.changes.info(ChangeEventType.MEASURE_CREATED,
                              f"Created measure: '{name}' in table '{base.table_name}'",
                              measure=name, table=base.table_name)
            return "created"

        if not self.config.overwrite_existing_measures:
            self.changes.info(ChangeEventType.MEASURE_SKIPPED,
                              f"Measure '{name}' already exists - skipped",
                              measure=name, table=existing.table_name)
            return "skipped"

        if self.config.update_in_place:
            self.repository.update_measure(
                existing,
                expression=target['expression'],
                display_folder=target['display_folder'],
                format_string=target['format_string']
            )
            self.changes.info(ChangeEventType.MEASURE_UPDATED,
                              f"Updated measure: '{name}'",
                              measure=name, table=existing.table_name,
                              lineage_tag=existing.lineage_tag)
        else:
            self.repository.delete_measure(existing)
            self.changes.info(ChangeEventType.MEASURE_DELETED,
                              f"Deleted measure: '{name}' for recreation",
                              measure=name, table=existing.table_name)
            self.repository.create_measure(
                base.table_name, name, target['expression'],
                display_folder=target['display_folder'],
                format_string=target['format_string']
            )
            self.changes.info(ChangeEventType.MEASURE_UPDATED,
                              f"Recreated measure: '{name}' in table '{base.table_name}'",
                              measure=name, table=base.table_name)
        return "updated"

    def run(self) -> GenerationReport:
        """
        Generate measures for every base measure and calculation item

        Returns:
            GenerationReport with created/updated/skipped/error counts
        """
        report = GenerationReport()
        self.changes.info(ChangeEventType.RUN_STARTED,
                          f"Generating measures from calculation group '{self.config.calculation_group}'",
                          config=self.config.to_dict())

        try:
            group = self.validate()
        except CalculationGroupError as e:
            report.success = False
            report.aborted = True
            report.message = str(e)
            self.changes.error(ChangeEventType.RUN_ABORTED, f"Generation aborted: {e}")
            return report

        items = list(group.calculation_items)
        base_measures = self.select_base_measures(items)
        report.base_measures = len(base_measures)

        if not base_measures:
            self.changes.warning(ChangeEventType.RUN_COMPLETED,
                                 "No base measures matched the configured filters")

        for base in base_measures:
            try:
                for item in items:
                    action = self._apply(base, item)
                    setattr(report, action, getattr(report, action) + 1)
                    report.changes.append({
                        'measure': f"{base.name} {item.name}",
                        'base_measure': base.name,
                        'calculation_item': item.name,
                        'action': action
                    })
            except Exception as e:
                report.errors += 1
                report.failures.append({'measure': base.name, 'error': str(e)})
                self.changes.error(ChangeEventType.ERROR,
                                   f"Failed to generate measures for '{base.name}': {e}",
                                   measure=base.name, table=base.table_name)

        report.success = report.errors == 0
        report.message = report.summary()
        self.changes.info(ChangeEventType.RUN_COMPLETED, report.message,
                          created=report.created, updated=report.updated,
                          skipped=report.skipped, errors=report.errors)
        return report
