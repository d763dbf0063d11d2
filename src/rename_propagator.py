"""
Measure Rename Propagator
Bulk find-and-replace renaming of measures, followed by propagation of the
new names into every expression that references them:

  1. Rename measures by applying (from, to) pairs to their names in order
  2. Rewrite [OldName] -> [NewName] in all measure expressions
  3. Rewrite [OldName] and "OldName" in calculation item expressions and
     format string expressions

Matching is plain substring replacement; expressions are not parsed.
Unqualified or partially qualified references are left untouched.
"""
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from audit import ChangeEventType, ChangeLogger, get_change_logger
from dax_templates import bracket_reference, quoted_literal
from tabular_model import ModelRepository

logger = logging.getLogger(__name__)


@dataclass
class RenameConfig:
    """Options for one rename run"""
    replacements: List[Tuple[str, str]] = field(default_factory=list)
    table_prefix: str = ""  # Only rename measures in tables starting with this, empty = all
    include_hidden: bool = False
    update_calculation_items: bool = True
    preview_only: bool = False

    def __post_init__(self):
        pairs = []
        for pair in self.replacements:
            old, new = pair
            if not old:
                raise ValueError("Replacement pairs need a non-empty 'from' string")
            pairs.append((old, new if new is not None else ""))
        self.replacements = pairs

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['replacements'] = [{'from': old, 'to': new} for old, new in self.replacements]
        return data


@dataclass
class RenameReport:
    """Outcome of a rename run"""
    success: bool = True
    message: str = ""
    aborted: bool = False
    preview: bool = False
    approximate: bool = False  # Counts are projections, not applied changes
    renames: List[Dict[str, str]] = field(default_factory=list)
    expressions_updated: int = 0
    calculation_item_expressions_updated: int = 0
    calculation_item_format_strings_updated: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def measures_renamed(self) -> int:
        return len(self.renames)

    @property
    def references_updated(self) -> int:
        return (self.expressions_updated + self.calculation_item_expressions_updated
                + self.calculation_item_format_strings_updated)

    def summary(self) -> str:
        if self.aborted:
            return self.message
        prefix = "PREVIEW (approximate): would rename" if self.preview else "Renamed"
        verb = "would need updates" if self.preview else "updated"
        return (f"{prefix} {self.measures_renamed} measure(s). "
                f"Measure expressions {verb}: {self.expressions_updated}, "
                f"calculation item expressions: {self.calculation_item_expressions_updated}, "
                f"calculation item format strings: {self.calculation_item_format_strings_updated}")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['measures_renamed'] = self.measures_renamed
        data['references_updated'] = self.references_updated
        return data


def apply_replacements(name: str, replacements: List[Tuple[str, str]]) -> str:
    """
    Apply replacement pairs to a name, sequentially

    Each pair sees the output of the previous ones, so overlapping pairs are
    order dependent.
    """
    result = name
    for old, new in replacements:
        if old in result:
            result = result.replace(old, new)
    return result


def replace_references(text: str, renames: Dict[str, str], include_literals: bool = False) -> str:
    """
    Rewrite [Old] (and optionally "Old") for every recorded rename

    All forms are replaced in a single pass, so a new name that equals
    another rename's old name is not rewritten a second time.
    """
    if not text or not renames:
        return text

    targets = {bracket_reference(old): bracket_reference(new) for old, new in renames.items()}
    if include_literals:
        targets.update({quoted_literal(old): quoted_literal(new) for old, new in renames.items()})

    # Longest first, alternation takes the first matching form
    pattern = re.compile("|".join(re.escape(t) for t in sorted(targets, key=len, reverse=True)))
    return pattern.sub(lambda match: targets[match.group(0)], text)


def references_any(text: str, names: List[str]) -> bool:
    """Check whether text contains [Name] or "Name" for any of the names"""
    if not text:
        return False
    return any(bracket_reference(n) in text or quoted_literal(n) in text for n in names)


def scan_measure_references(repository: ModelRepository, measure_name: str) -> Dict[str, List[Dict[str, str]]]:
    """
    Find all references to a measure in measures and calculation items

    Args:
        repository: Model to scan
        measure_name: Name of the measure to search for

    Returns:
        Dictionary with "measures" and "calculation_items" reference lists
    """
    references = {
        "measures": [],
        "calculation_items": []
    }

    for measure in repository.measures():
        if measure.name != measure_name and references_any(measure.expression, [measure_name]):
            references["measures"].append({
                "name": measure.name,
                "table": measure.table_name,
                "expression": measure.expression[:200] + "..." if len(measure.expression) > 200 else measure.expression
            })

    for group in repository.calculation_groups():
        for item in group.calculation_items:
            fields = []
            if references_any(item.expression, [measure_name]):
                fields.append("expression")
            if references_any(item.format_string_expression, [measure_name]):
                fields.append("format_string_expression")
            if fields:
                references["calculation_items"].append({
                    "name": item.name,
                    "table": group.name,
                    "fields": ", ".join(fields)
                })

    return references


class RenamePropagator:
    """
    Renames measures and propagates the new names into dependent expressions

    Usage:
        propagator = RenamePropagator(repository, RenameConfig(
            replacements=[("Sales", "Revenue")],
            preview_only=True
        ))
        report = propagator.run()
    """

    def __init__(self, repository: ModelRepository, config: RenameConfig,
                 change_logger: Optional[ChangeLogger] = None):
        self.repository = repository
        self.config = config
        self.changes = change_logger or get_change_logger()

    # ==================== PHASE 1: RENAME ====================

    def rename_measures(self, report: RenameReport) -> Dict[str, str]:
        """
        Rename eligible measures

        Returns:
            Mapping of original name -> new name
        """
        cfg = self.config
        renames: Dict[str, str] = {}

        for measure in self.repository.measures():
            if cfg.table_prefix and not measure.table_name.startswith(cfg.table_prefix):
                continue
            if measure.is_hidden and not cfg.include_hidden:
                continue

            old_name = measure.name
            new_name = apply_replacements(old_name, cfg.replacements)
            if new_name == old_name:
                continue

            renames[old_name] = new_name
            report.renames.append({'old_name': old_name, 'new_name': new_name, 'table': measure.table_name})

            if cfg.preview_only:
                self.changes.info(ChangeEventType.MEASURE_RENAMED,
                                  f"[PREVIEW] Would rename: '{old_name}' -> '{new_name}'",
                                  old_name=old_name, new_name=new_name, table=measure.table_name)
            else:
                self.repository.rename_measure(measure, new_name)
                self.changes.info(ChangeEventType.MEASURE_RENAMED,
                                  f"Measure renamed: '{old_name}' -> '{new_name}'",
                                  old_name=old_name, new_name=new_name, table=measure.table_name)

        return renames

    # ==================== PHASE 2: MEASURE EXPRESSIONS ====================

    def propagate_to_measures(self, renames: Dict[str, str]) -> int:
        """Rewrite bracketed references in every measure expression"""
        updated = 0
        for measure in self.repository.measures():
            new_expr = replace_references(measure.expression, renames)
            if new_expr != measure.expression:
                self.repository.update_measure(measure, expression=new_expr)
                updated += 1
                self.changes.info(ChangeEventType.EXPRESSION_UPDATED,
                                  f"Updated references in '{measure.table_name}'[{measure.name}]",
                                  measure=measure.name, table=measure.table_name)
        return updated

    # ==================== PHASE 3: CALCULATION ITEMS ====================

    def propagate_to_calculation_items(self, renames: Dict[str, str]) -> Tuple[int, int]:
        """
        Rewrite bracketed and quoted references in calculation items

        Returns:
            (expressions updated, format string expressions updated)
        """
        expressions = 0
        format_strings = 0

        for group in self.repository.calculation_groups():
            for item in group.calculation_items:
                new_expr = replace_references(item.expression, renames, include_literals=True)
                if new_expr != item.expression:
                    self.repository.update_calculation_item(group.name, item, expression=new_expr)
                    expressions += 1
                    self.changes.info(ChangeEventType.CALCULATION_ITEM_UPDATED,
                                      f"Updated expression of calculation item '{group.name}'[{item.name}]",
                                      calculation_group=group.name, item=item.name, field="expression")

                new_format = replace_references(item.format_string_expression, renames, include_literals=True)
                if new_format != item.format_string_expression:
                    self.repository.update_calculation_item(group.name, item, format_string_expression=new_format)
                    format_strings += 1
                    self.changes.info(ChangeEventType.CALCULATION_ITEM_UPDATED,
                                      f"Updated format string of calculation item '{group.name}'[{item.name}]",
                                      calculation_group=group.name, item=item.name,
                                      field="format_string_expression")

        return expressions, format_strings

    # ==================== PREVIEW ====================

    def estimate(self, renames: Dict[str, str]) -> Tuple[int, int, int]:
        """
        Projected counts for a preview run, nothing is modified

        Returns:
            (measure expressions, calculation item expressions,
             calculation item format strings) referencing any old name
        """
        names = list(renames)
        expressions = sum(1 for m in self.repository.measures() if references_any(m.expression, names))

        item_expressions = 0
        item_formats = 0
        if self.config.update_calculation_items:
            for group in self.repository.calculation_groups():
                for item in group.calculation_items:
                    if references_any(item.expression, names):
                        item_expressions += 1
                    if references_any(item.format_string_expression, names):
                        item_formats += 1

        return expressions, item_expressions, item_formats

    def run(self) -> RenameReport:
        """
        Run all phases

        Returns:
            RenameReport with renames and reference update counts
        """
        cfg = self.config
        report = RenameReport(preview=cfg.preview_only)
        self.changes.info(ChangeEventType.RUN_STARTED,
                          f"Renaming measures with {len(cfg.replacements)} replacement pair(s)"
                          + (" (preview)" if cfg.preview_only else ""),
                          config=cfg.to_dict())

        renames = self.rename_measures(report)

        if not renames:
            report.aborted = True
            report.message = "No measures matched the replacement pairs - nothing to propagate"
            self.changes.info(ChangeEventType.RUN_COMPLETED, report.message)
            return report

        if cfg.preview_only:
            report.approximate = True
            (report.expressions_updated,
             report.calculation_item_expressions_updated,
             report.calculation_item_format_strings_updated) = self.estimate(renames)
        else:
            report.expressions_updated = self.propagate_to_measures(renames)
            if cfg.update_calculation_items:
                (report.calculation_item_expressions_updated,
                 report.calculation_item_format_strings_updated) = self.propagate_to_calculation_items(renames)

            if report.references_updated == 0:
                warning = ("Measures were renamed but no references were updated - the renamed "
                           "measures may be unreferenced, or referenced in a form that is not scanned")
                report.warnings.append(warning)
                self.changes.warning(ChangeEventType.RUN_COMPLETED, warning)

        report.message = report.summary()
        self.changes.info(ChangeEventType.RUN_COMPLETED, report.message,
                          measures_renamed=report.measures_renamed,
                          references_updated=report.references_updated,
                          preview=report.preview)
        return report
