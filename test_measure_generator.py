"""
Test Time Intelligence Measure Generator

Tests for:
1. Candidate selection (folder prefix, include/exclude table prefixes, name filters)
2. Naming, expression shape, display folder and format string selection
3. Idempotent reruns (overwrite disabled)
4. Overwrite in place keeps the lineage tag, delete+recreate does not
5. Calculation group validation aborts before any change
6. A failing base measure does not stop the batch
"""
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from audit import ChangeEventType, ChangeLogger
from measure_generator import (
    GeneratorConfig,
    MeasureGenerator,
    build_display_folder,
)
from tabular_model import InMemoryModelRepository

PERCENT = "#,##0.00 %;(#,##0.00 %)"


def sample_model_data():
    return {
        "tables": [
            {
                "name": "Sales",
                "columns": ["Amount", "Cost"],
                "measures": [
                    {"name": "Sales", "expression": "SUM(Sales[Amount])",
                     "display_folder": "Base Measures", "format_string": "#,##0"},
                    {"name": "Margin %", "expression": "DIVIDE([Sales] - SUM(Sales[Cost]), [Sales])",
                     "display_folder": "Base Measures\\Ratios", "format_string": "0.0%"},
                    {"name": "Helper", "expression": "1", "display_folder": "Base Measures",
                     "is_hidden": True},
                    {"name": "Sales Growth", "expression": "[Sales] - 1",
                     "display_folder": "Base Measures"},
                    {"name": "Row Count", "expression": "COUNTROWS(Sales)", "display_folder": "Misc"},
                ]
            },
            {
                "name": "Parameter Dates",
                "columns": ["Date"],
                "measures": [
                    {"name": "Selected Date", "expression": "MAX('Parameter Dates'[Date])",
                     "display_folder": "Base Measures"},
                ]
            },
            {
                "name": "Time Intelligence",
                "columns": ["Time Calculation", "Ordinal"],
                "calculation_items": [
                    {"name": "Current", "expression": "SELECTEDMEASURE()"},
                    {"name": "PY", "expression": "CALCULATE(SELECTEDMEASURE(), SAMEPERIODLASTYEAR('Date'[Date]))"},
                    {"name": "YTD", "expression": "CALCULATE(SELECTEDMEASURE(), DATESYTD('Date'[Date]))"},
                    {"name": "YOY %", "expression": "DIVIDE(SELECTEDMEASURE(), 1)"},
                ]
            },
        ]
    }


def sample_config(**overrides) -> GeneratorConfig:
    options = dict(
        calculation_group="Time Intelligence",
        calculation_item_column="Time Calculation",
        base_measures_display_folder="Base Measures",
        target_display_folder="Time Intelligence",
        exclude_table_prefixes=["Parameter"],
        exclude_name_substrings=["Growth"],
    )
    options.update(overrides)
    return GeneratorConfig(**options)


def test_candidate_selection():
    """Only eligible base measures are selected"""
    print("\n" + "=" * 60)
    print("TEST 1: CANDIDATE SELECTION")
    print("=" * 60)

    repo = InMemoryModelRepository.from_dict(sample_model_data())
    generator = MeasureGenerator(repo, sample_config(), change_logger=ChangeLogger())

    names = [m.name for m in generator.select_base_measures()]
    print(f"  Selected: {names}")
    assert names == ["Sales", "Margin %"], names

    # Empty prefix disables the folder filter; include list narrows tables
    generator.config = sample_config(base_measures_display_folder="", include_table_prefixes=["Sales"])
    names = [m.name for m in generator.select_base_measures()]
    assert names == ["Sales", "Margin %", "Row Count"], names

    # Excluded table prefix wins regardless of display folder
    generator.config = sample_config(exclude_table_prefixes=["Parameter Dates"], exclude_name_substrings=[])
    names = [m.name for m in generator.select_base_measures()]
    assert "Selected Date" not in names
    assert "Sales Growth" in names

    print("\n[PASS] Candidate selection test PASSED")


def test_generation():
    """Names, expressions, folders and formats of generated measures"""
    print("\n" + "=" * 60)
    print("TEST 2: GENERATION")
    print("=" * 60)

    repo = InMemoryModelRepository.from_dict(sample_model_data())
    changes = ChangeLogger()
    report = MeasureGenerator(repo, sample_config(), change_logger=changes).run()

    print(f"  {report.summary()}")
    assert report.success
    assert report.base_measures == 2
    assert report.created == 8
    assert report.updated == 0 and report.skipped == 0 and report.errors == 0

    ytd = repo.find_measure("Sales YTD")
    assert ytd is not None
    assert ytd.table_name == "Sales"
    assert ytd.expression == "CALCULATE( Sales[Sales], 'Time Intelligence'[Time Calculation]= \"YTD\" )"
    assert ytd.display_folder == "Time Intelligence\\Sales"
    assert ytd.format_string == "#,##0"

    yoy = repo.find_measure("Sales YOY %")
    assert yoy.format_string == PERCENT

    margin_py = repo.find_measure("Margin % PY")
    assert margin_py.display_folder == "Time Intelligence\\Ratios\\Margin %"
    assert margin_py.format_string == "0.0%"

    assert repo.find_measure("Selected Date YTD") is None
    assert repo.find_measure("Sales Growth YTD") is None
    assert repo.find_measure("Helper YTD") is None

    created_events = [e for e in changes.get_recent_events(100)
                      if e['event_type'] == ChangeEventType.MEASURE_CREATED.value]
    assert len(created_events) == 8

    print("\n[PASS] Generation test PASSED")


def test_folder_modes():
    print("\n" + "=" * 60)
    print("TEST 3: DISPLAY FOLDER MODES")
    print("=" * 60)

    repo = InMemoryModelRepository.from_dict(sample_model_data())
    MeasureGenerator(repo, sample_config(group_by_calculation_item=True),
                     change_logger=ChangeLogger()).run()
    assert repo.find_measure("Sales YTD").display_folder == "Time Intelligence\\YTD"

    assert build_display_folder("Base\\Sub", "Base", "TI", "Sales") == "TI\\Sub\\Sales"
    assert build_display_folder("Base Measures", "", "TI", "Sales") == "TI\\Base Measures\\Sales"
    assert build_display_folder("", "", "TI", "Sales") == "TI\\Sales"
    assert build_display_folder("", "", "", "Sales") == "Sales"

    print("\n[PASS] Folder modes test PASSED")


def test_idempotent_rerun():
    """Second run with overwrite disabled changes nothing"""
    print("\n" + "=" * 60)
    print("TEST 4: IDEMPOTENT RERUN")
    print("=" * 60)

    repo = InMemoryModelRepository.from_dict(sample_model_data())
    MeasureGenerator(repo, sample_config(), change_logger=ChangeLogger()).run()
    before = repo.to_dict()

    report = MeasureGenerator(repo, sample_config(), change_logger=ChangeLogger()).run()
    print(f"  {report.summary()}")
    assert report.created == 0
    assert report.skipped == 8
    assert repo.to_dict() == before

    # Without a folder filter, generated measures are still not treated as bases
    report = MeasureGenerator(repo, sample_config(base_measures_display_folder=""),
                              change_logger=ChangeLogger()).run()
    assert repo.find_measure("Sales YTD YTD") is None
    assert report.created == 4  # Row Count only

    print("\n[PASS] Idempotent rerun test PASSED")


def test_group_filter_in_base_measure():
    """Hand-written measures that filter on the group column stay eligible"""
    print("\n" + "=" * 60)
    print("TEST 4b: BASE MEASURES FILTERING ON THE GROUP COLUMN")
    print("=" * 60)

    data = sample_model_data()
    data["tables"][0]["measures"].extend([
        {"name": "Sales Current",
         "expression": "CALCULATE([Sales], 'Time Intelligence'[Time Calculation] = \"Current\")",
         "display_folder": "Base Measures"},
        {"name": "Legacy YTD",
         "expression": "CALCULATE( Sales[Sales], 'Time Intelligence'[Time Calculation]= \"YTD\" )",
         "display_folder": "Base Measures"},
    ])
    repo = InMemoryModelRepository.from_dict(data)
    generator = MeasureGenerator(repo, sample_config(), change_logger=ChangeLogger())

    names = [m.name for m in generator.select_base_measures()]
    print(f"  Selected: {names}")
    assert "Sales Current" in names
    assert "Legacy YTD" not in names

    report = generator.run()
    assert report.base_measures == 3
    assert repo.find_measure("Sales Current PY") is not None

    print("\n[PASS] Group column filter test PASSED")


def test_overwrite_semantics():
    """In-place updates keep identity, delete+recreate replaces it"""
    print("\n" + "=" * 60)
    print("TEST 5: OVERWRITE SEMANTICS")
    print("=" * 60)

    repo = InMemoryModelRepository.from_dict(sample_model_data())
    MeasureGenerator(repo, sample_config(), change_logger=ChangeLogger()).run()

    ytd = repo.find_measure("Sales YTD")
    original_tag = ytd.lineage_tag
    repo.update_measure(ytd, expression="stale", display_folder="Old", format_string="0")

    report = MeasureGenerator(repo, sample_config(overwrite_existing_measures=True),
                              change_logger=ChangeLogger()).run()
    assert report.updated == 8 and report.created == 0

    ytd = repo.find_measure("Sales YTD")
    assert ytd.lineage_tag == original_tag
    assert ytd.expression == "CALCULATE( Sales[Sales], 'Time Intelligence'[Time Calculation]= \"YTD\" )"
    assert ytd.display_folder == "Time Intelligence\\Sales"
    assert ytd.format_string == "#,##0"
    print(f"  In place: lineage tag kept ({original_tag})")

    report = MeasureGenerator(repo, sample_config(overwrite_existing_measures=True, update_in_place=False),
                              change_logger=ChangeLogger()).run()
    assert report.updated == 8
    recreated = repo.find_measure("Sales YTD")
    assert recreated.lineage_tag != original_tag
    assert len([m for m in repo.measures() if m.name == "Sales YTD"]) == 1
    print(f"  Recreated: new lineage tag ({recreated.lineage_tag})")

    print("\n[PASS] Overwrite semantics test PASSED")


def test_validation_aborts():
    """Precondition failures abort before any mutation"""
    print("\n" + "=" * 60)
    print("TEST 6: CALCULATION GROUP VALIDATION")
    print("=" * 60)

    cases = [
        (sample_config(calculation_group="Missing"), "not found"),
        (sample_config(calculation_group="Sales"), "not a calculation group"),
        (sample_config(calculation_item_column="Missing Column"), "Column 'Missing Column'"),
    ]
    for config, expected in cases:
        repo = InMemoryModelRepository.from_dict(sample_model_data())
        before = repo.to_dict()
        changes = ChangeLogger()
        report = MeasureGenerator(repo, config, change_logger=changes).run()
        assert report.aborted and not report.success
        assert expected in report.message, report.message
        assert repo.to_dict() == before
        assert changes.get_session_summary()['by_severity']['error'] == 1
        print(f"  [PASS] {report.message}")

    data = sample_model_data()
    data["tables"][2]["calculation_items"] = []
    repo = InMemoryModelRepository.from_dict(data)
    report = MeasureGenerator(repo, sample_config(), change_logger=ChangeLogger()).run()
    assert report.aborted
    assert "no calculation items" in report.message

    print("\n[PASS] Validation test PASSED")


class FailingRepository(InMemoryModelRepository):
    """Rejects measures derived from 'Margin %'"""

    def create_measure(self, table_name, name, *args, **kwargs):
        if name.startswith("Margin %"):
            raise RuntimeError("simulated host failure")
        return super().create_measure(table_name, name, *args, **kwargs)


def test_failure_isolation():
    """One bad base measure is counted and the batch continues"""
    print("\n" + "=" * 60)
    print("TEST 7: FAILURE ISOLATION")
    print("=" * 60)

    repo = FailingRepository.from_dict(sample_model_data())
    report = MeasureGenerator(repo, sample_config(), change_logger=ChangeLogger()).run()

    print(f"  {report.summary()}")
    assert not report.aborted
    assert not report.success
    assert report.errors == 1
    assert report.created == 4
    assert report.failures == [{'measure': "Margin %", 'error': "simulated host failure"}]
    assert repo.find_measure("Sales PY") is not None

    print("\n[PASS] Failure isolation test PASSED")


def main():
    print("\n" + "=" * 60)
    print("MEASURE GENERATOR TEST SUITE")
    print("=" * 60)

    try:
        test_candidate_selection()
        test_generation()
        test_folder_modes()
        test_idempotent_rerun()
        test_group_filter_in_base_measure()
        test_overwrite_semantics()
        test_validation_aborts()
        test_failure_isolation()

        print("\n" + "=" * 60)
        print("ALL MEASURE GENERATOR TESTS PASSED!")
        print("=" * 60 + "\n")

    except Exception as e:
        print(f"\n[FAIL] Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
