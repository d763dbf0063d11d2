"""
Test MCP Tool Handlers

Runs the tool dispatch against an offline model snapshot:
1. Tool listing and missing-model handling
2. Snapshot load / list / save
3. Measure generation and renaming through the tools
4. Change log output
"""
import sys
import os
import asyncio
import tempfile

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from audit import ChangeLogger
from run_config import RunConfig, load_model_snapshot, save_model_snapshot
from server import MeasureToolsServer
from tabular_model import InMemoryModelRepository

EXPECTED_TOOLS = {
    "desktop_discover_instances", "desktop_connect", "load_model_snapshot",
    "export_model_snapshot", "list_measures", "list_calculation_groups",
    "scan_measure_references", "generate_time_intelligence_measures",
    "rename_measures", "save_changes", "discard_changes", "change_log",
}


def sample_repository():
    return InMemoryModelRepository.from_dict({
        "tables": [
            {"name": "Sales", "columns": ["Amount"],
             "measures": [
                 {"name": "Sales", "expression": "SUM(Sales[Amount])",
                  "display_folder": "Base Measures", "format_string": "#,##0"},
                 {"name": "Sales Double", "expression": "[Sales] * 2"},
             ]},
            {"name": "Time Intelligence", "columns": ["Time Calculation"],
             "calculation_items": [
                 {"name": "PY", "expression": "SELECTEDMEASURE()"},
                 {"name": "YOY %", "expression": "SELECTEDMEASURE()"},
             ]},
        ]
    })


def call(server, name, arguments=None):
    return asyncio.run(server.call_tool(name, arguments))


def new_server(repository=None):
    return MeasureToolsServer(repository=repository, run_config=RunConfig(),
                              change_logger=ChangeLogger())


def test_tool_listing():
    print("\n" + "=" * 60)
    print("TEST 1: TOOL LISTING")
    print("=" * 60)

    server = new_server()
    names = {tool.name for tool in server.list_tools()}
    assert names == EXPECTED_TOOLS, names ^ EXPECTED_TOOLS

    for tool_name in ("list_measures", "generate_time_intelligence_measures", "rename_measures"):
        result = call(server, tool_name, {})
        assert result == "No model loaded. Use 'desktop_connect' or 'load_model_snapshot' first.", result

    assert call(server, "no_such_tool") == "Unknown tool: no_such_tool"
    assert call(server, "discard_changes") == "Discard is only supported for a live Power BI Desktop model."

    print("\n[PASS] Tool listing test PASSED")


def test_snapshot_workflow():
    """Load a snapshot, generate measures, save it back"""
    print("\n" + "=" * 60)
    print("TEST 2: SNAPSHOT WORKFLOW")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "model.yaml")
        save_model_snapshot(sample_repository(), path)

        server = new_server()
        result = call(server, "load_model_snapshot", {"path": path})
        print(f"  {result}")
        assert "2 tables, 2 measures" in result

        result = call(server, "list_calculation_groups")
        assert "Time Intelligence (columns: Time Calculation)" in result
        assert "  - YOY %" in result

        result = call(server, "generate_time_intelligence_measures",
                      {"base_measures_display_folder": "Base Measures"})
        print(result)
        assert result.startswith("=== Generate Time Intelligence Measures ===")
        assert "Processed 1 base measure(s): 2 created, 0 updated, 0 skipped, 0 error(s)" in result
        assert "  - Sales PY" in result

        result = call(server, "list_measures", {"table_prefix": "Sales"})
        assert "Sales[Sales YOY %]" in result
        assert "Format: #,##0.00 %;(#,##0.00 %)" in result

        result = call(server, "save_changes")
        assert result == f"Model snapshot written to '{path}'."

        reloaded = load_model_snapshot(path)
        assert reloaded.find_measure("Sales PY").expression == \
            "CALCULATE( Sales[Sales], 'Time Intelligence'[Time Calculation]= \"PY\" )"

        result = call(server, "load_model_snapshot", {"path": os.path.join(tmp, "missing.yaml")})
        assert result.startswith("Error executing load_model_snapshot: Model snapshot not found")

    print("\n[PASS] Snapshot workflow test PASSED")


def test_generation_abort():
    print("\n" + "=" * 60)
    print("TEST 3: GENERATION ABORT")
    print("=" * 60)

    repo = sample_repository()
    before = repo.to_dict()
    server = new_server(repo)
    result = call(server, "generate_time_intelligence_measures", {"calculation_group": "Dates"})
    assert "Generation aborted: Calculation group 'Dates' not found" in result
    assert repo.to_dict() == before

    print("\n[PASS] Generation abort test PASSED")


def test_rename_tools():
    print("\n" + "=" * 60)
    print("TEST 4: RENAME TOOLS")
    print("=" * 60)

    repo = sample_repository()
    server = new_server(repo)

    assert call(server, "rename_measures", {}) == "Error: 'replacements' array is required"

    result = call(server, "scan_measure_references", {"measure_name": "Sales"})
    assert "Total references found: 1" in result
    assert "Sales[Sales Double]" in result

    before = repo.to_dict()
    result = call(server, "rename_measures", {
        "replacements": [{"from": "Sales", "to": "Revenue"}],
        "preview_only": True
    })
    print(result)
    assert "PREVIEW ONLY - nothing was changed" in result
    assert repo.to_dict() == before

    result = call(server, "rename_measures", {"replacements": [{"from": "Sales", "to": "Revenue"}]})
    assert result.startswith("=== Rename Measures ===")
    assert "'Sales Double' -> 'Revenue Double' (Sales)" in result
    assert repo.find_measure("Revenue Double").expression == "[Revenue] * 2"

    result = call(server, "rename_measures", {"replacements": [{"from": "Missing", "to": "X"}]})
    assert "No measures matched the replacement pairs" in result

    result = call(server, "export_model_snapshot", {})
    assert result == "Error: 'path' is required"

    print("\n[PASS] Rename tools test PASSED")


def test_change_log_tool():
    print("\n" + "=" * 60)
    print("TEST 5: CHANGE LOG TOOL")
    print("=" * 60)

    server = new_server(sample_repository())
    assert "No changes recorded yet." in call(server, "change_log")

    call(server, "rename_measures", {"replacements": [{"from": "Double", "to": "x2"}]})
    result = call(server, "change_log", {"count": 50})
    print(result)
    assert "[INFO]" in result
    assert "Measure renamed: 'Sales Double' -> 'Sales x2'" in result
    # Nothing references [Sales Double], so the run ends with a warning
    assert "[WARNING]" in result
    assert "Totals by severity" in result

    print("\n[PASS] Change log tool test PASSED")


def main():
    print("\n" + "=" * 60)
    print("MCP TOOL HANDLER TEST SUITE")
    print("=" * 60)

    try:
        test_tool_listing()
        test_snapshot_workflow()
        test_generation_abort()
        test_rename_tools()
        test_change_log_tool()

        print("\n" + "=" * 60)
        print("ALL TOOL HANDLER TESTS PASSED!")
        print("=" * 60 + "\n")

    except Exception as e:
        print(f"\n[FAIL] Test failed: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
