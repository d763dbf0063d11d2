"""
Power BI Measure Tools MCP Server
Batch measure automation for tabular models:
  - Time intelligence measure generation from a calculation group
  - Find-and-replace measure renaming with reference propagation
Works against a live Power BI Desktop model (TOM) or an offline model snapshot
"""
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from mcp.server import Server, NotificationOptions
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent
from mcp.server.models import InitializationOptions

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)]
)
logger = logging.getLogger("powerbi-measure-tools")

from audit import ChangeEventType, ChangeLogger, configure_change_logger
from measure_generator import MeasureGenerator
from powerbi_desktop_connector import PowerBIDesktopConnector
from powerbi_tom_connector import PowerBITOMConnector
from rename_propagator import RenamePropagator, scan_measure_references
from run_config import (
    RunConfig,
    generator_config_from_dict,
    load_model_snapshot,
    load_run_config,
    rename_config_from_dict,
    save_model_snapshot,
)
from tabular_model import InMemoryModelRepository, ModelRepository

GENERATOR_OPTIONS = {
    "calculation_group": {"type": "string", "description": "Calculation group table name (default: Time Intelligence)"},
    "calculation_item_column": {"type": "string", "description": "Identifying column of the calculation group (default: Time Calculation)"},
    "base_measures_display_folder": {"type": "string", "description": "Only measures whose display folder starts with this prefix (empty = all)"},
    "target_display_folder": {"type": "string", "description": "Replaces the base folder prefix in generated measures"},
    "include_table_prefixes": {"type": "array", "items": {"type": "string"}, "description": "Only tables starting with one of these prefixes (empty = all)"},
    "exclude_table_prefixes": {"type": "array", "items": {"type": "string"}, "description": "Skip tables starting with these prefixes"},
    "exclude_name_substrings": {"type": "array", "items": {"type": "string"}, "description": "Skip measures whose name contains any of these"},
    "percentage_indicators": {"type": "array", "items": {"type": "string"}, "description": "Calculation item name fragments that select the percentage format"},
    "group_by_calculation_item": {"type": "boolean", "description": "Folder per calculation item instead of per base measure"},
    "overwrite_existing_measures": {"type": "boolean", "description": "Update measures that already exist (default: false = skip)"},
    "update_in_place": {"type": "boolean", "description": "Update existing measures in place (default: true) instead of delete and recreate"},
    "escape_item_quotes": {"type": "boolean", "description": "Double embedded quotes in calculation item names"},
}


class MeasureToolsServer:
    """MCP server for batch measure generation and renaming"""

    def __init__(self, repository: Optional[ModelRepository] = None,
                 run_config: Optional[RunConfig] = None,
                 change_logger: Optional[ChangeLogger] = None):
        self.server = Server("powerbi-measure-tools")

        self.run_config = run_config or load_run_config(os.getenv("MEASURE_TOOLS_CONFIG"))
        self.changes = change_logger or configure_change_logger(log_dir=os.getenv("CHANGE_LOG_DIR") or None)

        # Active model: a TOM repository after desktop_connect, or a loaded snapshot
        self.repository: Optional[ModelRepository] = repository
        self.snapshot_path: Optional[str] = None

        self.desktop_connector: Optional[PowerBIDesktopConnector] = None
        self.tom_connector: Optional[PowerBITOMConnector] = None

        self._setup_handlers()

    def _setup_handlers(self):
        """Set up MCP tool handlers"""

        @self.server.list_tools()
        async def handle_list_tools() -> List[Tool]:
            """Return list of available tools"""
            return self.list_tools()

        @self.server.call_tool()
        async def handle_call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> List[TextContent]:
            """Handle tool calls"""
            result = await self.call_tool(name, arguments)
            return [TextContent(type="text", text=result)]

    def list_tools(self) -> List[Tool]:
        return [
            # === MODEL CONNECTION ===
            Tool(
                name="desktop_discover_instances",
                description="Discover all running Power BI Desktop instances on this machine",
                inputSchema={"type": "object", "properties": {}, "required": []}
            ),
            Tool(
                name="desktop_connect",
                description="Connect to a Power BI Desktop model via TOM for measure automation",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "port": {
                            "type": "integer",
                            "description": "Port number of the Power BI Desktop instance (optional - auto-selects if not provided)"
                        }
                    },
                    "required": []
                }
            ),
            Tool(
                name="load_model_snapshot",
                description="Load a model snapshot (YAML or JSON) for offline runs",
                inputSchema={
                    "type": "object",
                    "properties": {"path": {"type": "string", "description": "Snapshot file path"}},
                    "required": ["path"]
                }
            ),
            Tool(
                name="export_model_snapshot",
                description="Write the loaded offline model to a snapshot file",
                inputSchema={
                    "type": "object",
                    "properties": {"path": {"type": "string", "description": "Target file path (default: the loaded snapshot)"}},
                    "required": []
                }
            ),
            # === INSPECTION ===
            Tool(
                name="list_measures",
                description="List measures with their table, display folder and format string",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "table_prefix": {"type": "string", "description": "Only tables starting with this prefix"},
                        "include_hidden": {"type": "boolean", "description": "Include hidden measures", "default": False}
                    },
                    "required": []
                }
            ),
            Tool(
                name="list_calculation_groups",
                description="List calculation groups with their calculation items",
                inputSchema={"type": "object", "properties": {}, "required": []}
            ),
            Tool(
                name="scan_measure_references",
                description="Find measures and calculation items that reference a measure",
                inputSchema={
                    "type": "object",
                    "properties": {"measure_name": {"type": "string", "description": "Name of the measure"}},
                    "required": ["measure_name"]
                }
            ),
            # === BATCH OPERATIONS ===
            Tool(
                name="generate_time_intelligence_measures",
                description=("Generate one measure per base measure and calculation item: "
                             "CALCULATE( Table[Measure], 'Group'[Column]= \"Item\" ). "
                             "Options override the configured defaults."),
                inputSchema={
                    "type": "object",
                    "properties": {
                        **GENERATOR_OPTIONS,
                        "auto_save": {"type": "boolean", "description": "Save a live model after the run (default: true)", "default": True}
                    },
                    "required": []
                }
            ),
            Tool(
                name="rename_measures",
                description=("Find-and-replace measure names and propagate the new names into measure "
                             "expressions and calculation items. Use preview_only for a dry run."),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "replacements": {
                            "type": "array",
                            "description": "Ordered replacement pairs, applied sequentially",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "from": {"type": "string", "description": "Text to find in measure names"},
                                    "to": {"type": "string", "description": "Replacement text"}
                                },
                                "required": ["from", "to"]
                            }
                        },
                        "table_prefix": {"type": "string", "description": "Only rename measures in tables starting with this prefix"},
                        "include_hidden": {"type": "boolean", "description": "Rename hidden measures too", "default": False},
                        "update_calculation_items": {"type": "boolean", "description": "Also update calculation items", "default": True},
                        "preview_only": {"type": "boolean", "description": "Dry run: report projected changes only", "default": False},
                        "auto_save": {"type": "boolean", "description": "Save a live model after the run (default: true)", "default": True}
                    },
                    "required": []
                }
            ),
            Tool(
                name="save_changes",
                description="Save pending changes (live model) or write the loaded snapshot back",
                inputSchema={"type": "object", "properties": {}, "required": []}
            ),
            Tool(
                name="discard_changes",
                description="Discard pending changes of the live model",
                inputSchema={"type": "object", "properties": {}, "required": []}
            ),
            Tool(
                name="change_log",
                description="View recent entries from the change log",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "count": {"type": "integer", "description": "Number of recent entries to show (default: 20)", "default": 20}
                    },
                    "required": []
                }
            ),
        ]

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> str:
        """Dispatch a tool call, errors are returned as text"""
        try:
            logger.info(f"Tool called: {name} with args: {arguments}")
            args = arguments or {}

            if name == "desktop_discover_instances":
                return await self._handle_desktop_discover()
            elif name == "desktop_connect":
                return await self._handle_desktop_connect(args)
            elif name == "load_model_snapshot":
                return await self._handle_load_model_snapshot(args)
            elif name == "export_model_snapshot":
                return await self._handle_export_model_snapshot(args)
            elif name == "list_measures":
                return await self._handle_list_measures(args)
            elif name == "list_calculation_groups":
                return await self._handle_list_calculation_groups()
            elif name == "scan_measure_references":
                return await self._handle_scan_measure_references(args)
            elif name == "generate_time_intelligence_measures":
                return await self._handle_generate_measures(args)
            elif name == "rename_measures":
                return await self._handle_rename_measures(args)
            elif name == "save_changes":
                return await self._handle_save_changes()
            elif name == "discard_changes":
                return await self._handle_discard_changes()
            elif name == "change_log":
                return await self._handle_change_log(args)
            return f"Unknown tool: {name}"

        except Exception as e:
            error_msg = f"Error executing {name}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return error_msg

    async def _run_blocking(self, fn):
        return await asyncio.get_event_loop().run_in_executor(None, fn)

    def _require_model(self) -> Optional[str]:
        if self.repository is None:
            return "No model loaded. Use 'desktop_connect' or 'load_model_snapshot' first."
        return None

    def _is_live(self) -> bool:
        return self.tom_connector is not None and self.tom_connector.is_connected() \
            and self.snapshot_path is None

    # ==================== CONNECTION HANDLERS ====================

    def _get_desktop_connector(self) -> PowerBIDesktopConnector:
        """Get or create Desktop connector"""
        if not self.desktop_connector:
            self.desktop_connector = PowerBIDesktopConnector()
        return self.desktop_connector

    def _get_tom_connector(self) -> PowerBITOMConnector:
        """Get or create TOM connector instance"""
        if not self.tom_connector:
            self.tom_connector = PowerBITOMConnector()
        return self.tom_connector

    async def _handle_desktop_discover(self) -> str:
        """Discover running Power BI Desktop instances"""
        connector = self._get_desktop_connector()
        instances = await self._run_blocking(connector.discover_instances)

        if not instances:
            return "No Power BI Desktop instances found. Open a .pbix file in Power BI Desktop first."

        response = f"Found {len(instances)} Power BI Desktop instance(s):\n\n"
        for inst in instances:
            response += f"  - Port {inst['port']} (pid {inst['pid']})\n"
        response += "\nUse 'desktop_connect' with a port to load the model."
        return response

    async def _handle_desktop_connect(self, args: Dict[str, Any]) -> str:
        """Connect TOM to a Power BI Desktop instance"""
        if not PowerBITOMConnector.is_available():
            return "TOM (Tabular Object Model) is not available. Live model operations require Microsoft.AnalysisServices.Tabular.dll."

        port = args.get("port")
        if not port:
            port = await self._run_blocking(self._get_desktop_connector().default_port)
            if not port:
                return "No Power BI Desktop instances found."

        tom = self._get_tom_connector()
        success = await self._run_blocking(lambda: tom.connect(port))
        if not success:
            return f"Failed to connect to Power BI Desktop on port {port}."

        self.repository = tom.repository()
        self.snapshot_path = None
        summary = self.repository.get_model_summary()
        return (f"Connected to Power BI Desktop on port {port}: {summary['table_count']} tables, "
                f"{summary['total_measures']} measures, "
                f"{len(summary['calculation_groups'])} calculation group(s).")

    async def _handle_load_model_snapshot(self, args: Dict[str, Any]) -> str:
        """Load an offline model snapshot"""
        path = args.get("path")
        if not path:
            return "Error: 'path' is required"

        self.repository = await self._run_blocking(lambda: load_model_snapshot(path))
        self.snapshot_path = path
        summary = self.repository.get_model_summary()
        return (f"Loaded model snapshot '{path}': {summary['table_count']} tables, "
                f"{summary['total_measures']} measures.")

    async def _handle_export_model_snapshot(self, args: Dict[str, Any]) -> str:
        """Write the offline model to a snapshot file"""
        error = self._require_model()
        if error:
            return error
        if not isinstance(self.repository, InMemoryModelRepository):
            return "Error: only offline models can be exported as snapshots"

        path = args.get("path") or self.snapshot_path
        if not path:
            return "Error: 'path' is required"

        await self._run_blocking(lambda: save_model_snapshot(self.repository, path))
        return f"Model snapshot written to '{path}'."

    # ==================== INSPECTION HANDLERS ====================

    async def _handle_list_measures(self, args: Dict[str, Any]) -> str:
        """List measures of the active model"""
        error = self._require_model()
        if error:
            return error

        table_prefix = args.get("table_prefix") or ""
        include_hidden = args.get("include_hidden", False)

        measures = [
            m for m in await self._run_blocking(self.repository.measures)
            if m.table_name.startswith(table_prefix) and (include_hidden or not m.is_hidden)
        ]
        if not measures:
            return "No measures found."

        response = f"=== Measures ({len(measures)}) ===\n\n"
        for m in measures:
            hidden = " (hidden)" if m.is_hidden else ""
            response += f"  - {m.table_name}[{m.name}]{hidden}\n"
            if m.display_folder:
                response += f"      Folder: {m.display_folder}\n"
            if m.format_string:
                response += f"      Format: {m.format_string}\n"
        return response

    async def _handle_list_calculation_groups(self) -> str:
        """List calculation groups and their items"""
        error = self._require_model()
        if error:
            return error

        groups = await self._run_blocking(self.repository.calculation_groups)
        if not groups:
            return "No calculation groups found."

        response = f"=== Calculation Groups ({len(groups)}) ===\n\n"
        for group in groups:
            response += f"{group.name} (columns: {', '.join(group.columns) or '-'})\n"
            for item in group.calculation_items:
                response += f"  - {item.name}\n"
        return response

    async def _handle_scan_measure_references(self, args: Dict[str, Any]) -> str:
        """Show what references a measure"""
        error = self._require_model()
        if error:
            return error

        measure_name = args.get("measure_name")
        if not measure_name:
            return "Error: 'measure_name' is required"

        refs = await self._run_blocking(lambda: scan_measure_references(self.repository, measure_name))
        total = len(refs["measures"]) + len(refs["calculation_items"])

        response = f"=== References to [{measure_name}] ===\n\nTotal references found: {total}\n\n"
        if refs["measures"]:
            response += f"--- Measures ({len(refs['measures'])}) ---\n"
            for m in refs["measures"][:10]:
                response += f"  - {m['table']}[{m['name']}]\n"
            if len(refs["measures"]) > 10:
                response += f"  ... and {len(refs['measures']) - 10} more\n"
            response += "\n"
        if refs["calculation_items"]:
            response += f"--- Calculation Items ({len(refs['calculation_items'])}) ---\n"
            for i in refs["calculation_items"]:
                response += f"  - {i['table']}[{i['name']}] ({i['fields']})\n"
        return response

    # ==================== BATCH HANDLERS ====================

    async def _save_if_live(self, auto_save: bool) -> str:
        if not (auto_save and self._is_live()):
            return ""
        result = await self._run_blocking(self.tom_connector.save_changes)
        if result.success:
            self.changes.info(ChangeEventType.MODEL_SAVED, "Changes saved to Power BI Desktop")
            return "\nChanges saved to Power BI Desktop.\n"
        return f"\nWARNING: failed to save changes: {result.message}\n"

    async def _handle_generate_measures(self, args: Dict[str, Any]) -> str:
        """Handle time intelligence measure generation"""
        error = self._require_model()
        if error:
            return error

        overrides = {k: v for k, v in args.items() if k != "auto_save"}
        config = generator_config_from_dict(overrides, base=self.run_config.generator)

        generator = MeasureGenerator(self.repository, config, change_logger=self.changes)
        report = await self._run_blocking(generator.run)

        response = f"=== Generate Time Intelligence Measures ===\n\n{report.summary()}\n"
        if report.aborted:
            return response

        if report.failures:
            response += "\n--- Errors ---\n"
            for failure in report.failures:
                response += f"  [FAIL] {failure['measure']}: {failure['error']}\n"

        created = [c['measure'] for c in report.changes if c['action'] == "created"]
        if created:
            response += f"\n--- Created ({len(created)}) ---\n"
            for name in created[:20]:
                response += f"  - {name}\n"
            if len(created) > 20:
                response += f"  ... and {len(created) - 20} more\n"

        if report.created or report.updated:
            response += await self._save_if_live(args.get("auto_save", True))
        return response

    async def _handle_rename_measures(self, args: Dict[str, Any]) -> str:
        """Handle find-and-replace measure renaming"""
        error = self._require_model()
        if error:
            return error

        overrides = {k: v for k, v in args.items() if k != "auto_save"}
        config = rename_config_from_dict(overrides, base=self.run_config.rename)
        if not config.replacements:
            return "Error: 'replacements' array is required"

        propagator = RenamePropagator(self.repository, config, change_logger=self.changes)
        report = await self._run_blocking(propagator.run)

        response = "=== Rename Measures ===\n\n"
        if report.preview:
            response += "PREVIEW ONLY - nothing was changed. Reference counts are approximate.\n\n"
        response += f"{report.summary()}\n"
        if report.aborted:
            return response

        response += "\n--- Renames ---\n"
        for item in report.renames[:30]:
            response += f"  '{item['old_name']}' -> '{item['new_name']}' ({item['table']})\n"
        if len(report.renames) > 30:
            response += f"  ... and {len(report.renames) - 30} more\n"

        for warning in report.warnings:
            response += f"\nWARNING: {warning}\n"

        if not report.preview:
            response += await self._save_if_live(args.get("auto_save", True))
        return response

    async def _handle_save_changes(self) -> str:
        error = self._require_model()
        if error:
            return error

        if self._is_live():
            result = await self._run_blocking(self.tom_connector.save_changes)
            if result.success:
                self.changes.info(ChangeEventType.MODEL_SAVED, "Changes saved to Power BI Desktop")
            return result.message

        if self.snapshot_path:
            return await self._handle_export_model_snapshot({"path": self.snapshot_path})
        return "Nothing to save: the model is held in memory only."

    async def _handle_discard_changes(self) -> str:
        if not self._is_live():
            return "Discard is only supported for a live Power BI Desktop model."
        result = await self._run_blocking(self.tom_connector.discard_changes)
        return result.message

    async def _handle_change_log(self, args: Dict[str, Any]) -> str:
        """View recent change log entries"""
        count = args.get("count", 20)
        events = self.changes.get_recent_events(count)
        summary = self.changes.get_session_summary()

        response = f"=== Change Log (session {summary['session_id']}) ===\n\n"
        if not events:
            return response + "No changes recorded yet."

        for event in events:
            response += f"[{event['severity'].upper()}] {event['timestamp']} {event['message']}\n"
        response += f"\nTotals by severity: {json.dumps(summary['by_severity'])}\n"
        return response

    async def run(self):
        """Run the MCP server"""
        async with stdio_server() as (read_stream, write_stream):
            logger.info("Power BI Measure Tools MCP server starting...")
            await self.server.run(
                read_stream,
                write_stream,
                InitializationOptions(
                    server_name="powerbi-measure-tools",
                    server_version="1.0.0",
                    capabilities=self.server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={}
                    )
                )
            )


def main():
    """Main entry point"""
    server = MeasureToolsServer()
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
