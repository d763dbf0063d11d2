"""
Run Configuration
Loads generator and rename options from YAML, and model snapshots from
YAML/JSON for offline runs.

Example (config/measure_tools.yaml):

    generator:
      calculation_group: Time Intelligence
      calculation_item_column: Time Calculation
      base_measures_display_folder: Base Measures
      exclude_table_prefixes: [Parameter, Calendar]
    rename:
      replacements:
        - from: Sales
          to: Revenue
      preview_only: true
"""
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from measure_generator import GeneratorConfig
from rename_propagator import RenameConfig
from tabular_model import InMemoryModelRepository, ModelError

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Invalid run configuration"""


_LIST_FIELDS = {'include_table_prefixes', 'exclude_table_prefixes',
                'exclude_name_substrings', 'percentage_indicators'}
_BOOL_FIELDS = {'group_by_calculation_item', 'overwrite_existing_measures',
                'update_in_place', 'escape_item_quotes',
                'include_hidden', 'update_calculation_items', 'preview_only'}


@dataclass
class RunConfig:
    """Options for both batch operations"""
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    rename: RenameConfig = field(default_factory=RenameConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'generator': self.generator.to_dict(),
            'rename': self.rename.to_dict()
        }


def _coerce(name: str, value: Any) -> Any:
    """Normalise YAML values (None lists from commented-out items, scalar lists)"""
    if name in _LIST_FIELDS:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list):
            raise ConfigError(f"'{name}' must be a list")
        return [str(v) for v in value]
    if name in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise ConfigError(f"'{name}' must be true or false")
        return value
    if value is None:
        return ""
    return str(value)


def _known_options(cls, data: Dict[str, Any], section: str) -> Dict[str, Any]:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown {section} option(s): {', '.join(sorted(unknown))}")
    return {k: v for k, v in data.items() if k in known}


def generator_config_from_dict(data: Optional[Dict[str, Any]],
                               base: Optional[GeneratorConfig] = None) -> GeneratorConfig:
    """
    Build a GeneratorConfig from a (partial) dictionary

    Args:
        data: Options, missing keys keep the values of `base`
        base: Starting configuration (defaults when omitted)
    """
    values = (base or GeneratorConfig()).to_dict()
    for key, value in _known_options(GeneratorConfig, data or {}, "generator").items():
        values[key] = _coerce(key, value)
    return GeneratorConfig(**values)


def parse_replacements(raw: Any) -> List[Tuple[str, str]]:
    """
    Parse replacement pairs

    Accepts a list of {"from": ..., "to": ...} mappings, a list of
    two-element lists, or a single {old: new} mapping (order preserved).
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [(str(k), "" if v is None else str(v)) for k, v in raw.items()]
    if not isinstance(raw, list):
        raise ConfigError("'replacements' must be a list of pairs")

    pairs = []
    for entry in raw:
        if isinstance(entry, dict):
            if 'from' not in entry:
                raise ConfigError(f"Replacement {entry} is missing 'from'")
            old, new = entry['from'], entry.get('to')
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            old, new = entry
        else:
            raise ConfigError(f"Invalid replacement entry: {entry!r}")
        pairs.append((str(old), "" if new is None else str(new)))
    return pairs


def rename_config_from_dict(data: Optional[Dict[str, Any]],
                            base: Optional[RenameConfig] = None) -> RenameConfig:
    """Build a RenameConfig from a (partial) dictionary"""
    base = base or RenameConfig()
    values = {
        'replacements': list(base.replacements),
        'table_prefix': base.table_prefix,
        'include_hidden': base.include_hidden,
        'update_calculation_items': base.update_calculation_items,
        'preview_only': base.preview_only,
    }
    for key, value in _known_options(RenameConfig, data or {}, "rename").items():
        if key == 'replacements':
            values[key] = parse_replacements(value)
        else:
            values[key] = _coerce(key, value)

    try:
        return RenameConfig(**values)
    except ValueError as e:
        raise ConfigError(str(e)) from e


def run_config_from_dict(config: Optional[Dict[str, Any]]) -> RunConfig:
    """Parse a configuration dictionary with generator/rename sections"""
    config = config or {}
    if not isinstance(config, dict):
        raise ConfigError("Run configuration must be a mapping")
    return RunConfig(
        generator=generator_config_from_dict(config.get('generator')),
        rename=rename_config_from_dict(config.get('rename'))
    )


def load_run_config(config_path: Optional[str]) -> RunConfig:
    """
    Load run options from a YAML configuration file

    Args:
        config_path: Path to the YAML file

    Returns:
        RunConfig (defaults when the file does not exist)

    Raises:
        ConfigError: The file exists but is not a valid configuration
    """
    if not config_path:
        return RunConfig()

    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Run config not found: {config_path}")
        return RunConfig()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {config_path}: {e}") from e

    run_config = run_config_from_dict(config)
    logger.info(f"Loaded run configuration from: {config_path}")
    return run_config


def export_run_config(config: RunConfig, path: str):
    """Export a configuration to a YAML file"""
    with open(path, 'w', encoding='utf-8') as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    logger.info(f"Exported run config to: {path}")


# ==================== MODEL SNAPSHOTS ====================

def load_model_snapshot(path: str) -> InMemoryModelRepository:
    """
    Load a model snapshot (.json, otherwise YAML) into an in-memory repository

    Raises:
        ConfigError: The file is missing or not a valid snapshot
    """
    snapshot_path = Path(path)
    if not snapshot_path.exists():
        raise ConfigError(f"Model snapshot not found: {path}")

    try:
        with open(snapshot_path, 'r', encoding='utf-8') as f:
            if snapshot_path.suffix.lower() == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        if data is not None and not isinstance(data, dict):
            raise ConfigError(f"Invalid model snapshot {path}: expected a mapping with 'tables'")
        repo = InMemoryModelRepository.from_dict(data or {})
    except (json.JSONDecodeError, yaml.YAMLError, KeyError, ModelError) as e:
        raise ConfigError(f"Invalid model snapshot {path}: {e}") from e

    logger.info(f"Loaded model snapshot from: {path}")
    return repo


def save_model_snapshot(repository: InMemoryModelRepository, path: str):
    """Write a model snapshot (.json, otherwise YAML)"""
    snapshot_path = Path(path)
    data = repository.to_dict()
    with open(snapshot_path, 'w', encoding='utf-8') as f:
        if snapshot_path.suffix.lower() == '.json':
            json.dump(data, f, indent=2)
        else:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    logger.info(f"Saved model snapshot to: {path}")
