"""
State manager for pymmdist.

Handles saving and loading grid, kernel and solver settings in a
hierarchical JSON format.  The state file is human-readable and can be
edited manually if needed.
"""

from __future__ import annotations

import json
import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)


def get_default_state_file() -> Path:
    """
    Get the default state file path.

    Returns the path to ~/.pymmdist/state.json
    """
    home = Path.home()
    state_dir = home / '.pymmdist'
    state_dir.mkdir(exist_ok=True)
    return state_dir / 'state.json'


class StateManager:
    """
    Manages persistent settings for pymmdist.

    The state is stored in a hierarchical JSON structure:
    {
        "version": "1.0",
        "grid": { ... },
        "tikhonov": { ... },
        ...
    }

    Grid and kernel settings live in ``grid``, ``partial_grid`` and
    ``kernel`` (applied by ``pymmdist.batch.kernel_from_config``); each solver
    has its own section carrying an ``enabled`` flag
    read by ``pymmdist.batch.run_inversions``.
    """

    # Default state for the entire package
    DEFAULT_STATE = {
        "version": "1.0",
        "grid": {
            "schema_version": 1,
            "span": [[0.01, 100.0], [10.0, 1000.0]],   # [mass (fg), mobility diameter (nm)]
            "ne": [50, 64],
            "discrete": "logarithmic",
        },
        "partial_grid": {
            "schema_version": 1,
            "enabled": True,
            "r0": None,         # y-intercept or [y, x] point of the upper cut (None: 0)
            "slope0": 1.0,
            "r1": None,         # no lower cut
            "slope1": 0.0,
        },
        "kernel": {
            "schema_version": 1,
            "charge_states": [1, 2, 3],
            "threshold": 1e-7,
            "charge_axis": 1,
        },
        "tikhonov": {
            "schema_version": 1,
            "enabled": True,
            "lambda": 1.0,
            "order": 1,
            "nonneg": True,
        },
        "exp_dist": {
            "schema_version": 1,
            "enabled": False,
            "lambda": 1.0,
            "Gd": [[0.09, 0.0], [0.0, 0.04]],   # correlation covariance in log10 space
            "nonneg": False,
            "truncation": 0.01,
        },
        "twomey": {
            "schema_version": 1,
            "enabled": False,
            "iterations": 500,
            "smooth": False,
            "tol": None,
        },
        "mart": {
            "schema_version": 1,
            "enabled": False,
            "iterations": 100,
            "relaxation": 1.0,
            "tol": None,
        },
    }

    def __init__(self, state_file: Optional[Path] = None):
        """
        Initialize the state manager.

        Args:
            state_file: Path to state file. If None, uses default location.
        """
        self.state_file = Path(state_file) if state_file is not None else get_default_state_file()
        self.state = deepcopy(self.DEFAULT_STATE)
        self.load()

    def load(self) -> bool:
        """
        Load state from file.

        Returns:
            True if state was loaded, False if using defaults
        """
        if not self.state_file.exists():
            log.info(f"State file not found: {self.state_file}; using default state")
            return False

        try:
            with open(self.state_file, 'r') as f:
                loaded_state = json.load(f)
        except (OSError, ValueError) as e:
            log.error(f"Error loading state file {self.state_file}: {e}; using default state")
            return False

        if not isinstance(loaded_state, dict):
            log.error(f"State file {self.state_file} does not hold a JSON object; using default state")
            return False

        # Schema versions must be read before merging: the merge fills absent
        # keys from DEFAULT_STATE.
        loaded_versions = {
            tool: section.get('schema_version', 0)
            for tool, section in loaded_state.items()
            if isinstance(section, dict)
        }

        self.state = self._merge_state(self.DEFAULT_STATE, loaded_state)
        self._migrate_state(loaded_versions)
        log.info(f"Loaded state from: {self.state_file}")
        return True

    def save(self) -> bool:
        """
        Save current state to file.

        Returns:
            True if successful, False otherwise
        """
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, 'w') as f:
                json.dump(self.state, f, indent=2)
        except (OSError, TypeError) as e:
            log.error(f"Error saving state file {self.state_file}: {e}")
            return False

        log.info(f"Saved state to: {self.state_file}")
        return True

    def get(self, tool: str, key: Optional[str] = None, default: Any = None) -> Any:
        """
        Get state for a tool or specific key.

        Args:
            tool: Section name (e.g., "tikhonov")
            key: Optional key within the section
            default: Default value if not found

        Returns:
            State value or default
        """
        tool_state = self.state.get(tool, {})

        if key is None:
            return tool_state

        return tool_state.get(key, default)

    def set(self, tool: str, key: str, value: Any):
        """Set a single value in a section, creating the section if needed."""
        if tool not in self.state:
            self.state[tool] = {}

        self.state[tool][key] = value

    def update(self, tool: str, state_dict: Dict[str, Any]):
        """
        Update multiple state values for a tool.

        Args:
            tool: Section name (e.g., "grid")
            state_dict: Dictionary of key-value pairs to update
        """
        if tool not in self.state:
            self.state[tool] = {}

        self.state[tool].update(state_dict)

    def reset(self, tool: Optional[str] = None):
        """
        Reset state to defaults.

        Args:
            tool: Section to reset. If None, resets all sections.
        """
        if tool is None:
            self.state = deepcopy(self.DEFAULT_STATE)
        elif tool in self.DEFAULT_STATE:
            self.state[tool] = deepcopy(self.DEFAULT_STATE[tool])

    def export_tool_state(self, tool: str, export_path: Path) -> bool:
        """
        Export one section to a separate file.

        This is useful for sharing solver settings or creating presets.

        Returns:
            True if successful, False otherwise
        """
        try:
            with open(export_path, 'w') as f:
                json.dump(self.state.get(tool, {}), f, indent=2)
        except (OSError, TypeError) as e:
            log.error(f"Error exporting {tool} state: {e}")
            return False

        log.info(f"Exported {tool} state to: {export_path}")
        return True

    def import_tool_state(self, tool: str, import_path: Path) -> bool:
        """
        Import one section from a separate file.

        Returns:
            True if successful, False otherwise
        """
        try:
            with open(import_path, 'r') as f:
                tool_state = json.load(f)
        except (OSError, ValueError) as e:
            log.error(f"Error importing {tool} state: {e}")
            return False

        if tool in self.DEFAULT_STATE and isinstance(tool_state, dict):
            tool_state = self._merge_state(self.DEFAULT_STATE[tool], tool_state)
        self.state[tool] = tool_state
        log.info(f"Imported {tool} state from: {import_path}")
        return True

    def _migrate_state(self, loaded_versions: Dict[str, int]):
        """
        Upgrade sections saved under an older schema.

        For every section whose on-disk ``schema_version`` is older than the
        default, values whose JSON type no longer matches the default (for
        example a scalar where a list is now expected) are reset to the
        default, then the section is stamped with the current version.

        Args:
            loaded_versions: ``{section: schema_version}`` read from the file
                *before* merging with DEFAULT_STATE (0 when absent).
        """
        for tool, defaults in self.DEFAULT_STATE.items():
            if not isinstance(defaults, dict) or 'schema_version' not in defaults:
                continue
            target_version = defaults['schema_version']
            stored_version = loaded_versions.get(tool, target_version)
            if stored_version >= target_version:
                continue

            section = self.state[tool]
            for key, default in defaults.items():
                if default is None or key == 'schema_version':
                    continue
                value = section.get(key)
                if not _same_kind(value, default):
                    log.warning(
                        f"State '{tool}.{key}' = {value!r} is incompatible with schema "
                        f"version {target_version}; reset to {default!r}"
                    )
                    section[key] = deepcopy(default)
            section['schema_version'] = target_version

    def _merge_state(self, default: Dict, loaded: Dict) -> Dict:
        """
        Merge loaded state with default state.

        This ensures that new fields in DEFAULT_STATE are present even
        if they weren't in the loaded state file.
        """
        merged = deepcopy(default)

        for key, value in loaded.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self._merge_state(merged[key], value)
            else:
                merged[key] = value

        return merged


def _same_kind(value: Any, default: Any) -> bool:
    """True when ``value`` has the JSON type of ``default`` (ints count as numbers)."""
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(default, list):
        return isinstance(value, list)
    return isinstance(value, type(default))
