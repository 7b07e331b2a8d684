"""
State management for pymmdist.

Stores grid, kernel and solver settings across sessions in a JSON file.
"""

from .state_manager import StateManager, get_default_state_file

__all__ = ['StateManager', 'get_default_state_file']
