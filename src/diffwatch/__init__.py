"""diffwatch: git diff capture, parsing and working-tree change watching."""

__version__ = "0.1.0"
