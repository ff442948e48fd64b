"""CRM AI segments: filter AST, segment execution and AI filter state."""

__version__ = "1.0.0"
