"""Generate Formal Reasoning Mode documents that pass schema validation."""

__version__ = "0.1.0"
