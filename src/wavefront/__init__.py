"""WAVEFRONT: wave-based task orchestration with verified artifacts."""

__version__ = "1.0.0"
