"""
CoworkMemory Core Package
"""

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("cowork-memory")
except Exception:
    # Fallback for development or if package not installed
    __version__ = "1.4.0"
