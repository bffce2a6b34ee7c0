"""
Core package for the EduScan analysis engine.

Configuration, provenance and bootstrap helpers live here so the orchestration
code under ``apps/`` can be imported without a configured environment.
"""

from importlib import metadata


def get_version() -> str:
    """Return the installed project version."""
    try:
        return metadata.version("eduscan")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__all__ = ["get_version"]
