"""
Version management for MirrorSync.
"""

from importlib.metadata import PackageNotFoundError, version

# Used when running from a source checkout that was never installed
BASE_VERSION = "0.1.0"

DISTRIBUTION_NAME = "mirrorsync"


def get_version() -> str:
    """
    Get the current version.

    - The installed distribution's version when the package is installed
    - Otherwise the base version
    """
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return BASE_VERSION


def get_user_agent() -> str:
    """User-Agent sent by connectors on every request."""
    return f"mirrorsync/{get_version()}"


# Export the version
__version__ = get_version()
