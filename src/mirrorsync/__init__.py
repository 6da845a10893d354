"""
MirrorSync: keeps a target system consistent with a source system.
"""

from .version import __version__

__all__ = ["__version__"]
