"""
Provides memcacheinjector version information.
"""

from incremental import Version

__version__ = Version("memcacheinjector", 1, 0, 0)
__all__ = ["__version__"]
