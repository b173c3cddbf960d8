# -*- test-case-name: memcacheinjector -*-

# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
memcacheinjector: inspect, dump and tamper with the contents of memcached
servers over the ASCII protocol.
"""

from memcacheinjector._version import __version__ as version

__version__ = version.short()
