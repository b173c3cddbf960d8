# -*- test-case-name: memcacheinjector.test.test_cachedump -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Listing of the keys resident in one slab, through the C{stats cachedump}
debug command.  The listing is approximate: the server may omit items
modified while it is produced.
"""

from __future__ import annotations

from typing import Iterable, List

DEFAULT_PAGE_SIZE = 10000


def parseCacheDump(lines: Iterable[bytes]) -> List[bytes]:
    """
    Extract the key names from C{<key> [<size> b; <expiry> s]} lines, in the
    order the server listed them.  Blank lines are dropped.
    """
    keys = []
    for line in lines:
        tokens = line.split(None, 1)
        if tokens:
            keys.append(tokens[0])
    return keys


def listKeysInSlab(protocol, slabId: int, pageSize: int = DEFAULT_PAGE_SIZE):
    """
    Ask the server for at most C{pageSize} keys stored in slab C{slabId}.

    @type protocol: L{memcacheinjector.protocol.MemCacheDumpProtocol}

    @return: A L{Deferred} firing with the list of keys, possibly empty.
    """
    command = b"stats cachedump %d %d" % (slabId, pageSize)
    return protocol.sendLabeledList(command, b"ITEM").addCallback(parseCacheDump)


__all__ = ["DEFAULT_PAGE_SIZE", "parseCacheDump", "listKeysInSlab"]
