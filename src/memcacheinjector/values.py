# -*- test-case-name: memcacheinjector.test.test_values -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Retrieval of the value stored under a single key.
"""

from __future__ import annotations

from typing import List, Optional

from twisted.internet.defer import fail

from memcacheinjector.error import ClientError, ProtocolError
from memcacheinjector.protocol import DELIMITER

MAX_KEY_LENGTH = 250


def checkKey(key) -> Optional[str]:
    """
    Check that C{key} can be sent in a command line.

    @return: A description of the problem, or L{None} if the key is valid.
    """
    if not isinstance(key, bytes):
        return "Invalid type for key: %s, expecting bytes" % (type(key),)
    if not key:
        return "Empty key"
    if len(key) > MAX_KEY_LENGTH:
        return "Key too long"
    if any(byte <= 0x20 or byte == 0x7F for byte in key):
        return "Key contains whitespace or control characters: %r" % (key,)
    return None


def parseValueResponse(
    lines: List[bytes], key: Optional[bytes] = None
) -> Optional[bytes]:
    """
    Extract the payload from the answer to a single-key C{get}.

    A hit is a C{VALUE <key> <flags> <bytes>} header followed by the payload.
    When the announced length can be read, exactly that many bytes are
    returned, so payloads spanning several lines come back whole.

    @param key: If not L{None}, the key which was asked for.

    @return: The payload, or L{None} on a miss.

    @raise ProtocolError: If the header is for another key than C{key}.
    """
    if not lines or not lines[0].startswith(b"VALUE "):
        return None
    header = lines[0].split()
    if key is not None and header[1:2] != [key]:
        raise ProtocolError(
            "Got a value for %r while asking for %r"
            % (b" ".join(header[1:2]), key),
            DELIMITER.join(lines),
        )
    if len(header) >= 4:
        try:
            length = int(header[3])
        except ValueError:
            pass
        else:
            return DELIMITER.join(lines[1:])[:length]
    if len(lines) > 1:
        return lines[1]
    return b""


def fetchValue(protocol, key: bytes):
    """
    Get the value stored under C{key}.

    A miss is not an error: keys listed by a cachedump may have expired or
    been evicted by the time they are fetched.

    @type protocol: L{memcacheinjector.protocol.MemCacheDumpProtocol}

    @return: A L{Deferred} firing with the value, or L{None} on a miss.  It
        fails with L{ClientError} without sending anything if C{key} is
        invalid, and with L{ProtocolError} if the server answers with the
        value of another key.
    """
    problem = checkKey(key)
    if problem is not None:
        return fail(ClientError(problem))
    return protocol.sendCommand(b"get " + key).addCallback(parseValueResponse, key)


__all__ = ["MAX_KEY_LENGTH", "checkKey", "parseValueResponse", "fetchValue"]
