# -*- test-case-name: memcacheinjector.test.test_payload -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
L{IPayloadCodec} providers for the compression schemes commonly used by
memcached clients.
"""

import gzip
import zlib

from zope.interface import implementer

from memcacheinjector.interfaces import IPayloadCodec


@implementer(IPayloadCodec)
class PassThroughCodec:
    """
    Values are stored as they are.
    """

    def encode(self, data):
        return data

    def decode(self, data):
        return data


@implementer(IPayloadCodec)
class GzipCodec:
    """
    Values are stored as gzip streams.
    """

    def encode(self, data):
        return gzip.compress(data)

    def decode(self, data):
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise ValueError("Not a gzip payload: %s" % (e,))


@implementer(IPayloadCodec)
class DeflateCodec:
    """
    Values are stored as zlib streams.
    """

    def encode(self, data):
        return zlib.compress(data)

    def decode(self, data):
        try:
            return zlib.decompress(data)
        except zlib.error as e:
            raise ValueError("Not a zlib payload: %s" % (e,))


codecs = {
    "none": PassThroughCodec,
    "gzip": GzipCodec,
    "deflate": DeflateCodec,
}


def codecNamed(name):
    """
    Create the codec registered as C{name} in L{codecs}.

    @raise KeyError: If no codec has that name.
    """
    return codecs[name]()


__all__ = ["PassThroughCodec", "GzipCodec", "DeflateCodec", "codecs", "codecNamed"]
