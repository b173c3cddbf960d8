# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Interfaces of the pluggable parts of memcacheinjector.
"""

from zope.interface import Interface


class IPayloadCodec(Interface):
    """
    A reversible transformation applied to the values stored in a cache,
    for applications which compress what they store.
    """

    def encode(data):
        """
        Turn C{data} into its stored form.

        @type data: L{bytes}
        @rtype: L{bytes}
        """

    def decode(data):
        """
        Turn a stored value back into the original data.

        @type data: L{bytes}
        @rtype: L{bytes}

        @raise ValueError: If C{data} is not in the stored form.
        """


class IPayloadInjector(Interface):
    """
    Plants a payload under an existing key.

    No provider ships with memcacheinjector: which storage command is
    appropriate (C{set}, C{add}, C{cas}...) depends on the target
    application.
    """

    def inject(protocol, key, payload):
        """
        Store C{payload} under C{key}.

        @param protocol: The connection to the server.
        @type protocol: L{memcacheinjector.protocol.MemCacheDumpProtocol}

        @type key: L{bytes}

        @param payload: The payload, already encoded for the target.
        @type payload: L{bytes}

        @return: A L{Deferred} firing with a true value if the payload was
            stored.
        """
