# -*- test-case-name: memcacheinjector.test.test_protocol -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Exceptions raised while talking to a memcached server.

Two families are distinguished.  A L{TransportError} means the connection
itself is gone or stuck, and nothing more can be asked of it.  A
L{ProtocolError} means the server answered a single command with an error
marker; the connection is still usable for the next command.
"""


class TransportError(Exception):
    """
    The connection was refused, reset, lost or timed out.

    @ivar reason: The underlying failure or exception, if any.
    """

    def __init__(self, message, reason=None):
        Exception.__init__(self, message)
        self.reason = reason


class ProtocolError(Exception):
    """
    The server returned an error marker in response to a command.

    @ivar buffer: The bytes accumulated for the command when the error marker
        was found.
    @type buffer: L{bytes}
    """

    def __init__(self, message, buffer=b""):
        Exception.__init__(self, message)
        self.buffer = buffer


class NoSuchCommand(ProtocolError):
    """
    The server does not know the command sent (plain C{ERROR} answer).
    """


class ClientError(ProtocolError):
    """
    Error caused by an invalid client call, either rejected locally or
    answered with C{CLIENT_ERROR} by the server.
    """


class ServerError(ProtocolError):
    """
    Problem happening on the server (C{SERVER_ERROR} answer).
    """


__all__ = [
    "TransportError",
    "ProtocolError",
    "NoSuchCommand",
    "ClientError",
    "ServerError",
]
