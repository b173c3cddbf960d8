# -*- test-case-name: memcacheinjector.test.test_protocol -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Framing of memcached ASCII protocol exchanges.

L{MemCacheDumpProtocol} sends one command line at a time and accumulates the
answer until the end marker or an error marker shows up in the received
bytes.  The answer is handed back as a list of lines, without the end marker::

    from twisted.internet import reactor
    from twisted.internet.endpoints import HostnameEndpoint
    from memcacheinjector.protocol import connect, DEFAULT_PORT

    d = connect(HostnameEndpoint(reactor, "localhost", DEFAULT_PORT))
    d.addCallback(lambda proto: proto.sendLabeledList(b"stats", b"STAT"))

Only one command may be outstanding at a time: the dump workflows never
pipeline, so a response can always be attributed to the command that was
sent last.

Framing relies on C{\\r\\nEND\\r\\n} and C{ERROR} never appearing inside a
stored value.  A value containing them makes its own fetch end early or fail.
"""

from __future__ import annotations

from typing import List, Optional

from twisted.internet.defer import Deferred, fail
from twisted.internet.endpoints import connectProtocol
from twisted.internet.error import ConnectError, DNSLookupError
from twisted.internet.protocol import Protocol
from twisted.logger import Logger
from twisted.protocols.policies import TimeoutMixin

from memcacheinjector.error import (
    ClientError,
    NoSuchCommand,
    ProtocolError,
    ServerError,
    TransportError,
)

DEFAULT_PORT = 11211

DELIMITER = b"\r\n"
END = b"END" + DELIMITER
ERROR = b"ERROR"

log = Logger()


class Command:
    """
    Wrap a command sent to the server, along with the L{Deferred} fired when
    its response is complete.

    @ivar command: The command line sent to the server, without delimiter.
    @type command: L{bytes}
    """

    def __init__(self, command: bytes) -> None:
        self.command = command
        self._deferred: Deferred[List[bytes]] = Deferred()

    def success(self, value):
        """
        Shortcut method to fire the underlying deferred.
        """
        self._deferred.callback(value)

    def fail(self, error):
        """
        Make the underlying deferred fail.
        """
        self._deferred.errback(error)


def _errorFromBuffer(buffer: bytes) -> ProtocolError:
    """
    Build the L{ProtocolError} matching the error marker found in C{buffer}.
    """
    errorLine = buffer
    for line in buffer.split(DELIMITER):
        if ERROR in line:
            errorLine = line
            break
    token, _, text = errorLine.strip().partition(b" ")
    message = text.decode("utf-8", "replace")
    if token.endswith(b"CLIENT_ERROR"):
        return ClientError(message or "Invalid input", buffer)
    elif token.endswith(b"SERVER_ERROR"):
        return ServerError(message or "Server error", buffer)
    return NoSuchCommand(
        message or "Non-existent command sent: %r" % (buffer,), buffer
    )


class MemCacheDumpProtocol(Protocol, TimeoutMixin):
    """
    Line framing for the memcached commands used to inspect a server.

    @ivar persistentTimeOut: The number of seconds to wait for the next chunk
        of a response before giving up on the connection, or L{None} to wait
        forever.
    @type persistentTimeOut: L{int} or L{None}

    @ivar _current: The command waiting for an answer, if any.
    @type _current: L{Command} or L{None}

    @ivar _buffer: Bytes received so far for C{_current}.
    @type _buffer: L{bytes}

    @ivar _skipBytes: Number of bytes of a failed response still expected
        from the server, to be thrown away.
    @type _skipBytes: L{int}

    @ivar _skipMarker: If not L{None}, received bytes are thrown away up to
        and including this marker, which ends a failed response.
    @type _skipMarker: L{bytes} or L{None}

    @ivar _disconnected: Indicate if the connectionLost has been called or
        not.
    @type _disconnected: L{bool}
    """

    _current: Optional[Command] = None
    _skipBytes = 0
    _skipMarker: Optional[bytes] = None
    _errorTail = b""
    _disconnected = False

    def __init__(self, timeOut: Optional[int] = 60) -> None:
        """
        Create the protocol.

        @param timeOut: The time to wait for a response before detecting that
            the connection is dead and closing it, in seconds.
        """
        self._buffer = b""
        self.persistentTimeOut = self.timeOut = timeOut

    def timeoutConnection(self):
        """
        Fail the outstanding command and close the connection.
        """
        command = self._current
        self._current = None
        if command is not None:
            command.fail(
                TransportError(
                    "Timed out waiting for a response to %r" % (command.command,)
                )
            )
        self.transport.loseConnection()

    def connectionLost(self, reason):
        """
        Cause the outstanding command, if any, to fail.
        """
        self._disconnected = True
        self.setTimeout(None)
        command = self._current
        self._current = None
        if command is not None:
            command.fail(
                TransportError(
                    "Connection lost while waiting for a response to %r"
                    % (command.command,),
                    reason,
                )
            )
        Protocol.connectionLost(self, reason)

    def sendCommand(self, command: bytes) -> Deferred[List[bytes]]:
        """
        Send C{command} and collect the lines of its response.

        @param command: The command line, without the trailing delimiter.

        @return: A L{Deferred} firing with the list of response lines, the end
            marker excluded.  It fails with a L{ProtocolError} if the server
            answers with an error marker, and with a L{TransportError} if the
            connection is lost or times out first.
        """
        if self._disconnected:
            return fail(TransportError("not connected"))
        if not isinstance(command, bytes):
            return fail(
                ClientError(
                    "Invalid type for command: %s, expecting bytes" % (type(command),)
                )
            )
        if self._current is not None:
            return fail(
                ClientError(
                    "Cannot send %r while %r is waiting for a response"
                    % (command, self._current.command)
                )
            )
        current = self._current = Command(command)
        self._buffer = b""
        self.setTimeout(self.persistentTimeOut)
        self.transport.write(command + DELIMITER)
        return current._deferred

    def sendLabeledList(self, command: bytes, label: bytes) -> Deferred[List[bytes]]:
        """
        Send C{command} and return its response lines stripped of their
        C{label} prefix, such as C{STAT} or C{ITEM}.  Lines which don't carry
        the label are dropped.
        """
        prefix = label.upper() + b" "

        def strip(lines):
            return [line[len(prefix) :] for line in lines if line.startswith(prefix)]

        return self.sendCommand(command).addCallback(strip)

    def dataReceived(self, data):
        """
        Accumulate C{data} for the outstanding command.
        """
        # Rest of a response whose command was already failed.
        if self._skipBytes:
            skipped = min(self._skipBytes, len(data))
            self._skipBytes -= skipped
            data = data[skipped:]
            if not data:
                return
        if self._skipMarker is not None:
            marker = self._skipMarker
            self._errorTail += data
            index = self._errorTail.find(marker)
            if index == -1:
                self._errorTail = self._errorTail[-(len(marker) - 1) :]
                return
            data = self._errorTail[index + len(marker) :]
            self._errorTail = b""
            self._skipMarker = None
            if not data:
                return
        if self._current is None:
            log.debug("Discarding {size} unexpected bytes", size=len(data))
            return
        self.resetTimeout()
        self._buffer += data
        self._checkBuffer()

    def _checkBuffer(self):
        """
        Look for an error marker or the end marker in the whole buffer, since
        either may have been split across reads.
        """
        buffer = self._buffer
        if ERROR in buffer:
            command = self._finish()
            self._skipErrorResponse(buffer)
            log.debug(
                "Error response to {command!r}: {buffer!r}",
                command=command.command,
                buffer=buffer,
            )
            command.fail(_errorFromBuffer(buffer))
            return

        if buffer.startswith(END):
            body = b""
            rest = buffer[len(END) :]
        else:
            index = buffer.find(DELIMITER + END)
            if index == -1:
                return
            body = buffer[:index]
            rest = buffer[index + len(DELIMITER + END) :]
        if rest:
            log.debug("Discarding {size} bytes after end marker", size=len(rest))
        command = self._finish()
        command.success(body.split(DELIMITER) if body else [])

    def _skipErrorResponse(self, buffer: bytes) -> None:
        """
        Arrange for the part of a failed response not yet in C{buffer} to be
        thrown away, so it isn't taken as the answer to the next command.

        An error marker found inside a C{VALUE} payload doesn't end the
        response: the rest of the payload, as announced by the header, is
        stepped over and then everything up to the end marker.  Any other
        error ends with its own line.
        """
        if buffer.startswith(b"VALUE "):
            marker = DELIMITER + END
            header, sep, _ = buffer.partition(DELIMITER)
            fields = header.split()
            if sep and len(fields) >= 4 and fields[3].isdigit():
                payloadEnd = len(header) + len(DELIMITER) + int(fields[3])
                self._skipBytes = max(payloadEnd - len(buffer), 0)
                tail = buffer[payloadEnd:]
            else:
                tail = buffer
            if marker in tail:
                self._skipBytes = 0
                return
            self._skipMarker = marker
            self._errorTail = tail[-(len(marker) - 1) :]
        elif not buffer.endswith(DELIMITER):
            self._skipMarker = DELIMITER
            self._errorTail = b""

    def _finish(self) -> Command:
        """
        Forget the outstanding command and stop its timeout, so that the
        next command can be sent from the callbacks of this one.
        """
        command = self._current
        self._current = None
        self._buffer = b""
        self.setTimeout(None)
        return command


def connect(endpoint, timeOut: Optional[int] = 60) -> Deferred[MemCacheDumpProtocol]:
    """
    Connect a L{MemCacheDumpProtocol} through C{endpoint}.

    @param endpoint: An L{IStreamClientEndpoint} provider, usually a
        L{twisted.internet.endpoints.HostnameEndpoint}.

    @param timeOut: Response timeout given to the protocol.

    @return: A L{Deferred} firing with the connected protocol, or failing
        with L{TransportError} if the connection can't be established.
    """

    def cannotConnect(failure):
        failure.trap(ConnectError, DNSLookupError)
        raise TransportError(
            "Could not connect to %s: %s" % (endpoint, failure.getErrorMessage()),
            failure,
        )

    d = connectProtocol(endpoint, MemCacheDumpProtocol(timeOut))
    return d.addErrback(cannotConnect)


__all__ = [
    "DEFAULT_PORT",
    "Command",
    "MemCacheDumpProtocol",
    "connect",
]
