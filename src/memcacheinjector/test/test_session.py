# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Tests for L{memcacheinjector.session}.
"""

import gzip
import re
from io import BytesIO

from zope.interface import implementer

from twisted.internet.defer import succeed
from twisted.internet.testing import StringTransportWithDisconnection
from twisted.trial.unittest import SynchronousTestCase

from memcacheinjector.error import ServerError, TransportError
from memcacheinjector.interfaces import IPayloadInjector
from memcacheinjector.payload import GzipCodec
from memcacheinjector.protocol import MemCacheDumpProtocol
from memcacheinjector.session import InjectorSession, SessionState


class ScriptedTransport(StringTransportWithDisconnection):
    """
    A transport answering each command with the response registered for it
    in C{responses}.  A L{None} response drops the connection.
    """

    def __init__(self, responses):
        StringTransportWithDisconnection.__init__(self)
        self.responses = responses
        self.commands = []

    def write(self, data):
        StringTransportWithDisconnection.write(self, data)
        command = data[: -len(b"\r\n")]
        self.commands.append(command)
        response = self.responses[command]
        if response is None:
            self.loseConnection()
        else:
            self.protocol.dataReceived(response)


SLABS = b"STAT 1:chunk_size 96\r\nSTAT 1:total_chunks 10\r\nSTAT active_slabs 1\r\nEND\r\n"


@implementer(IPayloadInjector)
class RecordingInjector:
    def __init__(self):
        self.injected = []

    def inject(self, protocol, key, payload):
        self.injected.append((key, payload))
        return succeed(key != b"refused")


class InjectorSessionTests(SynchronousTestCase):
    """
    Tests for L{InjectorSession}.
    """

    def connect(self, responses, **kwargs):
        """
        Create a session over a protocol answering with C{responses}.
        """
        proto = MemCacheDumpProtocol(None)
        self.transport = ScriptedTransport(responses)
        self.transport.protocol = proto
        proto.makeConnection(self.transport)
        return InjectorSession(proto, **kwargs)

    def test_initialState(self):
        session = self.connect({})
        self.assertIs(session.state, SessionState.IDLE)
        self.assertEqual(session.keys, {})

    def test_collectStats(self):
        """
        L{InjectorSession.collectStats} gathers the general and
        per-connection stats without touching the slabs.
        """
        session = self.connect(
            {
                b"stats": b"STAT pid 123\r\nSTAT uptime 4567\r\nEND\r\n",
                b"stats conns": b"STAT 5:addr tcp:10.0.0.1:4000\r\n"
                b"STAT 5:state conn_waiting\r\nEND\r\n",
            }
        )
        stats, conns = self.successResultOf(session.collectStats())
        self.assertEqual(stats, {"pid": "123", "uptime": "4567"})
        self.assertEqual(conns, {5: {"addr": "tcp:10.0.0.1:4000", "state": "conn_waiting"}})
        self.assertEqual(session.slabs, {})
        self.assertIs(session.state, SessionState.STATS_COLLECTED)

    def test_discoverSlabsRepeatedly(self):
        """
        L{InjectorSession.discoverSlabs} merges each scan into the known
        slabs, keeping fields missing from the latest scan.
        """
        responses = {b"stats slabs": b"STAT 3:chunk_size 96\r\nEND\r\n"}
        session = self.connect(responses)
        self.successResultOf(session.discoverSlabs())
        responses[b"stats slabs"] = b"STAT 3:used_chunks 10\r\nEND\r\n"
        scan = self.successResultOf(session.discoverSlabs())
        self.assertEqual(scan, {3: {"used_chunks": "10"}})
        self.assertEqual(session.slabs, {3: {"chunk_size": "96", "used_chunks": "10"}})
        self.assertIs(session.state, SessionState.SLABS_DISCOVERED)

    def test_dumpExpiredKey(self):
        """
        A key which disappears between listing and fetching keeps a L{None}
        value and the run completes.
        """
        session = self.connect(
            {
                b"stats slabs": SLABS,
                b"stats cachedump 1 10000": b"ITEM a [2 b; 0 s]\r\nITEM b [2 b; 0 s]\r\nEND\r\n",
                b"get a": b"VALUE a 0 2\r\nx1\r\nEND\r\n",
                b"get b": b"END\r\n",
            }
        )
        self.successResultOf(session.discoverSlabs())
        self.assertEqual(self.successResultOf(session.dumpAllKeys()), 2)
        self.assertEqual(session.keys, {b"a": None, b"b": None})
        self.assertIs(session.state, SessionState.KEYS_DUMPED)
        self.assertEqual(self.successResultOf(session.fetchAllValues()), 1)
        self.assertEqual(session.keys, {b"a": b"x1", b"b": None})
        self.assertEqual(list(session.keys), [b"a", b"b"])
        self.assertIs(session.state, SessionState.VALUES_FETCHED)

    def test_slabFailureIsolated(self):
        """
        A protocol error while listing one slab is recorded and the other
        slabs are still listed.
        """
        session = self.connect(
            {
                b"stats cachedump 1 10": b"SERVER_ERROR busy\r\n",
                b"stats cachedump 2 10": b"ITEM k [1 b; 0 s]\r\nEND\r\n",
            },
            pageSize=10,
        )
        session.slabs = {2: {}, 1: {}}
        self.assertEqual(self.successResultOf(session.dumpAllKeys()), 1)
        self.assertEqual(session.failedSlabs, [1])
        self.assertEqual(session.keys, {b"k": None})
        self.assertEqual(
            self.transport.commands,
            [b"stats cachedump 1 10", b"stats cachedump 2 10"],
        )

    def test_keyFailureIsolated(self):
        """
        A protocol error while fetching one key is recorded and the other
        keys are still fetched.
        """
        session = self.connect(
            {
                b"get a": b"SERVER_ERROR object too large for cache\r\n",
                b"get b": b"VALUE b 0 1\r\nz\r\nEND\r\n",
            }
        )
        session.keys = {b"a": None, b"b": None}
        self.assertEqual(self.successResultOf(session.fetchAllValues()), 1)
        self.assertEqual(session.failedKeys, [b"a"])
        self.assertEqual(session.keys, {b"a": None, b"b": b"z"})

    def test_errorInsideValueIsolated(self):
        """
        An error marker arriving split inside a value fails that key only:
        the rest of its response is not taken as the value of the next keys.
        """
        proto = MemCacheDumpProtocol(None)
        transport = StringTransportWithDisconnection()
        transport.protocol = proto
        proto.makeConnection(transport)
        session = InjectorSession(proto)
        session.keys = {b"k1": None, b"k2": None, b"k3": None}
        d = session.fetchAllValues()
        proto.dataReceived(b"VALUE k1 0 9\r\nan ERROR ")
        proto.dataReceived(b"x\r\nEND\r\n")
        proto.dataReceived(b"VALUE k2 0 2\r\nv2\r\nEND\r\n")
        proto.dataReceived(b"VALUE k3 0 2\r\nv3\r\nEND\r\n")
        self.assertEqual(self.successResultOf(d), 2)
        self.assertEqual(session.keys, {b"k1": None, b"k2": b"v2", b"k3": b"v3"})
        self.assertEqual(session.failedKeys, [b"k1"])
        self.assertEqual(transport.value(), b"get k1\r\nget k2\r\nget k3\r\n")

    def test_valueForOtherKey(self):
        """
        A value announced for another key than the one fetched is recorded
        as a failure for that key, not stored under it.
        """
        session = self.connect(
            {
                b"get a": b"VALUE b 0 1\r\nz\r\nEND\r\n",
                b"get b": b"VALUE b 0 1\r\nz\r\nEND\r\n",
            }
        )
        session.keys = {b"a": None, b"b": None}
        self.assertEqual(self.successResultOf(session.fetchAllValues()), 1)
        self.assertEqual(session.keys, {b"a": None, b"b": b"z"})
        self.assertEqual(session.failedKeys, [b"a"])

    def test_transportErrorAborts(self):
        """
        A lost connection ends the scan with L{TransportError}.
        """
        session = self.connect({b"get a": None, b"get b": b"END\r\n"})
        session.keys = {b"a": None, b"b": None}
        self.failureResultOf(session.fetchAllValues(), TransportError)
        self.assertEqual(self.transport.commands, [b"get a"])

    def test_keyPattern(self):
        """
        Keys not matching C{keyPattern} are not kept.
        """
        session = self.connect(
            {b"stats cachedump 1 10000": b"ITEM user:1 [1 b; 0 s]\r\nITEM tmp [1 b; 0 s]\r\nEND\r\n"},
            keyPattern=re.compile(b"^user:"),
        )
        session.slabs = {1: {}}
        self.successResultOf(session.dumpAllKeys())
        self.assertEqual(list(session.keys), [b"user:1"])

    def test_keyAlreadyFetched(self):
        """
        Listing a key again doesn't forget its value.
        """
        session = self.connect({b"stats cachedump 1 10000": b"ITEM a [1 b; 0 s]\r\nEND\r\n"})
        session.slabs = {1: {}}
        session.keys = {b"a": b"v"}
        self.assertEqual(self.successResultOf(session.dumpAllKeys()), 0)
        self.assertEqual(session.keys, {b"a": b"v"})

    def test_emitKeys(self):
        """
        L{InjectorSession.emit} writes one key per line, in discovery order.
        """
        session = self.connect({})
        session.keys = {b"b": b"1", b"a": None}
        sink = BytesIO()
        self.assertEqual(session.emit(sink), 2)
        self.assertEqual(sink.getvalue(), b"b\na\n")
        self.assertIs(session.state, SessionState.REPORTED)

    def test_emitWithValues(self):
        """
        With C{withValues}, keys having a value are followed by it.
        """
        session = self.connect({})
        session.keys = {b"b": b"1", b"a": None}
        sink = BytesIO()
        session.emit(sink, withValues=True)
        self.assertEqual(sink.getvalue(), b"b 1\na\n")

    def test_emitValuePattern(self):
        """
        With a C{valuePattern}, only entries with a matching value are
        written.
        """
        session = self.connect({}, valuePattern=re.compile(b"secret"))
        session.keys = {b"a": b"my secret", b"b": b"public", b"c": None}
        sink = BytesIO()
        self.assertEqual(session.emit(sink, withValues=True), 1)
        self.assertEqual(sink.getvalue(), b"a my secret\n")

    def test_emitDecodes(self):
        """
        Values are decoded with the session codec; values it can't decode are
        written as they are.
        """
        session = self.connect({}, codec=GzipCodec())
        session.keys = {b"a": gzip.compress(b"hello"), b"b": b"plain"}
        sink = BytesIO()
        session.emit(sink, withValues=True)
        self.assertEqual(sink.getvalue(), b"a hello\nb plain\n")

    def test_stateNeverMovesBack(self):
        """
        Discovering slabs again after keys were dumped keeps the state.
        """
        session = self.connect({b"stats slabs": SLABS})
        session.state = SessionState.KEYS_DUMPED
        self.successResultOf(session.discoverSlabs())
        self.assertIs(session.state, SessionState.KEYS_DUMPED)

    def test_injectWithoutInjector(self):
        """
        Without an injector, L{InjectorSession.inject} fails with
        L{NotImplementedError} and sends nothing.
        """
        session = self.connect({})
        session.keys = {b"a": b"v"}
        self.failureResultOf(session.inject(None, b"payload"), NotImplementedError)
        self.assertEqual(self.transport.commands, [])

    def test_inject(self):
        """
        The injector is called with the encoded payload for every selected
        key, and the keys it stored the payload under are returned.
        """
        session = self.connect({}, valuePattern=re.compile(b"^v"))
        session.keys = {b"a": b"v1", b"refused": b"v2", b"c": b"other"}
        injector = RecordingInjector()
        injected = self.successResultOf(session.inject(injector, b"payload"))
        self.assertEqual(injected, [b"a"])
        self.assertEqual(
            injector.injected, [(b"a", b"payload"), (b"refused", b"payload")]
        )

    def test_injectFailureIsolated(self):
        """
        A protocol error from the injector is recorded and the next keys are
        still handled.
        """

        @implementer(IPayloadInjector)
        class FailingInjector:
            def inject(self, protocol, key, payload):
                if key == b"a":
                    raise ServerError("no")
                return succeed(True)

        session = self.connect({})
        session.keys = {b"a": None, b"b": None}
        injected = self.successResultOf(session.inject(FailingInjector(), b"p"))
        self.assertEqual(injected, [b"b"])
        self.assertEqual(session.failedKeys, [b"a"])
