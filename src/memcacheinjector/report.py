# -*- test-case-name: memcacheinjector.test.test_report -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Human readable summaries of the stats gathered by an L{InjectorSession}.
"""

from __future__ import annotations

from typing import Dict, Iterator, Mapping

from attrs import frozen


def _toInt(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@frozen
class ConnectionSummary:
    """
    What one client connection is doing, from C{stats conns}.
    """

    fd: int
    address: str
    state: str
    idleSeconds: str

    @classmethod
    def fromFields(cls, fd: int, fields: Mapping[str, str]) -> ConnectionSummary:
        return cls(
            fd,
            fields.get("addr", "?"),
            fields.get("state", "?"),
            fields.get("secs_since_last_cmd", "?"),
        )

    def __str__(self) -> str:
        return f"{self.address} in {self.state} state for {self.idleSeconds}s"


@frozen
class SlabUsage:
    """
    Chunk usage of one slab class, from C{stats slabs}.

    @ivar allocated: Bytes of memory given to the slab class.
    """

    slabId: int
    usedChunks: int
    totalChunks: int
    allocated: int

    @classmethod
    def fromFields(cls, slabId: int, fields: Mapping[str, str]) -> SlabUsage:
        allocated = (
            _toInt(fields.get("chunk_size"))
            * _toInt(fields.get("chunks_per_page"))
            * _toInt(fields.get("total_pages"))
        )
        return cls(
            slabId,
            _toInt(fields.get("used_chunks")),
            _toInt(fields.get("total_chunks")),
            allocated,
        )

    def __str__(self) -> str:
        return (
            f"#{self.slabId}: {self.usedChunks}/{self.totalChunks} chunks "
            f"(allocated {self.allocated}B)"
        )


def _heading(title: str) -> Iterator[str]:
    yield ""
    yield "-" * len(title)
    yield title
    yield "-" * len(title)


def formatReport(
    stats: Mapping[str, str],
    connections: Mapping[int, Dict[str, str]],
    slabs: Mapping[int, Dict[str, str]],
) -> Iterator[str]:
    """
    Lay out the general stats, the active connections and the slab usage as
    lines of text.
    """
    yield from _heading("General Stats")
    for name in sorted(stats):
        yield f"{name}: {stats[name]}"

    yield from _heading("Active Connections")
    for fd in sorted(connections):
        yield str(ConnectionSummary.fromFields(fd, connections[fd]))

    yield from _heading("Slab Stats")
    for slabId in sorted(slabs):
        yield str(SlabUsage.fromFields(slabId, slabs[slabId]))


__all__ = ["ConnectionSummary", "SlabUsage", "formatReport"]
