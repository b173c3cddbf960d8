# -*- test-case-name: memcacheinjector.test.test_stats -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
Decoders for the answers to the memcached C{stats} family of commands.

The lines handled here have already lost their C{STAT} label (see
L{MemCacheDumpProtocol.sendLabeledList}).  Server output varies across
versions and configurations, so lines of an unexpected shape are dropped
instead of raising.
"""

from __future__ import annotations

from typing import Dict, Iterable

StatsTable = Dict[str, str]
TypedStatsTable = Dict[int, Dict[str, str]]


def _decode(line: bytes) -> str:
    return line.decode("utf-8", "replace")


def parseGeneralStats(lines: Iterable[bytes]) -> StatsTable:
    """
    Parse C{<name> <value>} lines, as answered to a bare C{stats}.

    @return: A mapping of stat name to raw value.
    """
    stats = {}
    for line in lines:
        parts = _decode(line).split(None, 1)
        if len(parts) != 2:
            continue
        name, value = parts
        stats[name] = value
    return stats


def parseTypedStats(lines: Iterable[bytes]) -> TypedStatsTable:
    """
    Parse C{<id>:<field> <value...>} lines, as answered to C{stats slabs} or
    C{stats conns}.

    The value is made of all the tokens after the field name, joined by a
    single space.

    @return: A mapping of id to a mapping of field name to raw value.
    """
    stats: TypedStatsTable = {}
    for line in lines:
        parts = _decode(line).split(":", 1)
        if len(parts) != 2:
            continue
        rawId, rest = parts
        try:
            statId = int(rawId)
        except ValueError:
            continue
        tokens = rest.split()
        if not tokens:
            continue
        stats.setdefault(statId, {})[tokens[0]] = " ".join(tokens[1:])
    return stats


def mergeTypedStats(table: TypedStatsTable, scan: TypedStatsTable) -> TypedStatsTable:
    """
    Overlay C{scan} on C{table} in place: fields of C{scan} replace those
    already known for the same id, other known fields are kept.

    @return: C{table}.
    """
    for statId, fields in scan.items():
        table.setdefault(statId, {}).update(fields)
    return table


__all__ = [
    "StatsTable",
    "TypedStatsTable",
    "parseGeneralStats",
    "parseTypedStats",
    "mergeTypedStats",
]
