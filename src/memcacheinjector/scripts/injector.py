# -*- test-case-name: memcacheinjector.test.test_injector -*-
# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

"""
The C{memcache-injector} command: dump, stats and inject sub-commands.
"""

import base64
import binascii
import re
import sys

from twisted.internet.defer import inlineCallbacks
from twisted.internet.endpoints import HostnameEndpoint
from twisted.internet.task import react
from twisted.logger import (
    FilteringLogObserver,
    LogLevel,
    LogLevelFilterPredicate,
    Logger,
    globalLogBeginner,
    textFileLogObserver,
)
from twisted.python import usage
from twisted.python.filepath import FilePath

from memcacheinjector.cachedump import DEFAULT_PAGE_SIZE
from memcacheinjector.error import ProtocolError, TransportError
from memcacheinjector.payload import codecNamed, codecs
from memcacheinjector.protocol import DEFAULT_PORT, connect
from memcacheinjector.report import formatReport
from memcacheinjector.session import InjectorSession

log = Logger()

CONNECT_TIMEOUT = 30


def _compileRegex(value):
    try:
        return re.compile(value.encode("utf-8"))
    except re.error as e:
        raise ValueError("invalid regular expression %r: %s" % (value, e))


_compileRegex.coerceDoc = "A Python regular expression."


def _timeoutCoerce(value):
    value = int(value)
    if value < 0:
        raise ValueError("Timeout must not be negative: %s" % (value,))
    return value


_timeoutCoerce.coerceDoc = "Seconds, 0 to wait forever."


class _TargetOptions(usage.Options):
    """
    Options shared by the sub-commands which talk to a server.
    """

    optParameters = [
        ["target", "t", None, "Target hostname."],
        ["port", None, DEFAULT_PORT, "Target port.", usage.portCoerce],
        [
            "timeout",
            None,
            60,
            "Time to wait for each response before giving up.",
            _timeoutCoerce,
        ],
    ]

    def postOptions(self):
        if self["target"] is None:
            raise usage.UsageError("A target hostname is required (--target).")


class _FilterOptions(usage.Options):
    optParameters = [
        ["key", "k", None, "Regex to filter keys by.", _compileRegex],
        ["value", "v", None, "Regex to filter values by.", _compileRegex],
        [
            "codec",
            "c",
            "none",
            "How values are stored: " + ", ".join(sorted(codecs)) + ".",
        ],
    ]

    def postOptions(self):
        if self["codec"] not in codecs:
            raise usage.UsageError("Unknown codec: %s" % (self["codec"],))


class DumpOptions(_TargetOptions, _FilterOptions):
    """
    @ivar output: The file opened for C{--out}, or L{None} to write to
        standard output.
    """

    synopsis = "[options]"
    longdesc = "Dumps the contents of a memcached instance."
    output = None

    optFlags = [["with-values", "w", "Write values along with the keys."]]
    optParameters = [
        ["out", "o", None, "File to write dump to (default: standard output)."],
        [
            "keys-per-slab",
            None,
            DEFAULT_PAGE_SIZE,
            "Maximum number of keys listed per slab.",
            int,
        ],
    ]

    def postOptions(self):
        _TargetOptions.postOptions(self)
        _FilterOptions.postOptions(self)
        if self["keys-per-slab"] <= 0:
            raise usage.UsageError("--keys-per-slab must be positive.")
        if self["out"] is not None:
            try:
                self.output = FilePath(self["out"]).open("w")
            except OSError as e:
                raise usage.UsageError(
                    "Cannot write to %s: %s" % (self["out"], e.strerror or e)
                )


class StatsOptions(_TargetOptions):
    synopsis = "[options]"
    longdesc = "Shows the connections and slab usage of a memcached instance."


class InjectOptions(_TargetOptions, _FilterOptions):
    synopsis = "[options]"
    longdesc = "Injects a payload into the contents of a memcached instance."

    optParameters = [["payload", "p", None, "Base64 encoded payload."]]

    def postOptions(self):
        _TargetOptions.postOptions(self)
        _FilterOptions.postOptions(self)
        if self["payload"] is None:
            raise usage.UsageError("A payload is required (--payload).")
        try:
            self["payload"] = base64.b64decode(self["payload"], validate=True)
        except binascii.Error as e:
            raise usage.UsageError("Payload is not valid base64: %s" % (e,))


class Options(usage.Options):
    synopsis = "Usage: memcache-injector [options] dump|stats|inject [command options]"

    optFlags = [["verbose", "V", "Log every key fetched."]]
    subCommands = [
        ["dump", None, DumpOptions, "Dump the keys of a memcached instance."],
        ["stats", None, StatsOptions, "Show connection and slab statistics."],
        ["inject", None, InjectOptions, "Inject a payload into cached values."],
    ]

    def postOptions(self):
        if self.subCommand is None:
            raise usage.UsageError("No command given.")


@inlineCallbacks
def dump(protocol, options, stdout):
    """
    Discover slabs, list their keys, fetch the values and export what was
    found, even if the scan stops early.
    """
    session = InjectorSession(
        protocol,
        pageSize=options["keys-per-slab"],
        codec=codecNamed(options["codec"]),
        keyPattern=options["key"],
        valuePattern=options["value"],
    )
    try:
        yield session.discoverSlabs()
        yield session.dumpAllKeys()
        yield session.fetchAllValues()
    finally:
        if options.output is None:
            written = session.emit(
                getattr(stdout, "buffer", stdout), withValues=options["with-values"]
            )
        else:
            with options.output as sink:
                written = session.emit(sink, withValues=options["with-values"])
        log.info(
            "Exported {count} key(s) to {path}.",
            count=written,
            path=options["out"] or "standard output",
        )
    if session.failedSlabs or session.failedKeys:
        log.warn(
            "{slabs} slab(s) and {keys} key(s) could not be read.",
            slabs=len(session.failedSlabs),
            keys=len(session.failedKeys),
        )
    return session


@inlineCallbacks
def stats(protocol, options, stdout):
    """
    Print general stats, active connections and slab usage.
    """
    session = InjectorSession(protocol)
    general, connections = yield session.collectStats()
    slabs = yield session.discoverSlabs()
    for line in formatReport(general, connections, slabs):
        stdout.write(line + "\n")
    return session


_commands = {"dump": dump, "stats": stats}


@inlineCallbacks
def _withConnection(reactor, options, command, stdout):
    """
    Connect to the target, run C{command} and close the connection, whatever
    the outcome.

    The connection attempt is bounded by C{--timeout}, or by
    L{CONNECT_TIMEOUT} when responses may be waited for forever.
    """
    timeOut = options["timeout"] or None
    endpoint = HostnameEndpoint(
        reactor,
        options["target"],
        options["port"],
        timeout=timeOut or CONNECT_TIMEOUT,
    )
    protocol = yield connect(endpoint, timeOut)
    try:
        result = yield command(protocol, options, stdout)
    finally:
        protocol.transport.loseConnection()
    return result


def _startLogging(verbose):
    level = LogLevel.debug if verbose else LogLevel.info
    observer = FilteringLogObserver(
        textFileLogObserver(sys.stderr),
        [LogLevelFilterPredicate(defaultLogLevel=level)],
    )
    globalLogBeginner.beginLoggingTo([observer], redirectStandardIO=False)


def parseArgs(argv, stderr=None):
    """
    Parse the command line.

    @raise SystemExit: With code 2 if the command line is invalid.
    """
    if stderr is None:
        stderr = sys.stderr
    config = Options()
    try:
        config.parseOptions(argv)
    except usage.UsageError as e:
        stderr.write("%s: %s\n" % (sys.argv[0], e))
        stderr.write("%s\n" % (getattr(config, "subOptions", config),))
        raise SystemExit(2)
    return config


@inlineCallbacks
def main(reactor, *argv):
    """
    Run one sub-command.  Configuration problems are reported before any
    connection is attempted.
    """
    config = parseArgs(argv)
    if config.subCommand == "inject":
        sys.stderr.write("inject: no payload injector is available.\n")
        raise SystemExit(1)

    _startLogging(config["verbose"])
    command = _commands[config.subCommand]
    try:
        yield _withConnection(reactor, config.subOptions, command, sys.stdout)
    except (TransportError, ProtocolError) as e:
        log.critical("{error}", error=e)
        raise SystemExit(1)
    finally:
        output = getattr(config.subOptions, "output", None)
        if output is not None:
            output.close()


def run():
    react(main, sys.argv[1:])
