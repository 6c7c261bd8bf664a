"""
Pytest configuration and fixtures.

The client tests run against FakeStore, a small in-process store that speaks
RESP2 through FakeSocket. Several sockets can share one store, which is how
the watch-conflict tests get a second connection.
"""

import fnmatch
import math
import socket
import time

import pytest

from redwire import Connection, Redwire


# ============================================================================
# Reply encoders
# ============================================================================

def simple(text: str) -> bytes:
    return b"+" + text.encode() + b"\r\n"


def error(text: str) -> bytes:
    return b"-" + text.encode() + b"\r\n"


def integer(value: int) -> bytes:
    return b":%d\r\n" % value


def bulk(data) -> bytes:
    if data is None:
        return b"$-1\r\n"
    if isinstance(data, str):
        data = data.encode()
    return b"$%d\r\n%s\r\n" % (len(data), data)


def array(items) -> bytes:
    if items is None:
        return b"*-1\r\n"
    return b"*%d\r\n" % len(items) + b"".join(items)


def format_score(score: float) -> str:
    return "%.17g" % score


# ============================================================================
# Fake store
# ============================================================================

class WrongType(Exception):
    pass


class CommandFailed(Exception):
    pass


WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"
NOT_INTEGER = "ERR value is not an integer or out of range"


def parse_requests(buffer: bytearray):
    """Pop complete RESP request arrays off the front of buffer."""
    requests = []
    while buffer:
        end = buffer.find(b"\r\n")
        if end < 0 or buffer[:1] != b"*":
            break
        count = int(buffer[1:end])
        pos = end + 2
        args = []
        for _ in range(count):
            end = buffer.find(b"\r\n", pos)
            if end < 0:
                return requests
            length = int(buffer[pos + 1:end])
            start = end + 2
            if len(buffer) < start + length + 2:
                return requests
            args.append(bytes(buffer[start:start + length]))
            pos = start + length + 2
        del buffer[:pos]
        requests.append(args)
    return requests


class FakeStore:
    """Shared keyspace, versions for WATCH, config and pub/sub registry."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.versions = {}
        self.config = {"maxmemory": "0", "timeout": "0", "appendonly": "no"}
        self.sessions = []

    def alive(self, key: bytes) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    def lookup(self, key: bytes, kind):
        if not self.alive(key):
            return None
        value = self.data[key]
        if type(value) is not kind:
            raise WrongType()
        return value

    def touch(self, key: bytes) -> None:
        self.versions[key] = self.versions.get(key, 0) + 1

    def remove(self, key: bytes) -> bool:
        if not self.alive(key):
            return False
        del self.data[key]
        self.expiry.pop(key, None)
        self.touch(key)
        return True

    def flush(self) -> None:
        for key in list(self.data):
            self.touch(key)
        self.data.clear()
        self.expiry.clear()


class Session:
    """Per-connection state: MULTI queue, watched versions, subscriptions."""

    def __init__(self, store: FakeStore):
        self.store = store
        self.queue = None
        self.watched = {}
        self.channels = set()
        store.sessions.append(self)

    def handle(self, args) -> bytes:
        name = args[0].decode().upper()
        if name == "CONFIG" and len(args) > 1:
            name = "CONFIG " + args[1].decode().upper()
            args = [name.encode()] + args[2:]
        rest = args[1:]

        if name == "MULTI":
            if self.queue is not None:
                return error("ERR MULTI calls can not be nested")
            self.queue = []
            return simple("OK")
        if name == "EXEC":
            return self._exec()
        if name == "DISCARD":
            if self.queue is None:
                return error("ERR DISCARD without MULTI")
            self.queue = None
            self.watched = {}
            return simple("OK")
        if name == "WATCH":
            if self.queue is not None:
                return error("ERR WATCH inside MULTI is not allowed")
            for key in rest:
                self.watched.setdefault(key, self.store.versions.get(key, 0))
            return simple("OK")
        if name == "UNWATCH":
            self.watched = {}
            return simple("OK")

        handler = getattr(self, "cmd_" + name.replace(" ", "_").lower(), None)
        if handler is None:
            return error(f"ERR unknown command '{name}'")
        if self.queue is not None:
            self.queue.append((handler, rest))
            return simple("QUEUED")
        return self._run(handler, rest)

    def _run(self, handler, rest) -> bytes:
        try:
            return handler(*rest)
        except WrongType:
            return error(WRONGTYPE)
        except CommandFailed as exc:
            return error(str(exc))
        except TypeError:
            return error("ERR wrong number of arguments")

    def _exec(self) -> bytes:
        if self.queue is None:
            return error("ERR EXEC without MULTI")
        queue, self.queue = self.queue, None
        watched, self.watched = self.watched, {}
        for key, version in watched.items():
            if self.store.versions.get(key, 0) != version:
                return array(None)
        return array([self._run(handler, rest) for handler, rest in queue])

    # Connection

    def cmd_ping(self):
        return simple("PONG")

    def cmd_auth(self, *credentials):
        if credentials[-1] != b"secret":
            return error("WRONGPASS invalid username-password pair or user is disabled.")
        return simple("OK")

    def cmd_select(self, index):
        if int(index) > 15:
            return error("ERR DB index is out of range")
        return simple("OK")

    # Strings and keys

    def cmd_set(self, key, value):
        self.store.data[key] = value
        self.store.expiry.pop(key, None)
        self.store.touch(key)
        return simple("OK")

    def cmd_get(self, key):
        return bulk(self.store.lookup(key, bytes))

    def cmd_del(self, *keys):
        return integer(sum(self.store.remove(key) for key in keys))

    def cmd_incr(self, key):
        current = self.store.lookup(key, bytes) or b"0"
        try:
            value = int(current) + 1
        except ValueError:
            raise CommandFailed(NOT_INTEGER)
        self.store.data[key] = str(value).encode()
        self.store.touch(key)
        return integer(value)

    def cmd_keys(self, pattern):
        keys = [k for k in list(self.store.data) if self.store.alive(k)]
        return array([bulk(k) for k in keys if fnmatch.fnmatchcase(k.decode(), pattern.decode())])

    def cmd_expire(self, key, seconds):
        if not self.store.alive(key):
            return integer(0)
        self.store.expiry[key] = time.monotonic() + int(seconds)
        self.store.touch(key)
        return integer(1)

    def cmd_ttl(self, key):
        if not self.store.alive(key):
            return integer(-2)
        deadline = self.store.expiry.get(key)
        if deadline is None:
            return integer(-1)
        return integer(math.ceil(deadline - time.monotonic()))

    # Hashes

    def cmd_hset(self, key, *pairs):
        if not pairs or len(pairs) % 2:
            raise TypeError()
        hash_ = self.store.lookup(key, dict)
        if hash_ is None:
            hash_ = self.store.data[key] = {}
        added = 0
        for field, value in zip(pairs[::2], pairs[1::2]):
            added += field not in hash_
            hash_[field] = value
        self.store.touch(key)
        return integer(added)

    def cmd_hget(self, key, field):
        hash_ = self.store.lookup(key, dict) or {}
        return bulk(hash_.get(field))

    def cmd_hdel(self, key, *fields):
        hash_ = self.store.lookup(key, dict) or {}
        removed = sum(hash_.pop(f, None) is not None for f in fields)
        if removed:
            self.store.touch(key)
        if not hash_:
            self.store.data.pop(key, None)
        return integer(removed)

    def cmd_hgetall(self, key):
        hash_ = self.store.lookup(key, dict) or {}
        items = []
        for field, value in hash_.items():
            items += [bulk(field), bulk(value)]
        return array(items)

    # Lists

    def _push(self, key, values, left):
        list_ = self.store.lookup(key, list)
        if list_ is None:
            list_ = self.store.data[key] = []
        for value in values:
            if left:
                list_.insert(0, value)
            else:
                list_.append(value)
        self.store.touch(key)
        return integer(len(list_))

    def cmd_lpush(self, key, *values):
        return self._push(key, values, left=True)

    def cmd_rpush(self, key, *values):
        return self._push(key, values, left=False)

    def _pop(self, key, index):
        list_ = self.store.lookup(key, list)
        if not list_:
            return bulk(None)
        value = list_.pop(index)
        if not list_:
            del self.store.data[key]
        self.store.touch(key)
        return bulk(value)

    def cmd_lpop(self, key):
        return self._pop(key, 0)

    def cmd_rpop(self, key):
        return self._pop(key, -1)

    def cmd_lrange(self, key, start, stop):
        list_ = self.store.lookup(key, list) or []
        return array([bulk(v) for v in _slice(list_, int(start), int(stop))])

    # Sets

    def cmd_sadd(self, key, *members):
        set_ = self.store.lookup(key, set)
        if set_ is None:
            set_ = self.store.data[key] = set()
        added = len(set(members) - set_)
        set_.update(members)
        self.store.touch(key)
        return integer(added)

    def cmd_srem(self, key, *members):
        set_ = self.store.lookup(key, set) or set()
        removed = len(set_ & set(members))
        set_.difference_update(members)
        if removed:
            self.store.touch(key)
        if not set_:
            self.store.data.pop(key, None)
        return integer(removed)

    def cmd_smembers(self, key):
        return array([bulk(m) for m in sorted(self.store.lookup(key, set) or ())])

    def cmd_sismember(self, key, member):
        return integer(int(member in (self.store.lookup(key, set) or ())))

    # Sorted sets (stored as {member: score})

    def cmd_zadd(self, key, score, member):
        try:
            score = float(score)
        except ValueError:
            raise CommandFailed("ERR value is not a valid float")
        zset = self.store.lookup(key, ZSet)
        if zset is None:
            zset = self.store.data[key] = ZSet()
        added = member not in zset
        zset[member] = score
        self.store.touch(key)
        return integer(int(added))

    def cmd_zrange(self, key, start, stop):
        zset = self.store.lookup(key, ZSet) or ZSet()
        ordered = [m for m, _ in sorted(zset.items(), key=lambda kv: (kv[1], kv[0]))]
        return array([bulk(m) for m in _slice(ordered, int(start), int(stop))])

    def cmd_zrem(self, key, *members):
        zset = self.store.lookup(key, ZSet) or ZSet()
        removed = sum(zset.pop(m, None) is not None for m in members)
        if removed:
            self.store.touch(key)
        if not zset:
            self.store.data.pop(key, None)
        return integer(removed)

    def cmd_zscore(self, key, member):
        zset = self.store.lookup(key, ZSet) or ZSet()
        if member not in zset:
            return bulk(None)
        return bulk(format_score(zset[member]))

    # Pub/sub

    def cmd_publish(self, channel, message):
        receivers = [s for s in self.store.sessions if channel in s.channels]
        for session in receivers:
            session._socket.inbox += array([bulk("message"), bulk(channel), bulk(message)])
        return integer(len(receivers))

    def cmd_subscribe(self, channel):
        self.channels.add(channel)
        return array([bulk("subscribe"), bulk(channel), integer(len(self.channels))])

    def cmd_unsubscribe(self, channel):
        self.channels.discard(channel)
        return array([bulk("unsubscribe"), bulk(channel), integer(len(self.channels))])

    # Server

    def cmd_info(self, *section):
        return bulk("# Server\r\nredis_version:7.2.0\r\nfake_store:1\r\n")

    def cmd_config_get(self, pattern):
        items = []
        for name, value in self.store.config.items():
            if fnmatch.fnmatchcase(name, pattern.decode()):
                items += [bulk(name), bulk(value)]
        return array(items)

    def cmd_config_set(self, name, value):
        if name.decode() not in self.store.config:
            return error(f"ERR Unknown option or number of arguments for CONFIG SET - '{name.decode()}'")
        self.store.config[name.decode()] = value.decode()
        return simple("OK")

    def cmd_flushdb(self):
        self.store.flush()
        return simple("OK")

    def cmd_flushall(self):
        self.store.flush()
        return simple("OK")


class ZSet(dict):
    pass


def _slice(items, start, stop):
    size = len(items)
    if start < 0:
        start = max(size + start, 0)
    if stop < 0:
        stop = size + stop
    stop = min(stop, size - 1)
    if start > stop:
        return []
    return items[start:stop + 1]


# ============================================================================
# Fake transports
# ============================================================================

class FakeReader:
    """Binary reader over a FakeSocket's inbox."""

    def __init__(self, sock):
        self._sock = sock

    def readline(self) -> bytes:
        inbox = self._sock.inbox
        self._sock.check_hang()
        end = inbox.find(b"\n")
        end = len(inbox) if end < 0 else end + 1
        line = bytes(inbox[:end])
        del inbox[:end]
        return line

    def read(self, n: int) -> bytes:
        inbox = self._sock.inbox
        self._sock.check_hang()
        data = bytes(inbox[:n])
        del inbox[:n]
        return data

    def close(self) -> None:
        pass


class FakeSocket:
    """
    Socket-like object answering from a FakeStore.

    Attributes:
        sent: Every byte the client wrote
        inbox: Bytes waiting to be read by the client
        hang: If True, reads with nothing pending raise socket.timeout
    """

    def __init__(self, store: FakeStore = None):
        self.sent = bytearray()
        self.inbox = bytearray()
        self.timeouts = []
        self.hang = False
        self.closed = False
        self._pending = bytearray()
        self.session = Session(store) if store is not None else None
        if self.session is not None:
            self.session._socket = self

    def settimeout(self, timeout):
        self.timeouts.append(timeout)

    def setsockopt(self, *args):
        pass

    def sendall(self, data: bytes) -> None:
        if self.closed:
            raise OSError(9, "Bad file descriptor")
        self.sent += data
        if self.session is None:
            return
        self._pending += data
        for args in parse_requests(self._pending):
            self.inbox += self.session.handle(args)

    def check_hang(self) -> None:
        if self.hang and not self.inbox:
            raise socket.timeout("timed out")

    def makefile(self, mode="rb"):
        return FakeReader(self)

    def close(self) -> None:
        self.closed = True
        if self.session is not None and self.session in self.session.store.sessions:
            self.session.store.sessions.remove(self.session)


class ScriptedSocket(FakeSocket):
    """Replays canned reply bytes whatever the client sends."""

    def __init__(self, replies: bytes = b""):
        super().__init__(None)
        self.inbox += replies


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store() -> FakeStore:
    """A fresh, empty fake store."""
    return FakeStore()


@pytest.fixture
def make_client(store):
    """Factory for clients on their own connection to the shared store."""
    clients = []

    def factory(**kwargs) -> Redwire:
        sock = FakeSocket(store)
        client = Redwire(Connection(sock, description="fake-store"), **kwargs)
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.close()


@pytest.fixture
def db(make_client) -> Redwire:
    """A client connected to the fake store."""
    return make_client()


@pytest.fixture
def scripted():
    """Factory for a client whose socket replays canned replies."""

    def factory(replies: bytes = b"", **kwargs):
        sock = ScriptedSocket(replies)
        return Redwire(Connection(sock, description="scripted"), **kwargs), sock

    return factory
