from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from src.contracts.topics import DEFAULT_PARTITIONS, partition_for, partition_stream

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    topic: str
    partition: int
    offset: str
    size: int


@dataclass(frozen=True)
class ReceivedMessage:
    topic: str
    partition: int
    offset: str
    key: Optional[str]
    payload: str


def _payload_size(payload: str) -> int:
    return len(payload.encode("utf-8"))


class MessageBus:
    """Partitioned append-only log, seen through a publish/subscribe contract.

    - `send` never blocks on delivery; the returned future resolves to a
      SendResult or fails with the transport error (timeouts included).
    - `poll` returns messages for one partition of a topic for a consumer group.
      With `pending=True` it re-reads delivered but unacknowledged entries,
      oldest first, starting after the `after` offset.
    - `ack` is explicit and application-controlled; nothing is committed before it.
    """

    partitions: int = DEFAULT_PARTITIONS

    def send(self, topic: str, key: Optional[str], payload: str) -> "Future[SendResult]":  # pragma: no cover
        raise NotImplementedError

    def poll(
        self,
        *,
        topic: str,
        group: str,
        consumer: str,
        partition: int,
        pending: bool = False,
        after: Optional[str] = None,
    ) -> list[ReceivedMessage]:  # pragma: no cover
        raise NotImplementedError

    def ack(self, *, group: str, message: ReceivedMessage) -> None:  # pragma: no cover
        raise NotImplementedError

    def close(self) -> None:
        pass


# Returns the exception a send should fail with, or None to let it through.
FailureInjector = Callable[[str, Optional[str], str], Optional[BaseException]]


class InMemoryMessageBus(MessageBus):
    """In-process log for tests and local runs.

    Each (topic, partition) is a list; offsets are list indexes. Consumer groups
    keep a read cursor and a set of delivered-but-unacknowledged offsets per
    partition, mirroring a consumer group's pending entries.
    """

    def __init__(
        self,
        *,
        partitions: int = DEFAULT_PARTITIONS,
        completion_workers: int = 4,
        failure_injector: Optional[FailureInjector] = None,
    ) -> None:
        self.partitions = partitions
        self.failure_injector = failure_injector
        self._executor = ThreadPoolExecutor(max_workers=completion_workers, thread_name_prefix="bus-send")
        self._lock = threading.Lock()
        self._logs: dict[tuple[str, int], list[tuple[Optional[str], str]]] = {}
        self._cursors: dict[tuple[str, str, int], int] = {}
        self._pending: dict[tuple[str, str, int], set[int]] = {}
        self._acked: dict[tuple[str, str, int], set[int]] = {}

    def _append(self, topic: str, key: Optional[str], payload: str) -> SendResult:
        if self.failure_injector is not None:
            err = self.failure_injector(topic, key, payload)
            if err is not None:
                raise err
        partition = partition_for(key, self.partitions)
        with self._lock:
            log = self._logs.setdefault((topic, partition), [])
            log.append((key, payload))
            offset = len(log) - 1
        return SendResult(topic=topic, partition=partition, offset=str(offset), size=_payload_size(payload))

    def send(self, topic: str, key: Optional[str], payload: str) -> "Future[SendResult]":
        return self._executor.submit(self._append, topic, key, payload)

    def poll(
        self,
        *,
        topic: str,
        group: str,
        consumer: str,
        partition: int,
        pending: bool = False,
        after: Optional[str] = None,
        count: int = 10,
    ) -> list[ReceivedMessage]:
        gk = (group, topic, partition)
        with self._lock:
            log = self._logs.get((topic, partition), [])
            in_flight = self._pending.setdefault(gk, set())
            if pending:
                floor = int(after) if after is not None else -1
                offsets = sorted(o for o in in_flight if o > floor)[:count]
            else:
                start = self._cursors.get(gk, 0)
                offsets = list(range(start, min(len(log), start + count)))
                self._cursors[gk] = start + len(offsets)
                in_flight.update(offsets)
            return [
                ReceivedMessage(
                    topic=topic,
                    partition=partition,
                    offset=str(off),
                    key=log[off][0],
                    payload=log[off][1],
                )
                for off in offsets
            ]

    def ack(self, *, group: str, message: ReceivedMessage) -> None:
        gk = (group, message.topic, message.partition)
        off = int(message.offset)
        with self._lock:
            self._pending.setdefault(gk, set()).discard(off)
            self._acked.setdefault(gk, set()).add(off)

    def messages(self, topic: str, partition: int) -> list[tuple[Optional[str], str]]:
        with self._lock:
            return list(self._logs.get((topic, partition), []))

    def pending_count(self, *, group: str, topic: str) -> int:
        with self._lock:
            return sum(len(v) for (g, t, _), v in self._pending.items() if g == group and t == topic)

    def acked_count(self, *, group: str, topic: str) -> int:
        with self._lock:
            return sum(len(v) for (g, t, _), v in self._acked.items() if g == group and t == topic)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


class RedisStreamBus(MessageBus):
    """Redis Streams implementation.

    A topic with N partitions maps to N streams named `{topic}.p{n}`; a message
    goes to the stream chosen by its key, so per-key order is preserved. Offsets
    are stream entry ids. Consumer groups give pending-entry tracking; XACK is
    the acknowledgment.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        partitions: int = DEFAULT_PARTITIONS,
        block_ms: int = 5000,
        read_count: int = 10,
        socket_timeout_seconds: float = 10.0,
        completion_workers: int = 4,
        max_stream_length: Optional[int] = None,
    ):
        self.redis_url = redis_url
        self.partitions = partitions
        self._client = None
        self._client_lock = threading.Lock()
        self.block_ms = block_ms
        self.read_count = read_count
        self.socket_timeout_seconds = socket_timeout_seconds
        self.max_stream_length = max_stream_length
        self._executor = ThreadPoolExecutor(max_workers=completion_workers, thread_name_prefix="redis-send")
        self._groups: set[tuple[str, str]] = set()

    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                import redis

                # socket_timeout bounds every command; a publish that times out fails its future.
                self._client = redis.Redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_timeout=self.socket_timeout_seconds,
                )
            return self._client

    def _ensure_group(self, stream: str, group: str) -> None:
        if (stream, group) in self._groups:
            return
        client = self._get_client()
        try:
            client.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
        except Exception as e:
            # BUSYGROUP means it already exists.
            if "BUSYGROUP" not in str(e):
                raise
        self._groups.add((stream, group))

    def _xadd(self, topic: str, key: Optional[str], payload: str) -> SendResult:
        partition = partition_for(key, self.partitions)
        stream = partition_stream(topic, partition)
        fields = {"event": payload, "key": key or ""}
        if self.max_stream_length:
            entry_id = self._get_client().xadd(stream, fields, maxlen=self.max_stream_length, approximate=True)
        else:
            entry_id = self._get_client().xadd(stream, fields)
        return SendResult(topic=topic, partition=partition, offset=str(entry_id), size=_payload_size(payload))

    def send(self, topic: str, key: Optional[str], payload: str) -> "Future[SendResult]":
        return self._executor.submit(self._xadd, topic, key, payload)

    def poll(
        self,
        *,
        topic: str,
        group: str,
        consumer: str,
        partition: int,
        pending: bool = False,
        after: Optional[str] = None,
    ) -> list[ReceivedMessage]:
        stream = partition_stream(topic, partition)
        self._ensure_group(stream, group)
        client = self._get_client()
        # An id re-reads this consumer's own pending entries after it, ">" reads new ones.
        resp = client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: (after or "0") if pending else ">"},
            count=self.read_count,
            block=None if pending else self.block_ms,
        )
        out: list[ReceivedMessage] = []
        for (_sname, items) in resp or []:
            for (msg_id, fields) in items:
                raw = dict(fields or {})
                out.append(
                    ReceivedMessage(
                        topic=topic,
                        partition=partition,
                        offset=msg_id,
                        key=raw.get("key") or None,
                        payload=raw.get("event") or "",
                    )
                )
        return out

    def ack(self, *, group: str, message: ReceivedMessage) -> None:
        client = self._get_client()
        client.xack(partition_stream(message.topic, message.partition), group, message.offset)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        if self._client is not None:
            self._client.close()
            self._client = None
