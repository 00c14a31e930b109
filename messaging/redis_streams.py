"""Redis Streams transport for buoy reading messages.

Messages are read through a consumer group. An entry stays in the group's
pending list until it is deleted, and entries left pending longer than the
visibility timeout are claimed again on the next receive. That gives
at-least-once redelivery for anything the consumer failed to apply.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Protocol

import redis

from exceptions import QueueUnavailableError
from settings import get_settings

logger = logging.getLogger(__name__)

BODY_FIELD = "body"


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    body: str


class MessageQueue(Protocol):
    def receive(self, max_messages: int, wait_seconds: float) -> List[QueueMessage]: ...

    def delete(self, message: QueueMessage) -> None: ...


def _entry_to_message(entry_id: Any, fields: Mapping[Any, Any]) -> QueueMessage:
    message_id = entry_id.decode("utf-8") if isinstance(entry_id, bytes) else str(entry_id)
    decoded: Dict[str, str] = {}
    for key, value in fields.items():
        key_str = key.decode("utf-8") if isinstance(key, bytes) else str(key)
        decoded[key_str] = value.decode("utf-8") if isinstance(value, bytes) else str(value)
    body = decoded.get(BODY_FIELD)
    if body is None:
        # Producers that write flat key/value entries instead of a JSON body.
        body = json.dumps(decoded)
    return QueueMessage(message_id=message_id, body=body)


class RedisStreamQueue:

    def __init__(
        self,
        client: redis.Redis,
        stream: str,
        group: str,
        consumer_name: str,
        visibility_timeout: float = 30.0,
    ) -> None:
        self.client = client
        self.stream = stream
        self.group = group
        self.consumer_name = consumer_name
        self.visibility_timeout = visibility_timeout
        self._group_ready = False

    def receive(self, max_messages: int, wait_seconds: float) -> List[QueueMessage]:
        try:
            self._ensure_group()
            reclaimed = self._claim_stale(max_messages)
            if reclaimed:
                return reclaimed

            response = self.client.xreadgroup(
                self.group,
                self.consumer_name,
                {self.stream: ">"},
                count=max_messages,
                block=max(int(wait_seconds * 1000), 1),
            )
        except redis.RedisError as exc:
            raise QueueUnavailableError(f"Failed to read from stream {self.stream!r}: {exc}") from exc

        messages: List[QueueMessage] = []
        for _stream_name, entries in response or []:
            for entry_id, fields in entries:
                messages.append(_entry_to_message(entry_id, fields))
        return messages

    def delete(self, message: QueueMessage) -> None:
        try:
            self.client.xack(self.stream, self.group, message.message_id)
            self.client.xdel(self.stream, message.message_id)
        except redis.RedisError as exc:
            raise QueueUnavailableError(
                f"Failed to delete message {message.message_id!r}: {exc}"
            ) from exc

    def send(self, body: str) -> str:
        try:
            entry_id = self.client.xadd(self.stream, {BODY_FIELD: body})
        except redis.RedisError as exc:
            raise QueueUnavailableError(f"Failed to write to stream {self.stream!r}: {exc}") from exc
        return entry_id.decode("utf-8") if isinstance(entry_id, bytes) else str(entry_id)

    def close(self) -> None:
        self.client.close()

    def _ensure_group(self) -> None:
        if self._group_ready:
            return
        try:
            self.client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self.group, self.stream)
        except redis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
            logger.debug("Consumer group %s already exists", self.group)
        self._group_ready = True

    def _claim_stale(self, max_messages: int) -> List[QueueMessage]:
        result = self.client.xautoclaim(
            self.stream,
            self.group,
            self.consumer_name,
            min_idle_time=int(self.visibility_timeout * 1000),
            start_id="0-0",
            count=max_messages,
        )
        # [next_start_id, [(id, fields), ...]] plus deleted ids on Redis 7.
        entries = result[1] if result and len(result) > 1 else []
        messages = [
            _entry_to_message(entry_id, fields)
            for entry_id, fields in entries
            if fields is not None
        ]
        if messages:
            logger.info(
                "Reclaimed unacknowledged messages",
                extra={"batch_size": len(messages)},
            )
        return messages


@lru_cache
def build_default_queue(
    stream: Optional[str] = None,
    group: Optional[str] = None,
) -> RedisStreamQueue:
    settings = get_settings()
    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return RedisStreamQueue(
        client=client,
        stream=settings.queue_stream if stream is None else stream,
        group=settings.queue_group if group is None else group,
        consumer_name=settings.queue_consumer_name,
    )
