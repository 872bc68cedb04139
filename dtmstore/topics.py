"""Message topics and their subscribers, kept as key-value pairs in a store."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from dtmstore.models import Store

logger = logging.getLogger(__name__)

TOPICS_CAT = "topics"


class TopicError(ValueError):
    """A topic request is invalid for the current topic data."""


@dataclass
class Subscriber:
    """A URL subscribed to a topic."""

    url: str
    remark: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "remark": self.remark}


@dataclass
class Topic:
    """A topic with its subscribers and the version of its stored record."""

    name: str
    subscribers: list[Subscriber] = field(default_factory=list)
    version: int = 0


def _dump(subscribers: list[Subscriber]) -> str:
    return json.dumps([s.to_dict() for s in subscribers], separators=(",", ":"))


def _load(text: str) -> list[Subscriber]:
    return [
        Subscriber(url=item.get("url") or "", remark=item.get("remark") or "")
        for item in json.loads(text) or []
    ]


def _check(topic: str, url: str) -> None:
    if not topic:
        raise TopicError("empty topic")
    if not url:
        raise TopicError("empty url")


def subscribe(store: Store, topic: str, url: str, remark: str = "") -> None:
    """Add a subscriber to a topic, creating the topic when missing."""
    _check(topic, url)
    new = Subscriber(url=url, remark=remark)
    kvs = store.find_kv(TOPICS_CAT, topic)
    if not kvs:
        store.create_kv(TOPICS_CAT, topic, _dump([new]))
        return
    subscribers = _load(kvs[0].v)
    if any(s.url == url for s in subscribers):
        raise TopicError("this url exists")
    subscribers.append(new)
    kvs[0].v = _dump(subscribers)
    store.update_kv(kvs[0])


def unsubscribe(store: Store, topic: str, url: str) -> None:
    """Remove a subscriber from a topic."""
    _check(topic, url)
    kvs = store.find_kv(TOPICS_CAT, topic)
    if not kvs:
        raise TopicError("no such a topic")
    subscribers = _load(kvs[0].v)
    if not subscribers:
        raise TopicError("this topic is empty")
    remaining = list(subscribers)
    for index, subscriber in enumerate(subscribers):
        if subscriber.url == url:
            del remaining[index]
            break
    if len(remaining) == len(subscribers):
        raise TopicError("no such an url ")
    kvs[0].v = _dump(remaining)
    store.update_kv(kvs[0])


def delete_topic(store: Store, topic: str) -> None:
    """Delete a topic with all its subscribers."""
    if not topic:
        raise TopicError("empty topic")
    store.delete_kv(TOPICS_CAT, topic)


class TopicMap(dict):
    """Cached topics by name, refreshed from a store."""

    def refresh(self, store: Store) -> None:
        """Load topics whose stored version is newer than the cached one."""
        for kv in store.find_kv(TOPICS_CAT, ""):
            current = self.get(kv.k)
            if current is not None and current.version >= kv.version:
                continue
            new = Topic(name=kv.k, subscribers=_load(kv.v), version=kv.version)
            logger.info("topic updated. old topic:%s new topic:%s", current, new)
            self[kv.k] = new
        logger.debug("all topic updated. topic:%s", dict(self))

    def urls(self, topic: str) -> list[str]:
        """URLs subscribed to a topic; empty when the topic is unknown."""
        found = self.get(topic)
        return [s.url for s in found.subscribers] if found is not None else []