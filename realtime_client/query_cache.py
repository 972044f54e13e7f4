"""
Client-side cache of query results, invalidated by realtime events.
"""

from typing import Any, Callable, Dict, List, Tuple

from shared.logging import get_logger


QueryKey = Tuple[Any, ...]
InvalidationListener = Callable[[QueryKey], None]


def chat_messages_key(chat_id: str) -> QueryKey:
    return ("chats", "messages", str(chat_id))


def chat_list_key(user_id: Any) -> QueryKey:
    return ("chats", "list", user_id)


class QueryCache:
    """Query results keyed by tuples.

    ``invalidate`` drops every key starting with the given prefix and tells
    listeners which keys went stale so the owning view can refetch them.
    """

    def __init__(self):
        self._data: Dict[QueryKey, Any] = {}
        self._listeners: List[InvalidationListener] = []
        self.logger = get_logger("realtime.query_cache")

    def get_query_data(self, key: QueryKey, default: Any = None) -> Any:
        return self._data.get(tuple(key), default)

    def set_query_data(self, key: QueryKey, value: Any) -> Any:
        """Store ``value``, or apply it to the current data when callable.

        An updater returning None leaves the key untouched.
        """
        key = tuple(key)
        if callable(value):
            value = value(self._data.get(key))
            if value is None:
                return None
        self._data[key] = value
        return value

    def invalidate(self, prefix: QueryKey) -> int:
        prefix = tuple(prefix)
        stale = [key for key in self._data if key[:len(prefix)] == prefix]
        for key in stale:
            del self._data[key]
            for listener in list(self._listeners):
                try:
                    listener(key)
                except Exception as e:
                    self.logger.error("Invalidation listener failed", key=key, error=str(e))

        if stale:
            self.logger.debug("Queries invalidated", prefix=prefix, count=len(stale))
        return len(stale)

    def on_invalidate(self, listener: InvalidationListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def clear(self):
        self._data.clear()

    def __contains__(self, key: QueryKey) -> bool:
        return tuple(key) in self._data

    def __len__(self) -> int:
        return len(self._data)

    def keys(self) -> List[QueryKey]:
        return list(self._data)
