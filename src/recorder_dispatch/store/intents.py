from typing import Any, Dict, List, Optional, Tuple

# Each intent is one store operation. The local keyspace applies intents
# directly to its entry dict; the Redis backend turns them into pipeline
# commands. A transaction is just a list of intents.

Command = Tuple[str, tuple, dict]


class WrongTypeError(Exception):
    pass


def _ttl_ms(ttl_sec: float) -> int:
    return max(1, int(ttl_sec * 1000))


def live_entry(entries: Dict[str, dict], key: str, now: float) -> Optional[dict]:
    """Returns the entry for key, dropping it first if its expiry has passed."""
    entry = entries.get(key)
    if entry is None:
        return None
    expires_at = entry.get("expires_at")
    if expires_at is not None and expires_at <= now:
        del entries[key]
        return None
    return entry


def _typed_entry(entries, key, now, kind):
    entry = live_entry(entries, key, now)
    if entry is not None and entry["type"] != kind:
        raise WrongTypeError(f"{key} holds a {entry['type']}, not a {kind}")
    return entry


class Intent:
    def apply(self, entries: Dict[str, dict], now: float) -> Any:
        raise NotImplementedError

    def pipeline_commands(self) -> List[Command]:
        raise NotImplementedError

    def pipeline_result(self, raw: list) -> Any:
        return raw[0]

    def __repr__(self):
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"{type(self).__name__}({fields})"


class SetValue(Intent):
    def __init__(self, key: str, value: str, ttl_sec: Optional[float] = None):
        self.key = key
        self.value = value
        self.ttl_sec = ttl_sec

    def apply(self, entries, now):
        entries[self.key] = {
            "type": "string",
            "value": self.value,
            "expires_at": now + self.ttl_sec if self.ttl_sec else None,
        }
        return True

    def pipeline_commands(self):
        kwargs = {"px": _ttl_ms(self.ttl_sec)} if self.ttl_sec else {}
        return [("set", (self.key, self.value), kwargs)]

    def pipeline_result(self, raw):
        return bool(raw[0])


class CreateIfAbsent(Intent):
    """Set key only if it holds no live value. Result is True when created."""
    def __init__(self, key: str, value: str, ttl_sec: float):
        self.key = key
        self.value = value
        self.ttl_sec = ttl_sec

    def apply(self, entries, now):
        if live_entry(entries, self.key, now) is not None:
            return False
        return SetValue(self.key, self.value, self.ttl_sec).apply(entries, now)

    def pipeline_commands(self):
        return [("set", (self.key, self.value), {"nx": True, "px": _ttl_ms(self.ttl_sec)})]

    def pipeline_result(self, raw):
        return bool(raw[0])


class DeleteKeys(Intent):
    def __init__(self, *keys: str):
        self.keys = keys

    def apply(self, entries, now):
        removed = 0
        for key in self.keys:
            if live_entry(entries, key, now) is not None:
                del entries[key]
                removed += 1
        return removed

    def pipeline_commands(self):
        return [("delete", self.keys, {})]


class DeleteIfEquals(Intent):
    """Delete key only while it still holds value (owner-checked release)."""
    def __init__(self, key: str, value: str):
        self.key = key
        self.value = value

    def apply(self, entries, now):
        entry = live_entry(entries, self.key, now)
        if entry is None or entry["value"] != self.value:
            return False
        del entries[self.key]
        return True


class AppendToList(Intent):
    def __init__(self, key: str, value: str):
        self.key = key
        self.value = value

    def apply(self, entries, now):
        entry = _typed_entry(entries, self.key, now, "list")
        if entry is None:
            entry = entries[self.key] = {"type": "list", "value": [], "expires_at": None}
        entry["value"].append(self.value)
        return len(entry["value"])

    def pipeline_commands(self):
        return [("rpush", (self.key, self.value), {})]


class RemoveFromList(Intent):
    """Remove every occurrence of value. Result is the number removed."""
    def __init__(self, key: str, value: str):
        self.key = key
        self.value = value

    def apply(self, entries, now):
        entry = _typed_entry(entries, self.key, now, "list")
        if entry is None:
            return 0
        kept = [v for v in entry["value"] if v != self.value]
        removed = len(entry["value"]) - len(kept)
        if kept:
            entry["value"] = kept
        else:
            del entries[self.key]
        return removed

    def pipeline_commands(self):
        return [("lrem", (self.key, 0, self.value), {})]


class WriteHash(Intent):
    """Write all fields of a hash record and (re)set its expiry."""
    def __init__(self, key: str, fields: Dict[str, str], ttl_sec: Optional[float] = None):
        self.key = key
        self.fields = fields
        self.ttl_sec = ttl_sec

    def apply(self, entries, now):
        entry = _typed_entry(entries, self.key, now, "hash")
        if entry is None:
            entry = entries[self.key] = {"type": "hash", "value": {}, "expires_at": None}
        entry["value"].update(self.fields)
        if self.ttl_sec:
            entry["expires_at"] = now + self.ttl_sec
        return len(self.fields)

    def pipeline_commands(self):
        commands = [("hset", (self.key,), {"mapping": self.fields})]
        if self.ttl_sec:
            commands.append(("pexpire", (self.key, _ttl_ms(self.ttl_sec)), {}))
        return commands
