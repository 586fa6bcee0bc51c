import re
from collections.abc import ItemsView, Iterator, KeysView, Mapping, MutableMapping, ValuesView
from typing import Any, Self, TypeVar, overload

from reqwire.types import HeadersType

_T = TypeVar("_T")

_TOKEN_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
_INVALID_VALUE_RE = re.compile(r"[\r\n\x00]")
_MISSING: Any = object()


def validate_header(name: str, value: str) -> tuple[str, str]:
    """Validate a header name and value and return the normalized (lower-cased) pair."""
    if not isinstance(name, str):
        raise TypeError(f"header name must be str, got {type(name).__name__}")
    if not isinstance(value, str):
        raise TypeError(f"header value must be str, got {type(value).__name__}")
    if not _TOKEN_RE.fullmatch(name):
        raise ValueError(f"invalid HTTP header name: {name!r}")
    if _INVALID_VALUE_RE.search(value):
        raise ValueError(f"failed to parse header value: {value!r}")
    return name.lower(), value.strip(" \t")


class HeaderMapItemsView(ItemsView[str, str]):
    _mapping: "HeaderMap"

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._mapping._entries))

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, tuple) or len(item) != 2:
            return False
        name, value = item
        return isinstance(name, str) and (name.lower(), value) in self._mapping._entries

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HeaderMapItemsView):
            return list(self) == list(other)
        return list(self) == other


class HeaderMapKeysView(KeysView[str]):
    _mapping: "HeaderMap"

    def __iter__(self) -> Iterator[str]:
        return iter([name for name, _ in self._mapping._entries])

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HeaderMapKeysView):
            return list(self) == list(other)
        return list(self) == other


class HeaderMapValuesView(ValuesView[str]):
    _mapping: "HeaderMap"

    def __iter__(self) -> Iterator[str]:
        return iter([value for _, value in self._mapping._entries])

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HeaderMapValuesView):
            return list(self) == list(other)
        return list(self) == other


class HeaderMap(MutableMapping[str, str]):
    """Case-insensitive multi-value HTTP header map.

    Names are stored lower-cased. Iteration, `len()` and the views cover every value, so a header that is present
    twice is yielded twice. Item access returns the first value, assignment replaces all values.
    """

    __slots__ = ("_entries",)

    def __init__(self, other: HeadersType | None = None) -> None:
        self._entries: list[tuple[str, str]] = []
        if other is not None:
            self.extend(other)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter([name for name, _ in self._entries])

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        key = key.lower()
        return any(name == key for name, _ in self._entries)

    def __getitem__(self, key: str, /) -> str:
        key = key.lower()
        for name, value in self._entries:
            if name == key:
                return value
        raise KeyError(key)

    def __setitem__(self, key: str, value: str, /) -> None:
        self.insert(key, value)

    def __delitem__(self, key: str, /) -> None:
        if not self.popall(key, None):
            raise KeyError(key.lower())

    def items(self) -> HeaderMapItemsView:  # type: ignore[override]
        return HeaderMapItemsView(self)

    def keys(self) -> HeaderMapKeysView:  # type: ignore[override]
        return HeaderMapKeysView(self)

    def values(self) -> HeaderMapValuesView:  # type: ignore[override]
        return HeaderMapValuesView(self)

    def len(self) -> int:
        """Number of values stored, counting repeated headers separately."""
        return len(self._entries)

    def keys_len(self) -> int:
        """Number of distinct header names."""
        return len({name for name, _ in self._entries})

    def getall(self, key: str) -> list[str]:
        """All values of the header in insertion order."""
        key = key.lower()
        return [value for name, value in self._entries if name == key]

    def insert(self, key: str, value: str) -> list[str]:
        """Replace all values of the header. Returns the previous values."""
        name, value = validate_header(key, value)
        previous: list[str] = []
        entries: list[tuple[str, str]] = []
        inserted = False
        for entry in self._entries:
            if entry[0] == name:
                previous.append(entry[1])
                if not inserted:
                    entries.append((name, value))
                    inserted = True
            else:
                entries.append(entry)
        if not inserted:
            entries.append((name, value))
        self._entries = entries
        return previous

    def append(self, key: str, value: str) -> bool:
        """Add a value keeping existing ones. Returns True if the header was already present."""
        name, value = validate_header(key, value)
        existed = name in self
        self._entries.append((name, value))
        return existed

    def extend(self, other: HeadersType) -> None:
        """Append all pairs from another header collection."""
        if isinstance(other, HeaderMap):
            self._entries.extend(other._entries)
            return
        if isinstance(other, str):
            raise TypeError("headers must be a mapping or a sequence of (name, value) tuples, got 'str'")
        items = other.items() if isinstance(other, Mapping) else other
        for item in items:
            if not isinstance(item, tuple) or len(item) != 2:
                raise TypeError(f"headers must be (name, value) tuples, got {type(item).__name__!r}")
            self.append(item[0], item[1])

    @overload
    def popall(self, key: str) -> list[str]: ...
    @overload
    def popall(self, key: str, /, default: _T) -> list[str] | _T: ...
    def popall(self, key: str, /, default: Any = _MISSING) -> Any:
        """Remove the header and return all of its values."""
        key = key.lower()
        values = [value for name, value in self._entries if name == key]
        if not values:
            if default is _MISSING:
                raise KeyError(key)
            return default
        self._entries = [entry for entry in self._entries if entry[0] != key]
        return values

    def dict_multi_value(self) -> dict[str, str | list[str]]:
        """Headers as a dict where repeated names map to a list of values."""
        res: dict[str, str | list[str]] = {}
        for name, value in self._entries:
            if name not in res:
                res[name] = value
            elif isinstance(cur := res[name], list):
                cur.append(value)
            else:
                res[name] = [cur, value]
        return res

    def copy(self) -> Self:
        new = type(self)()
        new._entries = list(self._entries)
        return new

    def __copy__(self) -> Self:
        return self.copy()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HeaderMap):
            return sorted(self._entries) == sorted(other._entries)
        if isinstance(other, Mapping):
            try:
                return sorted(self._entries) == sorted(HeaderMap(other)._entries)
            except (TypeError, ValueError):
                return False
        return NotImplemented

    def __repr__(self) -> str:
        return f"HeaderMap({self._entries!r})"
