"""HTTP utils classes and types."""

from reqwire.http.body import BodyKind, RequestBody
from reqwire.http.headers import HeaderMap, HeaderMapItemsView, HeaderMapKeysView, HeaderMapValuesView
from reqwire.http.url import Url

__all__ = [
    "BodyKind",
    "HeaderMap",
    "HeaderMapItemsView",
    "HeaderMapKeysView",
    "HeaderMapValuesView",
    "RequestBody",
    "Url",
]
