"""Wire codecs between a Context and a flat string-keyed header map.

Two implementations:
  - PrefixHeaderCodec: one header per key, ``context-<key>: <value>``
  - JsonHeaderCodec: the whole Context as a JSON object in one header

Decoding is lenient: anything malformed decodes to an empty Context so
that peers without baggage support never break an exchange.

The prefix codec always percent-encodes keys, since any Context key must
become a legal header name. Values are percent-encoded too by default, so
an inbound literal ``%41`` decodes to ``A``. Peers that send raw values
should be read with ``percent_encode_values=False``.
"""

from __future__ import annotations

import abc
import json
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote, unquote

from carryon.shared.config import PropagationConfig
from carryon.shared.context import Context
from carryon.shared.utils import setup_logging

logger = setup_logging("carryon.codec")

DEFAULT_PREFIX = "context-"
DEFAULT_JSON_HEADER = "x-baggage"

# Left unescaped in header values; '%' is always escaped.
_SAFE_CHARS = "!#$&'*+-.^_`|~:/=@,;"
# Header-name token characters (RFC 9110 tchar) minus '%'.
_TOKEN_CHARS = "!#$&'*+-.^_`|~"


class Codec(abc.ABC):
    """Converts a Context to and from HTTP-style headers."""

    @abc.abstractmethod
    def encode(self, context: Context) -> dict[str, str]:
        """Return the headers carrying *context*."""

    @abc.abstractmethod
    def decode(self, headers: Any) -> Context:
        """Return the Context carried by *headers*. Never raises."""


class PrefixHeaderCodec(Codec):
    """One header per baggage key, named ``<prefix><key>``."""

    def __init__(self, prefix: str = DEFAULT_PREFIX, percent_encode_values: bool = True) -> None:
        if not prefix:
            raise ValueError("Header prefix must not be empty")
        self.prefix = prefix.lower()
        self.percent_encode_values = percent_encode_values

    def encode(self, context: Context) -> dict[str, str]:
        headers = {}
        for key, value in context.items():
            text = _to_text(value)
            if self.percent_encode_values:
                text = quote(text, safe=_SAFE_CHARS)
            headers[f"{self.prefix}{quote(key, safe=_TOKEN_CHARS)}"] = text
        return headers

    def decode(self, headers: Any) -> Context:
        ctx = Context()
        try:
            for name, value in _header_items(headers):
                name = name.lower()
                if not name.startswith(self.prefix):
                    continue
                key = unquote(name[len(self.prefix):])
                if key:
                    ctx.set(key, unquote(value) if self.percent_encode_values else value)
        except (TypeError, AttributeError, ValueError) as e:
            logger.debug(f"Ignoring malformed baggage headers: {e}")
            return Context()
        return ctx


class JsonHeaderCodec(Codec):
    """The whole Context as a JSON object in a single header."""

    def __init__(self, header: str = DEFAULT_JSON_HEADER) -> None:
        if not header:
            raise ValueError("Baggage header name must not be empty")
        self.header = header.lower()

    def encode(self, context: Context) -> dict[str, str]:
        if not len(context):
            return {}
        return {self.header: json.dumps(context.to_dict(), default=str, separators=(",", ":"))}

    def decode(self, headers: Any) -> Context:
        try:
            raw = None
            for name, value in _header_items(headers):
                if name.lower() == self.header:
                    raw = value
            if raw is None:
                return Context()
            payload = json.loads(raw)
        except (TypeError, AttributeError, ValueError) as e:
            logger.debug(f"Ignoring malformed baggage header '{self.header}': {e}")
            return Context()
        if not isinstance(payload, dict):
            logger.debug(f"Ignoring non-object baggage header '{self.header}'")
            return Context()
        return Context.from_mapping(payload)


def build_codec(config: PropagationConfig | None = None) -> Codec:
    """Return the codec selected by *config* (prefix codec by default)."""
    config = config or PropagationConfig()
    if config.codec == "json":
        return JsonHeaderCodec(config.json_header)
    return PrefixHeaderCodec(config.header_prefix, config.percent_encode_values)


def _to_text(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


def _header_items(headers: Any) -> list[tuple[str, str]]:
    """Normalize a header mapping to ``(name, value)`` string pairs.

    Accepts plain dicts as well as httpx / Starlette header objects, which
    expose ``items()`` (Starlette's yields duplicates as separate pairs).
    """
    if not isinstance(headers, Mapping) and not hasattr(headers, "items"):
        raise TypeError(f"Expected a header mapping, got {type(headers).__name__}")
    items = []
    for name, value in headers.items():
        if not isinstance(name, str) or not isinstance(value, str):
            raise TypeError("Header names and values must be strings")
        items.append((name, value))
    return items
