"""Propagation protocol: the request/response context pair of one exchange.

Every inbound request owns an ``Exchange``: the request context decoded from
its headers, and a response context seeded as a copy of it. Outbound calls
made while handling the request carry a child of the request context; each
response that comes back is merged into *both* contexts. Repeating this at
every hop makes baggage set anywhere in a call graph visible to later
sibling calls and to every ancestor's response.

The active exchange is tracked per asyncio task via ``current_exchange`` so
concurrent exchanges never share state.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from carryon.shared.codec import Codec
from carryon.shared.context import Context, MergeFunction
from carryon.shared.utils import setup_logging

logger = setup_logging("carryon.exchange")

current_exchange: contextvars.ContextVar[Exchange | None] = contextvars.ContextVar(
    "current_exchange", default=None,
)


@dataclass
class Exchange:
    request_context: Context
    response_context: Context
    merge_functions: Mapping[str, MergeFunction] = field(default_factory=dict)

    @classmethod
    def seed(
        cls,
        request_context: Context,
        merge_functions: Mapping[str, MergeFunction] | None = None,
    ) -> Exchange:
        """Pair *request_context* with a response context copied from it."""
        return cls(
            request_context=request_context,
            response_context=Context().join_with(request_context),
            merge_functions=dict(merge_functions or {}),
        )

    @classmethod
    def from_headers(
        cls,
        headers: Any,
        codec: Codec,
        merge_functions: Mapping[str, MergeFunction] | None = None,
    ) -> Exchange:
        return cls.seed(codec.decode(headers), merge_functions=merge_functions)

    def derive_outbound(self) -> Context:
        """Context for a new outbound call; independent of the request context."""
        return self.request_context.create_child()

    def outbound_headers(self, codec: Codec) -> dict[str, str]:
        return codec.encode(self.derive_outbound())

    def merge_back(
        self,
        downstream: Context,
        merge_functions: Mapping[str, MergeFunction] | None = None,
    ) -> None:
        """Fold a downstream response context into both sides of the exchange.

        The request side makes the baggage visible to later outbound calls;
        the response side carries it back to this exchange's caller. Both
        sides are merged into copies first; a raising merge function
        surfaces as JoinError and leaves both sides untouched.
        """
        merges = merge_functions if merge_functions is not None else self.merge_functions
        if not len(downstream):
            return
        merged_request = self.request_context.create_child().join_with(downstream, merges)
        merged_response = self.response_context.create_child().join_with(downstream, merges)
        # Plain joins of the staged copies cannot fail.
        self.request_context.join_with(merged_request)
        self.response_context.join_with(merged_response)
        logger.debug(
            "Merged downstream baggage",
            extra={"extra_data": {"keys": downstream.keys()}},
        )

    def response_headers(self, codec: Codec) -> dict[str, str]:
        return codec.encode(self.response_context)


@contextmanager
def use_exchange(exchange: Exchange) -> Iterator[Exchange]:
    """Bind *exchange* as the current one for the enclosed block."""
    token = current_exchange.set(exchange)
    try:
        yield exchange
    finally:
        current_exchange.reset(token)
