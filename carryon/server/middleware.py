"""Inbound side of baggage propagation for FastAPI / Starlette apps.

``BaggageMiddleware`` seeds an Exchange from each request's headers, makes
it available to the handler (``request.state.exchange``, the
``get_exchange`` dependency, and ``current_exchange``), and writes the
exchange's response context onto the outgoing response headers.

Response baggage is encoded once the handler has returned its response;
changes made afterwards (e.g. from inside a streaming body) are not sent.
"""

from __future__ import annotations

from collections.abc import Mapping

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from carryon.shared.codec import Codec, build_codec
from carryon.shared.config import PropagationConfig
from carryon.shared.context import MergeFunction
from carryon.shared.exchange import Exchange, use_exchange
from carryon.shared.utils import set_log_level, setup_logging

logger = setup_logging("carryon.server")


class BaggageMiddleware(BaseHTTPMiddleware):
    """Pair every inbound request with its own request/response contexts."""

    def __init__(
        self,
        app: ASGIApp,
        codec: Codec | None = None,
        merge_functions: Mapping[str, MergeFunction] | None = None,
    ) -> None:
        super().__init__(app)
        self.codec = codec or build_codec()
        self.merge_functions = dict(merge_functions or {})

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        exchange = Exchange.from_headers(
            request.headers, self.codec, merge_functions=self.merge_functions,
        )
        request.state.exchange = exchange
        if len(exchange.request_context):
            logger.debug(
                f"Inbound baggage on {request.method} {request.url.path}",
                extra={"extra_data": {"keys": exchange.request_context.keys()}},
            )
        with use_exchange(exchange):
            response = await call_next(request)
        for name, value in exchange.response_headers(self.codec).items():
            response.headers[name] = value
        return response


def install_baggage(
    app: FastAPI,
    config: PropagationConfig | None = None,
    merge_functions: Mapping[str, MergeFunction] | None = None,
) -> None:
    """Add BaggageMiddleware to *app* using the codec selected by *config*."""
    if config is not None:
        set_log_level(config.log_level)
    app.add_middleware(
        BaggageMiddleware,
        codec=build_codec(config),
        merge_functions=merge_functions,
    )


def get_exchange(request: Request) -> Exchange:
    """FastAPI dependency: the Exchange of the request being handled."""
    exchange = getattr(request.state, "exchange", None)
    if exchange is None:
        raise RuntimeError("No baggage exchange bound; is BaggageMiddleware installed?")
    return exchange
