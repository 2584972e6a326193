"""Tests for the request/response exchange pairing and merge-back rules."""

from __future__ import annotations

import asyncio

import pytest

from carryon.shared.codec import PrefixHeaderCodec
from carryon.shared.context import Context, JoinError
from carryon.shared.exchange import Exchange, current_exchange, use_exchange


class TestSeed:
    def test_response_context_copies_request(self):
        req = Context.from_mapping({"auth": "100"})
        ex = Exchange.seed(req)
        assert ex.request_context is req
        assert ex.response_context == req
        assert ex.response_context is not req

    def test_sides_are_independent(self):
        ex = Exchange.seed(Context.from_mapping({"auth": "100"}))
        ex.response_context.set("auth", "overwritten")
        assert ex.request_context.get("auth") == "100"

    def test_pass_through_without_outbound_calls(self):
        codec = PrefixHeaderCodec()
        ex = Exchange.from_headers({"context-auth": "100", "host": "x"}, codec)
        assert ex.response_headers(codec) == {"context-auth": "100"}

    def test_from_headers_malformed_is_empty(self):
        ex = Exchange.from_headers(None, PrefixHeaderCodec())
        assert len(ex.request_context) == 0
        assert len(ex.response_context) == 0


class TestOutbound:
    def test_derive_outbound_is_independent_child(self):
        ex = Exchange.seed(Context.from_mapping({"auth": "100"}))
        child = ex.derive_outbound()
        child.set("auth", "tampered")
        child.set("extra", "x")
        assert ex.request_context.to_dict() == {"auth": "100"}

    def test_outbound_headers_carry_request_side(self):
        ex = Exchange.seed(Context())
        ex.request_context.set("auth", "100")
        ex.response_context.set("only-upstream", "1")
        assert ex.outbound_headers(PrefixHeaderCodec()) == {"context-auth": "100"}


class TestMergeBack:
    def test_merges_into_both_sides(self):
        ex = Exchange.seed(Context())
        ex.merge_back(Context.from_mapping({"touched-by-alice": "true"}))
        assert ex.request_context.get("touched-by-alice") == "true"
        assert ex.response_context.get("touched-by-alice") == "true"

    def test_later_merge_wins(self):
        ex = Exchange.seed(Context())
        ex.merge_back(Context.from_mapping({"clock": "b"}))
        ex.merge_back(Context.from_mapping({"clock": "c"}))
        assert ex.request_context.get("clock") == "c"
        assert ex.response_context.get("clock") == "c"

    def test_exchange_merge_functions_used_by_default(self):
        ex = Exchange.seed(Context.from_mapping({"hops": 1}), merge_functions={"hops": max})
        ex.merge_back(Context.from_mapping({"hops": 0}))
        assert ex.request_context.get("hops") == 1

    def test_explicit_merge_functions_override(self):
        ex = Exchange.seed(Context.from_mapping({"hops": 1}), merge_functions={"hops": max})
        ex.merge_back(Context.from_mapping({"hops": 0}), merge_functions={})
        assert ex.request_context.get("hops") == 0

    def test_failing_merge_function_raises_join_error(self):
        def explode(existing, incoming):
            raise RuntimeError("nope")

        ex = Exchange.seed(Context.from_mapping({"k": 1}), merge_functions={"k": explode})
        with pytest.raises(JoinError):
            ex.merge_back(Context.from_mapping({"k": 2}))
        assert ex.request_context.get("k") == 1

    def test_response_side_failure_leaves_both_sides_untouched(self):
        def reject_response_side(existing, incoming):
            if existing == "resp":
                raise RuntimeError("nope")
            return incoming

        ex = Exchange.seed(Context.from_mapping({"k": "req"}), merge_functions={"k": reject_response_side})
        ex.response_context.set("k", "resp")
        with pytest.raises(JoinError):
            ex.merge_back(Context.from_mapping({"k": "new", "other": "x"}))
        assert ex.request_context.to_dict() == {"k": "req"}
        assert ex.response_context.to_dict() == {"k": "resp"}


class TestCurrentExchange:
    def test_default_is_none(self):
        assert current_exchange.get() is None

    def test_use_exchange_binds_and_resets(self):
        ex = Exchange.seed(Context())
        with use_exchange(ex) as bound:
            assert bound is ex
            assert current_exchange.get() is ex
        assert current_exchange.get() is None

    @pytest.mark.asyncio
    async def test_concurrent_tasks_do_not_share_exchange(self):
        seen: dict[str, Exchange | None] = {}

        async def handle(name: str) -> None:
            ex = Exchange.seed(Context.from_mapping({"who": name}))
            with use_exchange(ex):
                await asyncio.sleep(0)
                seen[name] = current_exchange.get()

        await asyncio.gather(handle("a"), handle("b"))
        assert seen["a"].request_context.get("who") == "a"
        assert seen["b"].request_context.get("who") == "b"
        assert current_exchange.get() is None
