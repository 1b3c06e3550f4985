# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests that verify every example in the examples/ directory runs successfully."""

from __future__ import annotations

import asyncio

import pytest

from rpcbridge import ConnectClient, ServerOptions

# ---------------------------------------------------------------------------
# Self-contained examples: just call main()
# ---------------------------------------------------------------------------


class TestSelfContainedExamples:
    """Examples that run entirely in-process."""

    def test_push_sources(self, capsys: pytest.CaptureFixture[str]) -> None:
        """push_sources.py: timers bridged to ``async for`` and through a dispatcher."""
        from examples.push_sources import main

        main()
        out = capsys.readouterr().out
        assert "ticks=[0, 1, 2, 3, 4]" in out
        assert "stopped early at 2" in out
        assert "unary takes the last value: c" in out
        assert "server stream: [0, 1, 2]" in out
        assert out.count("ticker stopped") == 3

    def test_testing_http(self, capsys: pytest.CaptureFixture[str]) -> None:
        """testing_http.py: in-process ASGI transport."""
        from examples.testing_http import main

        main()
        out = capsys.readouterr().out
        assert "Hello, Test!" in out
        assert "countdown=[3, 2, 1]" in out
        assert "error code=invalid_argument message=name is required" in out


# ---------------------------------------------------------------------------
# HTTP example: server + client pair
# ---------------------------------------------------------------------------


class TestHttpExample:
    """greet_server.py + greet_client.py over a real socket."""

    def test_server_and_client(self, capsys: pytest.CaptureFixture[str]) -> None:
        """The client example prints a result for every call shape."""
        from examples.greet_client import run
        from examples.greet_server import build_strategy

        async def main() -> None:
            strategy = build_strategy(ServerOptions(port=0))
            await strategy.listen()
            try:
                server = strategy.unwrap()
                assert server is not None
                async with ConnectClient(server.url) as client:
                    await run(client)
            finally:
                await strategy.close()

        asyncio.run(main())
        out = capsys.readouterr().out
        assert "Hello, World!" in out
        assert "countdown=[3, 2, 1]" in out
        assert "fibonacci=[0, 1, 1, 2, 3, 5, 8]" in out
        assert "sum=10" in out
        assert "HELLO!" in out
        assert "BYE!" in out
        assert "error code=unimplemented" in out
