"""End-to-end tests for McpHost over a real Unix socket."""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import time
from unittest.mock import patch

import pytest

from hostrpc.context_token import sign
from hostrpc.errors import AlreadyStartedError, ShutdownTimeoutError, TransportError
from hostrpc.host import HostInfo, HostState, McpHost
from hostrpc.protocol.models import INTERNAL_ERROR, PARSE_ERROR
from tests.helpers import ECHO_TOOL, SECRET, RawClient, rpc_request


def _tool(function_name: str) -> dict:
    return {**ECHO_TOOL, "functionName": function_name}


class TestLifecycle:
    async def test_start_and_stop(self, host: McpHost, socket_path: str) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: a)

        info = await host.start()

        assert isinstance(info, HostInfo)
        assert info.pipe_path == socket_path
        assert info.secret == SECRET
        assert list(info.tools) == ["test-tool"]
        assert host.state is HostState.LISTENING
        assert os.path.exists(socket_path)

        await host.stop()

        assert host.state is HostState.STOPPED
        assert not os.path.exists(socket_path)

    async def test_double_start(self, host: McpHost) -> None:
        await host.start()
        with pytest.raises(AlreadyStartedError, match="already started"):
            await host.start()

    async def test_restart_after_stop_is_rejected(self, host: McpHost) -> None:
        await host.start()
        await host.stop()
        with pytest.raises(AlreadyStartedError):
            await host.start()

    async def test_stop_before_start_is_noop(self, host: McpHost) -> None:
        await host.stop()
        assert host.state is HostState.CREATED

    async def test_stop_twice(self, host: McpHost) -> None:
        await host.start()
        await host.stop()
        await host.stop()
        assert host.state is HostState.STOPPED

    async def test_stale_socket_file_is_replaced(self, host: McpHost, socket_path: str) -> None:
        with open(socket_path, "w") as stale:
            stale.write("stale")

        await host.start()

        client = await RawClient.connect(socket_path)
        await client.close()

    async def test_bind_failure(self, tmp_path) -> None:
        host = McpHost(secret=SECRET, pipe_path=str(tmp_path / "missing" / "host.sock"))

        with pytest.raises(TransportError, match="cannot listen"):
            await host.start()

        assert host.state is HostState.CREATED

    async def test_stop_timeout(self, host: McpHost) -> None:
        await host.start()
        host._stop_timeout = 0.1
        server = host._server

        async def slow_close(server):
            await asyncio.sleep(10)

        with patch.object(host, "_close", slow_close):
            with pytest.raises(ShutdownTimeoutError, match="timeout"):
                await host.stop()

        assert host.state is HostState.STOPPED
        server.close()

    async def test_context_manager(self, socket_path: str) -> None:
        async with McpHost(secret=SECRET, pipe_path=socket_path) as host:
            assert host.state is HostState.LISTENING
        assert host.state is HostState.STOPPED
        assert not os.path.exists(socket_path)

    async def test_auto_start(self, socket_path: str) -> None:
        async with McpHost(secret=SECRET, pipe_path=socket_path, start=True) as host:
            assert host.state is HostState.LISTENING

    async def test_stop_with_connected_client(self, host: McpHost, socket_path: str) -> None:
        await host.start()
        client = await RawClient.connect(socket_path)

        await asyncio.wait_for(host.stop(), 2)

        assert await client.read_until_closed() == b""
        await client.close()

    async def test_stop_with_served_client(self, host: McpHost, socket_path: str) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: "ok")
        await host.start()
        client = await RawClient.connect(socket_path)
        await client.call(rpc_request("testFunction", sign(SECRET, {}), {}))

        await asyncio.wait_for(host.stop(), 2)

        assert await client.read_until_closed() == b""
        await client.close()

    async def test_stopped_host_serves_nothing(self, host: McpHost, socket_path: str) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: "still serving")
        await host.start()
        client = await RawClient.connect(socket_path)

        await asyncio.wait_for(host.stop(), 2)
        with contextlib.suppress(ConnectionError, OSError):
            await client.send(rpc_request("testFunction", sign(SECRET, {}), {}))

        assert await client.read_until_closed() == b""
        assert host.state is HostState.STOPPED
        assert not host._connections
        await client.close()

    async def test_connection_after_stop_is_refused(self, host: McpHost, socket_path: str) -> None:
        await host.start()
        await host.stop()

        with pytest.raises(OSError):
            await RawClient.connect(socket_path)


class TestRequests:
    async def test_round_trip(self, host: McpHost, socket_path: str) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: {"echo": a, "ctx": c})
        await host.start()
        client = await RawClient.connect(socket_path)
        token = sign(SECRET, {"userId": "user123"})

        response = await client.call(rpc_request("testFunction", token, {"input": "hi"}))

        assert response == {
            "jsonrpc": "2.0",
            "id": 1,
            "result": {"echo": {"input": "hi"}, "ctx": {"userId": "user123"}},
        }
        await client.close()

    async def test_delayed_handler(self, host: McpHost, socket_path: str) -> None:
        called = asyncio.Event()

        async def slow(context, args):
            await asyncio.sleep(0.2)
            called.set()
            return "done"

        host.register_tool("slow", _tool("slowFunction"), slow)
        await host.start()
        client = await RawClient.connect(socket_path)

        started = time.monotonic()
        response = await client.call(rpc_request("slowFunction", sign(SECRET, {}), {}))

        assert time.monotonic() - started >= 0.2
        assert called.is_set()
        assert response["result"] == "done"
        await client.close()

    async def test_handler_error_keeps_connection_usable(
        self, host: McpHost, socket_path: str
    ) -> None:
        def broken(context, args):
            raise RuntimeError("Custom error")

        host.register_tool("broken", _tool("brokenFunction"), broken)
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: "ok")
        await host.start()
        client = await RawClient.connect(socket_path)
        token = sign(SECRET, {})

        failed = await client.call(rpc_request("brokenFunction", token, {}, 1))
        ok = await client.call(rpc_request("testFunction", token, {"input": "x"}, 2))

        assert failed["error"]["code"] == INTERNAL_ERROR
        assert failed["error"]["message"] == "Custom error"
        assert "result" not in failed
        assert ok == {"jsonrpc": "2.0", "id": 2, "result": "ok"}
        await client.close()

    async def test_sequential_requests(self, host: McpHost, socket_path: str) -> None:
        counter = {"n": 0}

        def increment(context, args):
            counter["n"] += 1
            return counter["n"]

        host.register_tool("inc", _tool("increment"), increment)
        await host.start()
        client = await RawClient.connect(socket_path)
        token = sign(SECRET, {})

        results = [
            (await client.call(rpc_request("increment", token, {}, i)))["result"]
            for i in range(1, 6)
        ]

        assert results == [1, 2, 3, 4, 5]
        assert counter["n"] == 5
        await client.close()

    async def test_concurrent_requests_complete_out_of_order(
        self, host: McpHost, socket_path: str
    ) -> None:
        async def sleepy(context, args):
            await asyncio.sleep(args["delay"])
            return args["delay"]

        host.register_tool("sleepy", _tool("sleepy"), sleepy)
        await host.start()
        client = await RawClient.connect(socket_path)
        token = sign(SECRET, {})

        await client.send(rpc_request("sleepy", token, {"delay": 0.3}, "slow"))
        await client.send(rpc_request("sleepy", token, {"delay": 0.0}, "fast"))
        first = await client.receive()
        second = await client.receive()

        assert first == {"jsonrpc": "2.0", "id": "fast", "result": 0.0}
        assert second == {"jsonrpc": "2.0", "id": "slow", "result": 0.3}
        await client.close()

    async def test_parse_error_then_valid_request(
        self, host: McpHost, socket_path: str
    ) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: "still alive")
        await host.start()
        client = await RawClient.connect(socket_path)

        await client.write_raw(b"{this is not json\n")
        parse_error = await client.receive()
        response = await client.call(rpc_request("testFunction", sign(SECRET, {}), {}))

        assert parse_error["id"] is None
        assert parse_error["error"]["code"] == PARSE_ERROR
        assert parse_error["error"]["message"] == "Parse error"
        assert response["result"] == "still alive"
        await client.close()

    async def test_frame_split_across_writes(self, host: McpHost, socket_path: str) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: a)
        await host.start()
        client = await RawClient.connect(socket_path)

        data = json.dumps(rpc_request("testFunction", sign(SECRET, {}), {"input": "é"})).encode()
        for index in range(0, len(data), 7):
            await client.write_raw(data[index : index + 7])
            await asyncio.sleep(0)
        await client.write_raw(b"\n")

        response = await client.receive()
        assert response["result"] == {"input": "é"}
        await client.close()

    async def test_register_after_start(self, host: McpHost, socket_path: str) -> None:
        await host.start()
        host.register_tool("late", _tool("lateFunction"), lambda c, a: "late")
        client = await RawClient.connect(socket_path)

        response = await client.call(rpc_request("lateFunction", sign(SECRET, {}), {}))

        assert response["result"] == "late"
        await client.close()

    async def test_forged_token(self, host: McpHost, socket_path: str) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: "secret data")
        await host.start()
        client = await RawClient.connect(socket_path)

        response = await client.call(rpc_request("testFunction", "forged.token.value", {}))

        assert response["error"]["code"] == -32001
        await client.close()

    async def test_batch(self, host: McpHost, socket_path: str) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: a["n"])
        await host.start()
        client = await RawClient.connect(socket_path)
        token = sign(SECRET, {})

        response = await client.call(
            [
                rpc_request("testFunction", token, {"n": 1}, 1),
                {"jsonrpc": "2.0", "method": "testFunction", "params": [token, {"n": 0}]},
                rpc_request("testFunction", token, {"n": 2}, 2),
            ]
        )

        assert sorted((r["id"], r["result"]) for r in response) == [(1, 1), (2, 2)]
        await client.close()

    async def test_empty_batch(self, host: McpHost, socket_path: str) -> None:
        await host.start()
        client = await RawClient.connect(socket_path)

        response = await client.call([])

        assert response["error"]["code"] == -32600
        await client.close()

    async def test_multiple_clients(self, host: McpHost, socket_path: str) -> None:
        host.register_tool("test-tool", ECHO_TOOL, lambda c, a: c)
        await host.start()
        clients = [await RawClient.connect(socket_path) for _ in range(3)]

        responses = await asyncio.gather(
            *(
                client.call(rpc_request("testFunction", sign(SECRET, {"n": n}), {}))
                for n, client in enumerate(clients)
            )
        )

        assert [r["result"] for r in responses] == [{"n": 0}, {"n": 1}, {"n": 2}]
        for client in clients:
            await client.close()
