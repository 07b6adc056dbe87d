"""Tests for the supervisor/worker control channel"""
import asyncio
import json
import pytest

from livebranch.exceptions import ControlChannelClosedError, WorkerRequestError
from livebranch.services.protocol import (
    ControlChannel,
    ControlRequest,
    ControlResponse,
    StatusMessage,
    decode_message,
    encode_message,
    serialize_error,
)


class PipeWriter:
    """Writer feeding everything it receives into the peer's StreamReader."""

    def __init__(self, reader: asyncio.StreamReader):
        self.reader = reader
        self._closing = False

    def write(self, data: bytes) -> None:
        if not self._closing:
            self.reader.feed_data(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        if not self._closing:
            self._closing = True
            self.reader.feed_eof()

    def is_closing(self) -> bool:
        return self._closing


def channel_pair(on_request=None, on_status=None):
    """Connected (supervisor side, worker side) channels."""
    to_supervisor = asyncio.StreamReader()
    to_worker = asyncio.StreamReader()
    supervisor = ControlChannel(to_supervisor, PipeWriter(to_worker), on_status=on_status)
    worker = ControlChannel(to_worker, PipeWriter(to_supervisor), on_request=on_request)
    supervisor.start()
    worker.start()
    return supervisor, worker, to_supervisor


class TestMessageCodec:
    """Test the JSON-lines encoding."""

    def test_encode_is_one_line(self):
        """Test messages are compact JSON terminated by a newline."""
        line = encode_message(ControlRequest(id=1, method="init", params={"branch": "main"}))
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        assert json.loads(line) == {
            "type": "request", "id": 1, "method": "init", "params": {"branch": "main"}
        }

    def test_decode_each_type(self):
        """Test requests, responses and status messages are recognized."""
        assert decode_message(b'{"type": "status", "boot": "installing"}') == StatusMessage("installing")
        assert decode_message(b'{"type": "response", "id": 3, "result": {"restartRequired": true}}') == (
            ControlResponse(id=3, result={"restartRequired": True})
        )
        assert decode_message(b'{"type": "request", "id": 4, "method": "update"}') == (
            ControlRequest(id=4, method="update", params={})
        )

    @pytest.mark.parametrize(
        "line",
        [b"not json", b"[1, 2]", b'{"type": "gossip"}', b'{"type": "request", "method": "init"}',
         b'{"type": "request", "id": 1, "method": "init", "params": []}',
         b'{"type": "request", "id": 1, "method": "init", "params": "main"}'],
    )
    def test_decode_rejects_malformed(self, line):
        """Test malformed lines raise ValueError."""
        with pytest.raises(ValueError):
            decode_message(line)

    def test_serialize_error(self):
        """Test errors travel as name and message."""
        assert serialize_error(RuntimeError("Branch already booted")) == {
            "name": "RuntimeError", "message": "Branch already booted"
        }


class TestControlChannel:
    """Test correlated requests over a channel pair."""

    @pytest.mark.asyncio
    async def test_request_response(self):
        """Test a request gets the handler's result."""
        async def handler(method, params):
            return {"method": method, "branch": params.get("branch")}

        supervisor, worker, _ = channel_pair(on_request=handler)
        result = await supervisor.request("init", {"branch": "main"})
        assert result == {"method": "init", "branch": "main"}
        await supervisor.close()
        await worker.close()

    @pytest.mark.asyncio
    async def test_concurrent_requests_are_correlated(self):
        """Test out-of-order answers reach the right callers."""
        async def handler(method, params):
            await asyncio.sleep(params["delay"])
            return params["value"]

        supervisor, worker, _ = channel_pair(on_request=handler)
        results = await asyncio.gather(
            supervisor.request("echo", {"delay": 0.05, "value": "slow"}),
            supervisor.request("echo", {"delay": 0.0, "value": "fast"}),
        )
        assert results == ["slow", "fast"]
        await supervisor.close()
        await worker.close()

    @pytest.mark.asyncio
    async def test_remote_error(self):
        """Test a handler exception comes back as WorkerRequestError."""
        async def handler(method, params):
            raise RuntimeError("Branch already booted")

        supervisor, worker, _ = channel_pair(on_request=handler)
        with pytest.raises(WorkerRequestError) as exc_info:
            await supervisor.request("init", {"branch": "main"})
        assert exc_info.value.name == "RuntimeError"
        assert exc_info.value.message == "Branch already booted"
        await supervisor.close()
        await worker.close()

    @pytest.mark.asyncio
    async def test_status_messages_delivered_in_order(self):
        """Test unsolicited status messages reach on_status."""
        statuses = []
        supervisor, worker, _ = channel_pair(on_status=statuses.append)

        await worker.send_status("checkout")
        await worker.send_status("installing")
        await asyncio.sleep(0.01)

        assert statuses == ["checkout", "installing"]
        await supervisor.close()
        await worker.close()

    @pytest.mark.asyncio
    async def test_eof_fails_pending_requests(self):
        """Test requests pending when the peer goes away fail with ControlChannelClosedError."""
        never = asyncio.Event()

        async def handler(method, params):
            await never.wait()

        supervisor, worker, _ = channel_pair(on_request=handler)
        pending = asyncio.ensure_future(supervisor.request("init", {"branch": "main"}))
        await asyncio.sleep(0.01)

        await worker.close()
        with pytest.raises(ControlChannelClosedError):
            await pending
        assert supervisor.closed is True

        with pytest.raises(ControlChannelClosedError):
            await supervisor.request("update")
        await supervisor.close()

        # The late answer is dropped quietly
        never.set()
        await asyncio.sleep(0.01)

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self):
        """Test garbage on the channel does not stop the reader."""
        statuses = []
        supervisor, worker, to_supervisor = channel_pair(on_status=statuses.append)

        to_supervisor.feed_data(b"this is not json\n")
        to_supervisor.feed_data(b"\n")
        await worker.send_status("building")
        await asyncio.sleep(0.01)

        assert statuses == ["building"]
        assert supervisor.closed is False
        await supervisor.close()
        await worker.close()

    @pytest.mark.asyncio
    async def test_wait_closed(self):
        """Test wait_closed() returns once the peer closes."""
        supervisor, worker, _ = channel_pair()
        waiter = asyncio.ensure_future(supervisor.wait_closed())
        await asyncio.sleep(0)
        assert not waiter.done()

        await worker.close()
        await asyncio.wait_for(waiter, timeout=1)
        await supervisor.close()
