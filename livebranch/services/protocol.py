"""Control channel between the supervisor and its workers.

Messages are JSON objects, one per line:

    {"type": "request", "id": 1, "method": "init", "params": {"branch": "main"}}
    {"type": "response", "id": 1, "result": null, "error": null}
    {"type": "status", "boot": "installing"}

The requester allocates ids; responses carry the id of the request they
answer. Status messages are unsolicited and flow from worker to supervisor.
"""

import asyncio
import itertools
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from livebranch.exceptions import ControlChannelClosedError, WorkerRequestError
from livebranch.utils.logging import get_logger

logger = get_logger(__name__)

RequestHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]
StatusHandler = Callable[[str], None]


@dataclass
class ControlRequest:
    id: int
    method: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": "request", "id": self.id, "method": self.method, "params": self.params}


@dataclass
class ControlResponse:
    id: int
    result: Any = None
    error: Optional[Dict[str, str]] = None

    def to_dict(self) -> dict:
        return {"type": "response", "id": self.id, "result": self.result, "error": self.error}


@dataclass
class StatusMessage:
    boot: str

    def to_dict(self) -> dict:
        return {"type": "status", "boot": self.boot}


ControlMessage = Union[ControlRequest, ControlResponse, StatusMessage]


def encode_message(message: ControlMessage) -> bytes:
    return json.dumps(message.to_dict(), separators=(",", ":")).encode("utf-8") + b"\n"


def decode_message(line: bytes) -> ControlMessage:
    """Parse one line of the control channel.

    Raises:
        ValueError: If the line is not a well-formed message
    """
    try:
        data = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("message is not an object")

    kind = data.get("type")
    try:
        if kind == "request":
            params = data.get("params", {})
            if not isinstance(params, dict):
                raise ValueError("request params must be an object")
            return ControlRequest(id=int(data["id"]), method=str(data["method"]), params=params)
        if kind == "response":
            error = data.get("error")
            if error is not None and not isinstance(error, dict):
                error = {"name": "Error", "message": str(error)}
            return ControlResponse(id=int(data["id"]), result=data.get("result"), error=error)
        if kind == "status":
            return StatusMessage(boot=str(data["boot"]))
    except (KeyError, TypeError) as e:
        raise ValueError(f"malformed {kind} message: {e}") from e
    raise ValueError(f"unknown message type {kind!r}")


def serialize_error(error: BaseException) -> Dict[str, str]:
    """Turn an exception into the structured error sent over the channel."""
    return {"name": type(error).__name__, "message": str(error)}


class ControlChannel:
    """Correlated request/response messaging over a pair of asyncio streams.

    Both ends use this class: the supervisor sends requests and receives
    status messages, the worker answers requests with `on_request` and
    pushes status messages.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        on_request: Optional[RequestHandler] = None,
        on_status: Optional[StatusHandler] = None,
    ):
        self._reader = reader
        self._writer = writer
        self._on_request = on_request
        self._on_status = on_status
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._handlers: Set[asyncio.Task] = set()
        self._read_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        if self._read_task is None:
            self._read_task = asyncio.ensure_future(self._read_loop())

    async def wait_closed(self) -> None:
        """Wait until the other end closes the channel."""
        await self._closed.wait()

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a request and wait for its response.

        Raises:
            WorkerRequestError: If the other end answered with an error
            ControlChannelClosedError: If the channel closed before the answer
        """
        if self.closed:
            raise ControlChannelClosedError()
        request = ControlRequest(id=next(self._ids), method=method, params=params or {})
        future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        try:
            await self._send(request)
            return await future
        finally:
            self._pending.pop(request.id, None)

    async def send_status(self, boot: str) -> None:
        await self._send(StatusMessage(boot=boot))

    async def _send(self, message: ControlMessage) -> None:
        if self.closed:
            raise ControlChannelClosedError()
        try:
            self._writer.write(encode_message(message))
            await self._writer.drain()
        except (ConnectionError, RuntimeError) as e:
            raise ControlChannelClosedError(f"control channel closed: {e}") from e

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    message = decode_message(line)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed control message: {e}")
                    continue
                self._dispatch(message)
        except (ConnectionError, asyncio.IncompleteReadError, ValueError) as e:
            # ValueError: line longer than the reader's limit
            logger.warning(f"Control channel read failed: {e}")
        finally:
            self._closed.set()
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ControlChannelClosedError())

    def _dispatch(self, message: ControlMessage) -> None:
        if isinstance(message, ControlResponse):
            future = self._pending.get(message.id)
            if future is None or future.done():
                logger.debug(f"Dropping response to unknown request {message.id}")
                return
            if message.error:
                future.set_exception(
                    WorkerRequestError(
                        message.error.get("name", "Error"), message.error.get("message", "")
                    )
                )
            else:
                future.set_result(message.result)
        elif isinstance(message, StatusMessage):
            if self._on_status is not None:
                self._on_status(message.boot)
        elif isinstance(message, ControlRequest):
            if self._on_request is None:
                logger.warning(f"Dropping request '{message.method}': no handler")
                return
            task = asyncio.ensure_future(self._answer(message))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)

    async def _answer(self, request: ControlRequest) -> None:
        try:
            result = await self._on_request(request.method, request.params)
            response = ControlResponse(id=request.id, result=result)
        except Exception as e:
            logger.error(f"Request '{request.method}' failed: {e}")
            response = ControlResponse(id=request.id, error=serialize_error(e))
        try:
            await self._send(response)
        except ControlChannelClosedError:
            logger.debug(f"Could not answer request {request.id}: channel closed")

    async def close(self) -> None:
        """Close the writing end and stop reading."""
        if not self._writer.is_closing():
            self._writer.close()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        self._closed.set()
