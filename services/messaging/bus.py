"""Message bus used for request/reply operations and events.

Messages are JSON envelopes:
    request/event: {"data": ..., "reply_to": "<inbox channel>" | absent}
    reply:         {"data": ...} or {"error": {"status": int, "message": str}}

``RedisMessageBus`` carries them over Redis pub/sub. Delivery is at-most-once:
a message published while nobody listens is lost. ``LocalMessageBus`` hands
them to handlers in the same process.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import redis.asyncio as redis

from services.shared.errors import AnalyzerError, UnexpectedError

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]
RequestHandler = Callable[[Any], Awaitable[Any]]


class BusRequestError(Exception):
    """A request got no reply, timed out, or was answered with an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def encode(data: Any, reply_to: str | None = None) -> str:
    envelope: dict[str, Any] = {"data": data}
    if reply_to:
        envelope["reply_to"] = reply_to
    return json.dumps(envelope, default=str)


def encode_error(error: AnalyzerError) -> str:
    return json.dumps({"error": error.to_payload()})


def decode(raw: str | bytes) -> dict[str, Any]:
    body = json.loads(raw)
    if not isinstance(body, dict):
        raise ValueError("Message envelope must be a JSON object")
    return body


def unwrap_reply(raw: str | bytes) -> Any:
    """Return the reply data, raising ``BusRequestError`` for error replies."""
    body = decode(raw)
    if "error" in body:
        error = body["error"] or {}
        raise BusRequestError(
            str(error.get("message", "Request failed")), status=error.get("status")
        )
    return body.get("data")


class MessageBus(ABC):
    """Transport-independent bus interface."""

    def __init__(self) -> None:
        self._event_handlers: dict[str, EventHandler] = {}
        self._request_handlers: dict[str, RequestHandler] = {}

    def subscribe(self, subject: str, handler: EventHandler) -> None:
        """Register a fire-and-forget event handler."""
        self._event_handlers[subject] = handler

    def respond(self, subject: str, handler: RequestHandler) -> None:
        """Register a request handler; its return value is the reply."""
        self._request_handlers[subject] = handler

    @abstractmethod
    async def publish(self, subject: str, data: Any) -> None:
        """Emit an event. Best effort, no delivery guarantee."""

    @abstractmethod
    async def request(self, subject: str, data: Any, timeout: float) -> Any:
        """Send a request and wait for its reply.

        Raises:
            BusRequestError: No responder, timeout, or error reply
        """

    @abstractmethod
    async def start(self) -> None:
        """Start delivering messages to registered handlers."""

    @abstractmethod
    async def close(self) -> None:
        """Stop listening and release the connection."""

    async def dispatch(self, subject: str, raw: str | bytes) -> str | None:
        """Run the handler registered for a subject.

        Returns:
            Encoded reply for requests, None for events
        """
        try:
            body = decode(raw)
        except ValueError as e:
            logger.warning(f"Dropping malformed message on {subject}: {e}")
            return None
        data = body.get("data")

        if subject in self._event_handlers:
            try:
                await self._event_handlers[subject](data)
            except Exception:
                logger.exception(f"Event handler for {subject} failed")
            return None

        handler = self._request_handlers.get(subject)
        if handler is None:
            logger.debug(f"No handler for {subject}")
            return None
        try:
            return encode(await handler(data))
        except AnalyzerError as e:
            return encode_error(e)
        except Exception:
            logger.exception(f"Request handler for {subject} failed")
            return encode_error(UnexpectedError("Internal server error"))


class RedisMessageBus(MessageBus):
    """Message bus over Redis pub/sub channels."""

    def __init__(self, redis_url: str) -> None:
        super().__init__()
        self._redis = redis.from_url(redis_url, decode_responses=True)
        self._pubsub: Any = None
        self._listener: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    async def publish(self, subject: str, data: Any) -> None:
        await self._redis.publish(subject, encode(data))

    async def request(self, subject: str, data: Any, timeout: float) -> Any:
        inbox = f"_INBOX.{uuid.uuid4().hex}"
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(inbox)
        try:
            receivers = await self._redis.publish(subject, encode(data, reply_to=inbox))
            if not receivers:
                raise BusRequestError(f"No responders for {subject}")

            try:
                async with asyncio.timeout(timeout):
                    while True:
                        message = await pubsub.get_message(
                            ignore_subscribe_messages=True, timeout=timeout
                        )
                        if message is not None:
                            break
            except TimeoutError as e:
                raise BusRequestError(f"Request to {subject} timed out after {timeout}s") from e

            return unwrap_reply(message["data"])
        finally:
            await pubsub.unsubscribe(inbox)
            await pubsub.aclose()

    async def start(self) -> None:
        subjects = [*self._event_handlers, *self._request_handlers]
        if not subjects:
            return
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(*subjects)
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Listening on {', '.join(subjects)}")

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            task = asyncio.create_task(self._handle(message["channel"], message["data"]))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _handle(self, subject: str, raw: str) -> None:
        reply = await self.dispatch(subject, raw)
        if reply is None:
            return
        try:
            reply_to = decode(raw).get("reply_to")
        except ValueError:
            return
        if reply_to:
            await self._redis.publish(reply_to, reply)

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            await self._pubsub.aclose()
        await self._redis.aclose()


class LocalMessageBus(MessageBus):
    """In-process bus: messages go straight to the handlers of this instance.

    Used when the analyzer and its callers share a process, and in tests.
    Messages still travel as encoded envelopes.
    """

    async def publish(self, subject: str, data: Any) -> None:
        if subject in self._event_handlers:
            await self.dispatch(subject, encode(data))

    async def request(self, subject: str, data: Any, timeout: float) -> Any:
        if subject not in self._request_handlers:
            raise BusRequestError(f"No responders for {subject}")
        try:
            async with asyncio.timeout(timeout):
                reply = await self.dispatch(subject, encode(data))
        except TimeoutError as e:
            raise BusRequestError(f"Request to {subject} timed out after {timeout}s") from e
        if reply is None:
            raise BusRequestError(f"No reply from {subject}")
        return unwrap_reply(reply)

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass
