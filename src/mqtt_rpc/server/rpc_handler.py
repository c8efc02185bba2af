"""
RPC Request Handler and Response Publisher.

This module is responsible for:
- Subscribing to the request wildcard topic (e.g. 'request/+').
- Parsing incoming requests into a method name and params, with the
  request id taken from the last topic level.
- Dispatching to registered handler functions (sync or async).
- Publishing a {"result": ...} or {"error": ...} reply on the response
  topic carrying the same request id.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Set

from mqtt_rpc import topics
from mqtt_rpc.client.connection import MQTTConnection
from mqtt_rpc.exceptions import DecodeError, TransportError
from mqtt_rpc.models import ReplyPayload, Request

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class RPCHandler:
    """
    Handles incoming RPC requests and publishes responses.
    """
    def __init__(self, config: dict, handlers: Optional[Dict[str, Handler]] = None):
        self.config = config or {}
        rpc_conf = self.config.get('rpc', {})
        self.request_topic = topics.validate_template(rpc_conf.get('request_topic', topics.DEFAULT_REQUEST_TOPIC))
        self.response_topic = topics.validate_template(rpc_conf.get('response_topic', topics.DEFAULT_RESPONSE_TOPIC))
        self.subscription = topics.subscription_for(self.request_topic)
        self.handlers: Dict[str, Handler] = dict(handlers or {})
        self.connection = MQTTConnection(self.config, message_callback=self.mqtt_message_handler)
        self._tasks: Set[asyncio.Task] = set()

    def register(self, method: str, handler: Optional[Handler] = None):
        """
        Registers `handler` for `method`. Without a handler it returns a decorator:

            @rpc_handler.register("getTime")
            def get_time(params): ...
        """
        if handler is None:
            def decorator(func: Handler) -> Handler:
                self.handlers[method] = func
                return func
            return decorator
        self.handlers[method] = handler
        return handler

    async def start(self):
        await self.connection.subscribe(self.subscription)
        await self.connection.connect()
        logger.info(f"RPC handler serving {sorted(self.handlers)} on '{self.subscription}'")

    async def stop(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.connection.disconnect()

    def mqtt_message_handler(self, topic: str, payload: bytes):
        """
        Callback for processing incoming MQTT messages (RPC requests).
        Replies are produced in background tasks so a slow handler never
        holds up the connection's receive loop.
        """
        if not topics.matches(topic, self.subscription):
            return
        request_id = topics.request_id_from_topic(topic)
        if request_id is None:
            logger.warning(f"Dropping request on '{topic}': last topic level is not a request id")
            return

        try:
            request = Request.from_bytes(request_id, payload)
        except DecodeError as e:
            logger.warning(f"Malformed request {request_id}: {e}")
            self._spawn(self._publish_reply(request_id, ReplyPayload(error=str(e))))
            return

        logger.debug(f"Received request {request_id}: {request.method}({request.params})")
        self._spawn(self._handle_rpc_request(request))

    async def _handle_rpc_request(self, request: Request):
        reply = await self._execute(request)
        await self._publish_reply(request.id, reply)

    async def _execute(self, request: Request) -> ReplyPayload:
        handler = self.handlers.get(request.method)
        if handler is None:
            logger.warning(f"Request {request.id}: unknown method '{request.method}'")
            return ReplyPayload(error=f"Unknown method '{request.method}'")
        try:
            result = handler(request.params)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.error(f"Error executing '{request.method}' for request {request.id}: {e}")
            return ReplyPayload(error=str(e))
        return ReplyPayload(result=result)

    async def _publish_reply(self, request_id: int, reply: ReplyPayload):
        topic = topics.topic_for(self.response_topic, request_id)
        try:
            payload = reply.to_bytes()
        except (TypeError, ValueError) as e:
            payload = ReplyPayload(error=f"Result is not JSON serializable: {e}").to_bytes()
        try:
            await self.connection.publish(topic, payload)
        except TransportError as e:
            logger.error(f"Could not reply to request {request_id}: {e}")
            return
        logger.debug(f"Replied to request {request_id} on '{topic}'")

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def __aenter__(self) -> "RPCHandler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
