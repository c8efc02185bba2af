"""
High-level RPC client.

Wires an `MQTTConnection`, an `RPCCorrelator` and a `ResponseDispatcher`
together from a config dict:

    async with RPCClient(config) as client:
        response = await client.call("getTime", {}, timeout=5)
"""
import logging
from typing import Any, Optional

from mqtt_rpc import topics
from mqtt_rpc.client.connection import MQTTConnection
from mqtt_rpc.client.correlator import DEFAULT_TIMEOUT, RPCCorrelator
from mqtt_rpc.client.dispatcher import ResponseDispatcher
from mqtt_rpc.models import PendingRequest, Response

logger = logging.getLogger(__name__)


class RPCClient:
    config: dict
    connection: MQTTConnection
    correlator: RPCCorrelator
    dispatcher: ResponseDispatcher

    def __init__(self, config: dict):
        self.config = config or {}
        rpc_conf = self.config.get('rpc', {})

        self.connection = MQTTConnection(self.config, message_callback=self._on_message)
        self.correlator = RPCCorrelator(
            self.connection,
            request_topic=rpc_conf.get('request_topic', topics.DEFAULT_REQUEST_TOPIC),
            default_timeout=float(rpc_conf.get('timeout', DEFAULT_TIMEOUT)),
        )
        self.dispatcher = ResponseDispatcher(
            self.correlator,
            response_topic=rpc_conf.get('response_topic', topics.DEFAULT_RESPONSE_TOPIC),
            decode_json=bool(rpc_conf.get('decode_json', False)),
        )

    async def start(self):
        """Subscribes to the response wildcard and connects."""
        await self.connection.subscribe(self.dispatcher.subscription)
        await self.connection.connect()
        logger.info(f"RPC client ready, requests on '{self.correlator.request_topic}', "
                    f"responses on '{self.dispatcher.subscription}'")

    async def stop(self):
        self.correlator.close("client stopped")
        await self.connection.disconnect()

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Response:
        return await self.correlator.call(method, params, timeout)

    async def submit(self, method: str, params: Any = None) -> PendingRequest:
        return await self.correlator.submit(method, params)

    async def wait(self, pending: PendingRequest, timeout: Optional[float] = None) -> Response:
        return await self.correlator.wait(pending, timeout)

    def cancel(self, request_id: int) -> bool:
        return self.correlator.cancel(request_id)

    def _on_message(self, topic: str, payload: bytes):
        self.dispatcher.handle_message(topic, payload)

    async def __aenter__(self) -> "RPCClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
