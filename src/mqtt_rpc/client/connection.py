"""
MQTT Client Connection Management.

This module provides:
- A wrapper around `aiomqtt` for connecting to the broker.
- The publish/subscribe primitives the RPC correlator depends on,
  translating aiomqtt failures into `TransportError`.
- A background loop that hands every received message to a callback
  and reconnects (re-applying subscriptions) when the connection drops.
"""
import asyncio
import logging
from typing import Callable, List, Optional, Protocol

from aiomqtt import Client as MQTTClient, MqttError, ProtocolVersion

from mqtt_rpc.exceptions import ConnectError, TransportError
from mqtt_rpc.models import MQTTMessage

logger = logging.getLogger(__name__)

PROTOCOL_VERSIONS = {
    "3.1": ProtocolVersion.V31,
    "3.1.1": ProtocolVersion.V311,
    "5": ProtocolVersion.V5,
}

MessageCallback = Callable[[str, bytes], None]


class Transport(Protocol):
    """The slice of a broker connection the correlator relies on."""

    async def publish(self, topic: str, payload: bytes) -> None: ...

    async def subscribe(self, pattern: str) -> None: ...


class MQTTConnection:
    config: dict
    host: str
    port: int
    client_id: Optional[str]
    username: Optional[str]
    password: Optional[str]
    qos: int
    reconnect_interval: float
    message_callback: Optional[MessageCallback]
    _client: Optional[MQTTClient]
    _main_task: Optional[asyncio.Task]

    """
    Owns the single broker connection shared by all RPC calls.
    """
    def __init__(self, config: dict, message_callback: Optional[MessageCallback] = None):
        # Configuration extraction with defaults
        self.config = config or {}
        mqtt_conf = self.config.get('mqtt', {})
        self.host = mqtt_conf.get('host', 'localhost')
        self.port = int(mqtt_conf.get('port', 1883))  # Must be int

        # Identity & Auth, passed through untouched
        self.client_id = mqtt_conf.get('client_id', None)
        self.username = mqtt_conf.get('username', None)
        self.password = mqtt_conf.get('password', None)

        protocol = str(mqtt_conf.get('protocol', '3.1.1'))
        if protocol not in PROTOCOL_VERSIONS:
            raise ValueError(f"Unsupported MQTT protocol version '{protocol}'")
        self.protocol = PROTOCOL_VERSIONS[protocol]
        self.qos = int(mqtt_conf.get('qos', 1))
        self.keepalive = int(mqtt_conf.get('keepalive', 60))
        self.connect_timeout = float(mqtt_conf.get('connect_timeout', 10))
        self.reconnect_interval = float(mqtt_conf.get('reconnect_interval', 5))

        self.message_callback = message_callback

        # Internal state
        self._client = None
        self._main_task = None
        self._connected = asyncio.Event()
        self._ever_connected = False
        self._subscriptions: List[str] = []

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._connected.is_set()

    async def connect(self):
        """
        Launches the connection loop in the background and waits until the
        broker has accepted us and every recorded subscription is active.
        """
        if self._main_task is not None and not self._main_task.done():
            logger.warning("Attempted to connect, but the connection loop is already running.")
            return

        logger.info(f"Connecting to MQTT broker at {self.host}:{self.port}...")
        self._ever_connected = False
        self._main_task = asyncio.create_task(self._main_loop())
        ready = asyncio.ensure_future(self._connected.wait())
        try:
            await asyncio.wait({ready, self._main_task}, timeout=self.connect_timeout,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()

        if self._connected.is_set():
            return
        if self._main_task.done():
            task, self._main_task = self._main_task, None
            await task  # re-raises the ConnectError of the first attempt
            raise ConnectError(f"Connection to {self.host}:{self.port} closed during connect")
        await self.disconnect()
        raise ConnectError(f"Timed out after {self.connect_timeout}s connecting to {self.host}:{self.port}")

    async def disconnect(self):
        """
        Cancels the connection loop, which closes the connection.
        """
        task, self._main_task = self._main_task, None
        if task is None:
            return
        logger.info("Disconnecting from MQTT broker...")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info("MQTT connection closed.")
        except Exception as e:
            logger.error(f"Error during MQTT disconnect: {e}")

    async def publish(self, topic: str, payload: bytes):
        client = self._client
        if client is None or not self._connected.is_set():
            raise TransportError(f"Cannot publish to '{topic}': not connected")

        message = MQTTMessage(topic=topic, payload=payload, qos=self.qos)
        try:
            await client.publish(**message.to_aiomqtt_args())
        except MqttError as e:
            raise TransportError(f"Publish to '{topic}' failed: {e}") from e
        logger.debug(f"Published {len(payload)} bytes to '{topic}'")

    async def subscribe(self, pattern: str):
        """
        Records the subscription so it is re-applied after a reconnect. If we are
        not connected yet it becomes active during connect().
        """
        if pattern not in self._subscriptions:
            self._subscriptions.append(pattern)

        client = self._client
        if client is None:
            logger.debug(f"Subscription to '{pattern}' deferred until connected")
            return
        try:
            await client.subscribe(pattern, qos=self.qos)
        except MqttError as e:
            self._subscriptions.remove(pattern)
            raise TransportError(f"Subscribe to '{pattern}' failed: {e}") from e
        logger.info(f"Subscribed to '{pattern}'")

    async def _main_loop(self):
        """
        The persistent connection loop.
        The first attempt fails hard; after that a lost connection is retried
        every `reconnect_interval` seconds (0 disables reconnecting).
        """
        while True:
            try:
                # The connection is ONLY valid inside this block
                async with MQTTClient(self.host,
                                      self.port,
                                      identifier=self.client_id,
                                      username=self.username,
                                      password=self.password,
                                      protocol=self.protocol,
                                      keepalive=self.keepalive) as client:
                    for pattern in self._subscriptions:
                        await client.subscribe(pattern, qos=self.qos)
                    self._client = client
                    self._ever_connected = True
                    self._connected.set()
                    logger.info(f"Connected to MQTT broker at {self.host}:{self.port}, subscriptions: {self._subscriptions}")

                    await self._receive_loop(client)

            except asyncio.CancelledError:
                raise  # Let disconnect() handle this
            except MqttError as e:
                if not self._ever_connected:
                    raise ConnectError(f"Could not connect to {self.host}:{self.port}: {e}") from e
                logger.error(f"MQTT connection lost: {e}")
            except Exception as e:
                if not self._ever_connected:
                    raise
                logger.error(f"MQTT connection loop failed: {e}")
            finally:
                self._client = None
                self._connected.clear()

            if not self.reconnect_interval:
                logger.warning("Reconnect disabled, connection loop exiting.")
                return
            logger.info(f"Reconnecting in {self.reconnect_interval}s...")
            await asyncio.sleep(self.reconnect_interval)

    async def _receive_loop(self, client: MQTTClient):
        """Hands every delivered message to the callback, in arrival order."""
        async for message in client.messages:
            topic = message.topic.value
            payload = message.payload
            if isinstance(payload, str):
                payload = payload.encode('utf-8')
            elif payload is None:
                payload = b""
            elif not isinstance(payload, (bytes, bytearray)):
                payload = str(payload).encode('utf-8')

            if self.message_callback is None:
                continue
            try:
                self.message_callback(topic, bytes(payload))
            except Exception as e:
                logger.error(f"Error handling message on '{topic}': {e}")
