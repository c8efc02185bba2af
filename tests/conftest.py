"""
Pytest Configuration and Fixtures for the mqtt_rpc project.

This module provides an in-process stand-in for `aiomqtt.Client` so the
connection, client and handler can be exercised without a broker. The
`FakeBroker` routes every publish to the connected fake clients whose
subscriptions match, like a real broker would.
"""

import asyncio
import sys
import logging
from types import SimpleNamespace
from typing import List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiomqtt import MqttError, Topic


class FakeMQTTClient:
    """Mimics the parts of aiomqtt.Client that MQTTConnection uses."""

    def __init__(self, broker: "FakeBroker", hostname: str, port: int = 1883, **kwargs):
        self.broker = broker
        self.hostname = hostname
        self.port = port
        self.kwargs = kwargs
        self.filters: List[str] = []
        self.connected = False
        self.publish = AsyncMock(side_effect=self._publish)
        self.subscribe = AsyncMock(side_effect=self._subscribe)
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self):
        if self.broker.hang_on_connect:
            await asyncio.Event().wait()
        if self.broker.refuse_connections:
            raise MqttError("Connection refused")
        self.connected = True
        return self

    async def __aexit__(self, *exc_info):
        self.connected = False
        return False

    @property
    def messages(self):
        return self._iter_messages()

    async def _iter_messages(self):
        while True:
            message = await self._inbox.get()
            if message is None:
                raise MqttError("Connection lost")
            if isinstance(message, Exception):
                raise message
            yield message

    async def _publish(self, topic, payload=None, qos=0, retain=False, **kwargs):
        if self.broker.publish_error is not None:
            raise self.broker.publish_error
        self.broker.route(topic, payload)

    async def _subscribe(self, topic, qos=0, **kwargs):
        if self.broker.subscribe_error is not None:
            raise self.broker.subscribe_error
        self.filters.append(topic)

    def deliver(self, topic: str, payload):
        self._inbox.put_nowait(SimpleNamespace(topic=Topic(topic), payload=payload))

    def drop(self):
        """Simulates the broker closing the connection."""
        self._inbox.put_nowait(None)

    def fail(self, error: Exception):
        """Makes the message iterator raise `error`, as a bug inside aiomqtt would."""
        self._inbox.put_nowait(error)


class FakeBroker:
    """Callable used in place of aiomqtt.Client; every call creates a FakeMQTTClient."""

    def __init__(self):
        self.clients: List[FakeMQTTClient] = []
        self.published: List[Tuple[str, bytes]] = []
        self.refuse_connections = False
        self.hang_on_connect = False
        self.publish_error: Optional[Exception] = None
        self.subscribe_error: Optional[Exception] = None

    def __call__(self, hostname, port=1883, **kwargs) -> FakeMQTTClient:
        client = FakeMQTTClient(self, hostname, port, **kwargs)
        self.clients.append(client)
        return client

    def route(self, topic: str, payload):
        if isinstance(payload, str):
            payload = payload.encode('utf-8')
        self.published.append((topic, payload))
        for client in self.clients:
            if client.connected and any(Topic(topic).matches(f) for f in client.filters):
                client.deliver(topic, payload)

    def published_on(self, topic: str) -> List[bytes]:
        return [payload for published_topic, payload in self.published if published_topic == topic]

    async def wait_for_publish(self, topic: str, timeout: float = 1.0) -> bytes:
        async def poll():
            while not self.published_on(topic):
                await asyncio.sleep(0.005)
            return self.published_on(topic)[0]
        return await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def fake_broker(mocker) -> FakeBroker:
    """Replaces aiomqtt.Client inside the connection module with a FakeBroker."""
    broker = FakeBroker()
    mocker.patch("mqtt_rpc.client.connection.MQTTClient", new=broker)
    return broker


@pytest.fixture
def rpc_config() -> dict:
    return {
        "mqtt": {
            "host": "broker.test",
            "port": 1883,
            "client_id": "test-client",
            "connect_timeout": 1,
            "reconnect_interval": 0.01,
        },
        "rpc": {"timeout": 1},
    }


@pytest.fixture
def transport() -> MagicMock:
    """A bare Transport whose publish/subscribe succeed."""
    transport = MagicMock()
    transport.publish = AsyncMock()
    transport.subscribe = AsyncMock()
    return transport


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
