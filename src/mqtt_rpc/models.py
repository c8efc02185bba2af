"""
Data Models for RPC Requests, Responses and MQTT Payloads.

Defines the request/response hierarchy shared by the client and the
server side, plus the MQTT envelope handed to aiomqtt.
"""
from dataclasses import dataclass, field, asdict
import asyncio
import json
import time
from typing import Any, Dict, Optional

from mqtt_rpc.exceptions import DecodeError


def decode_json(payload: bytes) -> Any:
    """Decodes a UTF-8 JSON payload, raising DecodeError on malformed input."""
    try:
        return json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Payload is not valid JSON: {e}") from e

# --- Base Classes (The "Blueprints") ---

@dataclass(frozen=True, kw_only=True)
class BasePayload:
    """Base class for all JSON payloads sent over MQTT."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Converts the object to a JSON string."""
        return json.dumps(self.to_dict())

    def to_bytes(self) -> bytes:
        """Converts the object to UTF-8 encoded bytes for MQTT."""
        return self.to_json().encode('utf-8')

# --- The "Letters" (Content Variants) ---

@dataclass(frozen=True, kw_only=True)
class Request(BasePayload):
    """
    A single RPC request. The id only travels in the request topic, so the
    wire form is just {"method": ..., "params": ...}.
    """
    id: int
    method: str
    params: Any = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"method": self.method, "params": self.params}

    @classmethod
    def from_bytes(cls, request_id: int, payload: bytes) -> "Request":
        """Parses a request received on the request topic for `request_id`."""
        body = decode_json(payload)
        if not isinstance(body, dict):
            raise DecodeError(f"Request payload must be a JSON object, got {type(body).__name__}")
        method = body.get("method")
        if not isinstance(method, str) or not method:
            raise DecodeError("Request payload has no 'method'")
        params = body.get("params")
        return cls(id=request_id, method=method, params={} if params is None else params)

@dataclass(frozen=True, kw_only=True)
class ReplyPayload(BasePayload):
    """Result/error envelope published by the RPC handler."""
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"error": self.error}
        return {"result": self.result}

@dataclass(frozen=True)
class Response:
    """A message received on the response topic for a pending request."""
    id: int
    topic: str
    body: Any  # raw bytes, or the decoded JSON value

    def json(self) -> Any:
        if isinstance(self.body, (bytes, bytearray, str)):
            return decode_json(self.body)
        return self.body

def _consume_exception(future: asyncio.Future):
    if not future.cancelled():
        future.exception()

@dataclass(eq=False)
class PendingRequest:
    """
    A published request waiting for its response.

    `completion` is a single-assignment slot: the first settle wins and
    any later one is ignored. Settling is safe from any thread.
    """
    request: Request
    completion: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)

    @property
    def id(self) -> int:
        return self.request.id

    @property
    def age(self) -> float:
        return time.monotonic() - self.created_at

    def settle(self, response: Optional[Response] = None, error: Optional[BaseException] = None):
        loop = self.completion.get_loop()
        loop.call_soon_threadsafe(self._settle, response, error)

    def _settle(self, response: Optional[Response], error: Optional[BaseException]):
        if self.completion.done():
            return
        if error is not None:
            self.completion.set_exception(error)
            # Nobody may ever await a cancelled or aborted request
            self.completion.add_done_callback(_consume_exception)
        else:
            self.completion.set_result(response)

# --- The "Envelope" (The MQTT Context) ---

@dataclass(frozen=True)
class MQTTMessage:
    """
    Represents a full outgoing MQTT message (Envelope + Letter).

    The field names of `to_aiomqtt_args` exactly match aiomqtt's
    Client.publish, since we spread the dict straight into it.
    """
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False

    def to_aiomqtt_args(self) -> Dict[str, Any]:
        """Returns dict suitable for client.publish(**args)"""
        return {
            "topic": self.topic,
            "payload": self.payload,
            "qos": self.qos,
            "retain": self.retain,
        }
