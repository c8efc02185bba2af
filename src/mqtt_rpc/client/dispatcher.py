"""
RPC Response Dispatcher.

Receives every message delivered on the wildcard response subscription,
reads the request id from the last topic level and settles the matching
pending request. Anything that cannot be matched is logged and dropped:
with at-least-once delivery, duplicates and post-timeout arrivals are
expected traffic, not errors.
"""
import logging

from mqtt_rpc import models, topics
from mqtt_rpc.client.correlator import RPCCorrelator
from mqtt_rpc.exceptions import DecodeError
from mqtt_rpc.models import Response

logger = logging.getLogger(__name__)


class ResponseDispatcher:
    """
    Routes response messages to the correlator's pending requests.
    """
    def __init__(self, correlator: RPCCorrelator, response_topic: str = topics.DEFAULT_RESPONSE_TOPIC,
                 decode_json: bool = False):
        self.correlator = correlator
        self.response_topic = topics.validate_template(response_topic)
        self.subscription = topics.subscription_for(self.response_topic)
        self.decode_json = decode_json

    def handle_message(self, topic: str, payload: bytes) -> bool:
        """
        Callback for every message delivered by the connection.
        Returns True if the message settled a pending request.
        """
        if not topics.matches(topic, self.subscription):
            return False

        request_id = topics.request_id_from_topic(topic)
        if request_id is None:
            logger.warning(f"Dropping message on '{topic}': last topic level is not a request id")
            return False

        pending = self.correlator.claim(request_id)
        if pending is None:
            # Late (after timeout/cancel), duplicate, or never issued by us
            logger.info(f"Dropping response on '{topic}': request {request_id} is not pending")
            return False

        body = payload
        if self.decode_json:
            try:
                body = models.decode_json(payload)
            except DecodeError as e:
                logger.warning(f"Response to request {request_id} could not be decoded: {e}")
                pending.settle(error=e)
                return True

        pending.settle(Response(id=request_id, topic=topic, body=body))
        logger.debug(f"Response to request {request_id} delivered after {pending.age:.3f}s")
        return True
