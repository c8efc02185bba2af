"""
Topic templates and correlation id parsing.

Request and response topics are configured as templates whose last level
is the `{id}` placeholder, e.g. 'v1/devices/me/rpc/request/{id}'. The
wildcard subscription is the same template with `{id}` replaced by '+'.
"""
import logging
from typing import Optional

from aiomqtt import Topic

logger = logging.getLogger(__name__)

ID_PLACEHOLDER = "{id}"
DEFAULT_REQUEST_TOPIC = "request/{id}"
DEFAULT_RESPONSE_TOPIC = "response/{id}"


def validate_template(template: str) -> str:
    """
    Checks that `template` has exactly one `{id}` placeholder, forming the
    whole last topic level, and no wildcards. Returns the template.
    """
    if not isinstance(template, str) or not template:
        raise ValueError(f"Topic template must be a non-empty string, got {template!r}")
    prefix, _, last_level = template.rpartition("/")
    if last_level != ID_PLACEHOLDER or ID_PLACEHOLDER in prefix:
        raise ValueError(f"Topic template '{template}' must end with a single '/{ID_PLACEHOLDER}' level")
    if "+" in prefix or "#" in prefix:
        raise ValueError(f"Topic template '{template}' must not contain wildcards")
    return template


def topic_for(template: str, request_id: int) -> str:
    """Fills the template for a concrete request id."""
    return template.replace(ID_PLACEHOLDER, str(request_id))


def subscription_for(template: str) -> str:
    """'response/{id}' -> 'response/+'"""
    return template.replace(ID_PLACEHOLDER, "+")


def request_id_from_topic(topic: str) -> Optional[int]:
    """
    Parses the trailing topic level as a request id.

    Only the canonical decimal form of a positive integer is accepted, so
    'response/7' yields 7 while 'response/07', 'response/-1' and
    'response/abc' yield None.
    """
    segment = topic.rsplit("/", 1)[-1]
    if not (segment.isascii() and segment.isdigit()):
        return None
    request_id = int(segment)
    if request_id <= 0 or str(request_id) != segment:
        return None
    return request_id


def matches(topic: str, subscription: str) -> bool:
    """True when a concrete topic is covered by the subscription filter."""
    if not topic:
        return False
    try:
        return Topic(topic).matches(subscription)
    except ValueError as e:
        # Wildcards in a received topic name are a protocol violation by the sender
        logger.debug(f"Invalid topic name '{topic}': {e}")
        return False
