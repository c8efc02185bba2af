"""
mqtt_rpc

This package provides an asynchronous request/response RPC layer on top
of an MQTT broker: requests are published on a per-request topic and
responses are correlated by the request id carried in the response topic.
"""
__version__ = "0.1.0"
