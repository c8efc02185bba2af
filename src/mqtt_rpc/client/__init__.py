"""
Client-side components.
This package turns method calls into MQTT requests and correlates the
responses that come back on the wildcard response subscription.
"""
