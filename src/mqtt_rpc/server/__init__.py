"""
Server-side components.
This package answers RPC requests published by the client, replying on
the response topic that carries the same request id.
"""
