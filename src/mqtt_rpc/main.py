"""
Main entry point for the MQTT RPC demo.

This module is responsible for:
- Loading configuration from config.yaml next to this file.
- Connecting to the broker and subscribing to the response topic.
- Issuing a single RPC request (by default 'getTime' with no params).
- Logging the response topic and body, or the reason the call failed.
"""

import asyncio
import logging
import sys

from pathlib import Path
from typing import Dict, Any, Union

from mqtt_rpc.client.rpc_client import RPCClient
from mqtt_rpc.config_loader import load_config
from mqtt_rpc.exceptions import RPCError

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

def setup_logging(level: Union[int, str] = logging.INFO):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)

async def main_application_runner(config_path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> int:
    setup_logging()
    config: Dict[str, Any] = load_config(config_path)
    log_level = config.get('log_level', 'INFO')
    logging.getLogger().setLevel(log_level.upper() if isinstance(log_level, str) else log_level)

    demo_conf = config.get('demo', {})
    method = demo_conf.get('method', 'getTime')
    params = demo_conf.get('params') or {}

    try:
        async with RPCClient(config) as client:
            logger.info(f"Calling '{method}' with params {params}...")
            response = await client.call(method, params)
    except RPCError as e:
        logger.error(f"RPC '{method}' failed: {e}")
        return 1

    logger.info(f"response.topic: {response.topic}")
    logger.info(f"response.body: {response.body}")
    return 0

if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main_application_runner()))
    except KeyboardInterrupt:
        pass
