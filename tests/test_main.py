import pytest
import logging
from unittest.mock import patch, AsyncMock, MagicMock

from mqtt_rpc.exceptions import ConnectError, RPCTimeoutError
from mqtt_rpc.main import main_application_runner
from mqtt_rpc.models import Response

@pytest.fixture
def mock_config():
    """Provides a fake configuration dictionary."""
    return {
        "mqtt": {"host": "localhost", "port": 1883},
        "rpc": {"timeout": 5},
        "demo": {"method": "getTime", "params": {}},
        "log_level": "DEBUG",
    }


def make_client(call_result=None, call_error=None, enter_error=None):
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client, side_effect=enter_error)
    client.__aexit__ = AsyncMock(return_value=False)
    client.call = AsyncMock(return_value=call_result, side_effect=call_error)
    return client


@pytest.mark.asyncio
@patch('mqtt_rpc.main.load_config')
@patch('mqtt_rpc.main.RPCClient')
async def test_runner_calls_configured_method_and_logs_response(MockRPCClient, mock_load_config, mock_config, caplog):
    caplog.set_level(logging.INFO, logger="mqtt_rpc")
    mock_load_config.return_value = mock_config
    response = Response(id=1, topic="response/1", body={"result": "12:00:00"})
    client = make_client(call_result=response)
    MockRPCClient.return_value = client

    exit_code = await main_application_runner("some/config.yaml")

    assert exit_code == 0
    mock_load_config.assert_called_once_with("some/config.yaml")
    MockRPCClient.assert_called_once_with(mock_config)
    client.call.assert_awaited_once_with("getTime", {})
    client.__aexit__.assert_awaited_once()
    assert "response.topic: response/1" in caplog.text
    assert "response.body: {'result': '12:00:00'}" in caplog.text


@pytest.mark.asyncio
@patch('mqtt_rpc.main.load_config')
@patch('mqtt_rpc.main.RPCClient')
async def test_runner_reports_timeout(MockRPCClient, mock_load_config, mock_config):
    mock_load_config.return_value = mock_config
    MockRPCClient.return_value = make_client(call_error=RPCTimeoutError("no response"))

    assert await main_application_runner() == 1


@pytest.mark.asyncio
@patch('mqtt_rpc.main.load_config')
@patch('mqtt_rpc.main.RPCClient')
async def test_runner_reports_connect_failure(MockRPCClient, mock_load_config, mock_config):
    mock_load_config.return_value = mock_config
    client = make_client(enter_error=ConnectError("Connection refused"))
    MockRPCClient.return_value = client

    assert await main_application_runner() == 1
    client.call.assert_not_awaited()


@pytest.mark.asyncio
@patch('mqtt_rpc.main.load_config')
@patch('mqtt_rpc.main.RPCClient')
async def test_runner_accepts_numeric_log_level(MockRPCClient, mock_load_config, mock_config):
    mock_config["log_level"] = 10
    mock_load_config.return_value = mock_config
    response = Response(id=1, topic="response/1", body=b"{}")
    MockRPCClient.return_value = make_client(call_result=response)
    root = logging.getLogger()
    previous = root.level

    try:
        assert await main_application_runner() == 0
        assert root.level == logging.DEBUG
    finally:
        root.setLevel(previous)
