"""
Unit Tests for Metrics Abstraction Layer

Covers the MetricsClient interface, the Telegraf wrapper, the no-op client and backend
selection through the factory.
"""

import pytest
from unittest.mock import Mock, patch, AsyncMock

from edu.canvasmcp.bridge.app.metrics import (
    MetricsClient,
    TelegrafCompatibilityClient,
    NoOpMetricsClient,
    create_metrics_client,
)


class TestMetricsClientInterface:
    """Test the abstract MetricsClient interface."""

    def test_interface_is_abstract(self):
        """MetricsClient should be abstract and not instantiable."""
        with pytest.raises(TypeError):
            MetricsClient()


class TestNoOpMetricsClient:
    @pytest.fixture
    def noop_client(self):
        return NoOpMetricsClient()

    def test_noop_increment(self, noop_client):
        """NoOp increment should not raise exceptions."""
        noop_client.increment("canvasmcp.test.counter", 1, {"tool": "list_courses"})
        noop_client.increment("canvasmcp.test.counter", 5)
        noop_client.increment("canvasmcp.test.counter")

    def test_noop_gauge_and_timer(self, noop_client):
        noop_client.gauge("canvasmcp.test.gauge", 42.5, {"cache": "response"})
        noop_client.timer("canvasmcp.test.timer", 0.001)

    @pytest.mark.asyncio
    async def test_noop_connect_and_close(self, noop_client):
        """NoOp connect and close should not raise exceptions."""
        await noop_client.connect()
        await noop_client.close()


class TestTelegrafCompatibilityClient:
    """Test the TelegrafCompatibilityClient wrapper."""

    @pytest.fixture
    def mock_telegraf_client(self):
        mock = Mock()
        mock.increment = Mock()
        mock.gauge = Mock()
        mock.timer = Mock()
        mock.connect = AsyncMock()
        mock.close = AsyncMock()
        return mock

    @pytest.fixture
    def telegraf_client(self, mock_telegraf_client):
        return TelegrafCompatibilityClient(mock_telegraf_client)

    def test_telegraf_increment(self, telegraf_client, mock_telegraf_client):
        """Telegraf increment should delegate to underlying client."""
        telegraf_client.increment("canvasmcp.auth.success", 3, {"method": "api_key"})

        mock_telegraf_client.increment.assert_called_once_with(
            "canvasmcp.auth.success", 3, tag_dict={"method": "api_key"}
        )

    def test_telegraf_gauge(self, telegraf_client, mock_telegraf_client):
        telegraf_client.gauge("canvasmcp.cache.response.size", 42, {"node": "a"})

        mock_telegraf_client.gauge.assert_called_once_with(
            "canvasmcp.cache.response.size", 42, tag_dict={"node": "a"}
        )

    def test_telegraf_timer(self, telegraf_client, mock_telegraf_client):
        telegraf_client.timer("canvasmcp.server.request.time", 1.234, {"path": "/mcp"})

        mock_telegraf_client.timer.assert_called_once_with(
            "canvasmcp.server.request.time", 1.234, tag_dict={"path": "/mcp"}
        )

    def test_telegraf_tag_values_are_strings(self, telegraf_client, mock_telegraf_client):
        """Status codes and flags are rendered as strings for the StatsD tag format."""
        telegraf_client.increment(
            "canvasmcp.server.request.count", 1, {"status": 200, "error": False}
        )

        mock_telegraf_client.increment.assert_called_once_with(
            "canvasmcp.server.request.count",
            1,
            tag_dict={"status": "200", "error": "False"},
        )

    def test_telegraf_increment_no_tags(self, telegraf_client, mock_telegraf_client):
        """Telegraf increment should handle None tag_dict gracefully."""
        telegraf_client.increment("canvasmcp.test.counter")

        mock_telegraf_client.increment.assert_called_once_with(
            "canvasmcp.test.counter", 1, tag_dict={}
        )

    @pytest.mark.asyncio
    async def test_telegraf_connect_and_close(self, telegraf_client, mock_telegraf_client):
        await telegraf_client.connect()
        await telegraf_client.close()

        mock_telegraf_client.connect.assert_awaited_once()
        mock_telegraf_client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_telegraf_close_swallows_backend_errors(
        self, telegraf_client, mock_telegraf_client
    ):
        """Shutdown should not fail because the metrics socket is already gone."""
        mock_telegraf_client.close.side_effect = OSError("socket closed")

        await telegraf_client.close()


class TestMetricsClientFactory:
    """Test the create_metrics_client factory function."""

    def test_factory_creates_noop_client(self):
        client = create_metrics_client("none")
        assert isinstance(client, NoOpMetricsClient)

    @patch("edu.canvasmcp.bridge.app.metrics.TelegrafStatsdClient")
    def test_factory_creates_telegraf_client(self, mock_telegraf_class):
        """Factory should create TelegrafCompatibilityClient for 'telegraf' backend."""
        mock_instance = Mock()
        mock_telegraf_class.return_value = mock_instance

        client = create_metrics_client("telegraf", host="localhost", port=8125, debug=True)

        assert isinstance(client, TelegrafCompatibilityClient)
        assert client.client is mock_instance
        mock_telegraf_class.assert_called_once_with(host="localhost", port=8125, debug=True)

    def test_factory_uses_preconfigured_telegraf_client(self):
        mock_client = Mock()

        client = create_metrics_client("telegraf", telegraf_client=mock_client)

        assert isinstance(client, TelegrafCompatibilityClient)
        assert client.client is mock_client

    def test_factory_handles_invalid_backend(self):
        """Factory should raise ValueError for invalid backend types."""
        with pytest.raises(ValueError, match="Invalid metrics backend: otel"):
            create_metrics_client("otel")

    def test_factory_handles_case_insensitive_backends(self):
        clients = [create_metrics_client(name) for name in ("NONE", "None", "none")]

        assert all(isinstance(c, NoOpMetricsClient) for c in clients)
