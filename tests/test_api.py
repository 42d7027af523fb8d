"""
Tests for the HTTP endpoint.
"""

import pytest
from unittest.mock import Mock
from fastapi.testclient import TestClient
from api import create_app

ENDPOINT = "/ai-calculate-metrics"


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as test_client:
        yield test_client


class TestCalculateMetricsEndpoint:
    def test_success(self, client, request_payload):
        response = client.post(ENDPOINT, json=request_payload)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["fromCache"] is False
        assert body["metrics"]["sharpeRatio"] == 10.0
        assert body["aiAnalysis"]["riskLevel"] == "conservative"
        assert "traces" not in body

    def test_repeat_request_served_from_cache(self, client, request_payload):
        client.post(ENDPOINT, json=request_payload)
        response = client.post(ENDPOINT, json=request_payload)

        assert response.status_code == 200
        assert response.json()["fromCache"] is True

    def test_traces_requested(self, client, request_payload):
        response = client.post(ENDPOINT, json={**request_payload, "generateTraces": True})

        traces = response.json()["traces"]
        assert len(traces) == 27
        assert traces[0]["metricId"] == "totalReturn"
        assert traces[0]["steps"][0]["step"] == 1

    def test_invalid_json(self, client):
        response = client.post(
            ENDPOINT, content=b"{not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Request body must be valid JSON"

    def test_validation_error(self, client, request_payload):
        response = client.post(ENDPOINT, json={**request_payload, "weights": [0.7, 0.7]})

        assert response.status_code == 400
        assert "Weights must sum to 1" in response.json()["error"]

    def test_insufficient_data(self, client, request_payload):
        response = client.post(ENDPOINT, json={**request_payload, "tickers": ["AAA", "NOPE"]})

        assert response.status_code == 422
        assert "NOPE" in response.json()["error"]

    def test_internal_error(self, client, service, request_payload):
        service.fetcher = Mock()
        service.fetcher.fetch_portfolio_and_benchmark.side_effect = RuntimeError("upstream exploded")

        response = client.post(ENDPOINT, json=request_payload)

        assert response.status_code == 500
        assert response.json() == {
            "error": "upstream exploded",
            "details": "RuntimeError: upstream exploded",
        }


class TestCors:
    def test_preflight(self, client):
        response = client.options(
            ENDPOINT,
            headers={
                "Origin": "https://app.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, content-type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_simple_request_carries_origin_header(self, client, request_payload):
        response = client.post(
            ENDPOINT, json=request_payload, headers={"Origin": "https://app.example.com"}
        )
        assert response.headers["access-control-allow-origin"] == "*"


class TestLifespan:
    def test_injected_service_not_closed(self, service):
        service.close = Mock()
        with TestClient(create_app(service)):
            pass
        service.close.assert_not_called()
