"""Tests for the probe and the HTTP routes."""
import random
import time

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from conftest import ScriptedRandom
from pingmetrics.config import Settings
from pingmetrics.main import Probe, client_address, create_app

OPENMETRICS_ACCEPT = "application/openmetrics-text; version=1.0.0"


def make_client(settings, rpc_metrics, probe=None) -> TestClient:
    return TestClient(create_app(settings, rpc_metrics, probe))


class TestProbe:
    """The success boundary is inclusive: n <= prob with n in [0, 100)."""

    @pytest.mark.parametrize(
        "prob, draw, succeeds",
        [
            (0, 0, True),
            (0, 1, False),
            (0, 99, False),
            (42, 42, True),
            (42, 43, False),
            (99, 99, True),
            (100, 99, True),
        ],
    )
    def test_boundary(self, prob, draw, succeeds):
        probe = Probe(success_probability=prob, rng=ScriptedRandom([draw]))
        assert probe.succeeds() is succeeds

    def test_prob_100_always_succeeds(self):
        probe = Probe(success_probability=100, rng=random.Random(7))
        assert all(probe.succeeds() for _ in range(5000))

    @pytest.mark.parametrize("prob", [0, 24, 49, 89])
    def test_success_rate_converges_to_prob_plus_one(self, prob):
        probe = Probe(success_probability=prob, rng=random.Random(1234 + prob))
        trials = 20_000
        rate = sum(probe.succeeds() for _ in range(trials)) / trials
        assert rate == pytest.approx((prob + 1) / 100, abs=0.02)

    def test_latency_and_failure_with_prob_zero(self):
        """lat=50, prob=0: each answer takes >=50ms and nearly all fail."""
        probe = Probe(latency_ms=50, success_probability=0, rng=random.Random(99))

        started = time.monotonic()
        response = probe.respond()
        assert time.monotonic() - started >= 0.049
        assert response.status_code in (200, 500)

        fast = Probe(latency_ms=0, success_probability=0, rng=random.Random(99))
        failures = sum(fast.respond().status_code == 500 for _ in range(200))
        assert failures >= 190

    def test_from_settings(self):
        probe = Probe.from_settings(Settings(latency_ms=12, success_probability=34))
        assert (probe.latency_ms, probe.success_probability) == (12, 34)


class TestPingRoute:
    def test_pong(self, settings, rpc_metrics):
        client = make_client(settings, rpc_metrics)
        response = client.get("/ping")

        assert response.status_code == 200
        assert response.text == "pong"

    def test_failure_has_empty_body(self, settings, rpc_metrics):
        probe = Probe(success_probability=10, rng=ScriptedRandom([11]))
        client = make_client(settings, rpc_metrics, probe)
        response = client.get("/ping")

        assert response.status_code == 500
        assert response.content == b""

    def test_delay_applies_to_every_request(self, rpc_metrics):
        settings = Settings(latency_ms=50)
        client = make_client(settings, rpc_metrics)
        for _ in range(3):
            started = time.monotonic()
            assert client.get("/ping").status_code == 200
            assert time.monotonic() - started >= 0.049

    def test_probe_does_not_touch_registry(self, settings, rpc_metrics):
        client = make_client(settings, rpc_metrics)
        client.get("/ping")
        assert rpc_metrics.registry.get_sample_value(
            "rpc_durations_seconds_count", {"service": "uniform"}
        ) is None


class TestMetricsRoute:
    def test_text_exposition(self, settings, rpc_metrics):
        rpc_metrics.observe("uniform", 0.0001)
        client = make_client(settings, rpc_metrics)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'rpc_durations_seconds_count{service="uniform"} 1.0' in response.text
        assert "pingmetrics_build_info" in response.text

    def test_openmetrics_negotiation(self, settings, rpc_metrics):
        rpc_metrics.observe_with_exemplar(0.00002, {"dummyID": "4242"})
        client = make_client(settings, rpc_metrics)

        response = client.get("/metrics", headers={"Accept": OPENMETRICS_ACCEPT})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/openmetrics-text")
        assert '# {dummyID="4242"}' in response.text
        assert response.text.endswith("# EOF\n")


def test_health(settings, rpc_metrics):
    response = make_client(settings, rpc_metrics).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestClientAddress:
    @staticmethod
    def _request(headers):
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/ping",
            "headers": [(k.encode(), v.encode()) for k, v in headers.items()],
            "client": ("192.0.2.7", 51000),
        }
        return Request(scope)

    def test_forwarded_for_wins(self):
        assert client_address(self._request({"x-forwarded-for": "10.1.2.3"})) == "10.1.2.3"

    def test_peer_address_otherwise(self):
        assert client_address(self._request({})) == "192.0.2.7"
