"""Prometheus instruments for the synthetic RPC latencies.

Build them once with configure(settings) after flags are parsed; the histogram
buckets depend on the normal distribution's parameters. Everything lives on a
private CollectorRegistry that /metrics renders.

prometheus_client metrics are safe to observe from many threads while a scrape
collects them, which is all the samplers and the endpoint rely on.
"""
from __future__ import annotations

import platform
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from prometheus_client import (
    CollectorRegistry,
    GCCollector,
    Histogram,
    Info,
    PlatformCollector,
    ProcessCollector,
)
from prometheus_client.exposition import choose_encoder
from prometheus_summary import Summary

from . import __version__
from .config import Settings

HISTOGRAM_BUCKET_COUNT = 20

# (quantile, allowed rank error) pairs for the latency summary.
SUMMARY_OBJECTIVES = ((0.5, 0.05), (0.9, 0.01), (0.99, 0.001))


@dataclass
class RpcMetrics:
    registry: CollectorRegistry
    durations: Summary
    durations_histogram: Histogram

    def observe(self, service: str, value: float) -> None:
        """Record one latency under its distribution label."""
        self.durations.labels(service=service).observe(value)

    def observe_with_exemplar(self, value: float, exemplar: Optional[Mapping[str, str]]) -> None:
        self.durations_histogram.observe(value, exemplar=dict(exemplar) if exemplar else None)

    def render(self, accept_header: Optional[str] = None) -> Tuple[bytes, str]:
        """Serialize the registry, using OpenMetrics when the scraper asks for it."""
        encoder, content_type = choose_encoder(accept_header or "")
        return encoder(self.registry), content_type


def linear_buckets(start: float, width: float, count: int) -> list[float]:
    """`count` upper bounds, the first at `start`, each `width` apart."""
    if count < 1:
        raise ValueError("linear_buckets needs a positive count")
    return [start + i * width for i in range(count)]


def configure(settings: Settings, registry: CollectorRegistry | None = None) -> RpcMetrics:
    """Create and register all instruments. Call once per registry."""
    if registry is None:
        registry = CollectorRegistry()

    # Fictional interservice RPC latencies for three services with different
    # latency distributions, told apart by the "service" label.
    durations = Summary(
        "rpc_durations_seconds",
        "RPC latency distributions.",
        ["service"],
        registry=registry,
        invariants=SUMMARY_OBJECTIVES,
    )

    # Normal distribution only: buckets centred on the mean, each half-sigma wide.
    durations_histogram = Histogram(
        "rpc_durations_histogram_seconds",
        "RPC latency distributions.",
        buckets=linear_buckets(
            settings.normal_mean - 5 * settings.normal_domain,
            0.5 * settings.normal_domain,
            HISTOGRAM_BUCKET_COUNT,
        ),
        registry=registry,
    )

    build_info = Info("pingmetrics_build", "Build information.", registry=registry)
    build_info.info({"version": __version__, "python_version": platform.python_version()})

    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    GCCollector(registry=registry)

    return RpcMetrics(registry=registry, durations=durations, durations_histogram=durations_histogram)
