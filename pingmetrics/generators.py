"""Background latency samplers.

Three samplers, one per distribution, keep the registry supplied with fresh
observations so /metrics always has live data with no traffic required. Each
sleeps a base interval stretched by the shared oscillation factor, and stops
promptly once its interrupt is called.
"""
import logging
import random
import threading
from typing import Callable, Dict, List, Optional

from opentelemetry import trace
from opentelemetry.trace import format_trace_id

from .config import Settings
from .metrics import RpcMetrics
from .oscillation import Oscillation

_LOGGER = logging.getLogger(__name__)

_TRACER = trace.get_tracer(__name__)


class Sampler:
    """One unending draw, record, sleep loop for a single distribution."""

    def __init__(
        self,
        service: str,
        draw: Callable[[], float],
        record: Callable[[float], None],
        base_interval_ms: int,
        oscillation: Oscillation,
    ) -> None:
        self.service = service
        self.base_interval_ms = base_interval_ms
        self._draw = draw
        self._record = record
        self._oscillation = oscillation
        self._stop = threading.Event()

    @property
    def name(self) -> str:
        return f"sampler-{self.service}"

    def interval(self) -> float:
        """Seconds to sleep before the next draw, truncated to whole milliseconds."""
        return int(self.base_interval_ms * self._oscillation.factor()) / 1000

    def step(self) -> float:
        value = self._draw()
        try:
            self._record(value)
        except Exception as exc:
            # Losing one observation is harmless; the next iteration tries again.
            _LOGGER.warning("Failed to record %s observation: %s", self.service, exc)
        return value

    def run(self) -> None:
        _LOGGER.debug("Sampler %s started", self.service)
        while not self._stop.is_set():
            self.step()
            self._stop.wait(self.interval())
        _LOGGER.debug("Sampler %s stopped", self.service)

    def interrupt(self, error: Optional[BaseException] = None) -> None:
        self._stop.set()


def _normal_exemplar() -> Dict[str, str]:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        return {"trace_id": format_trace_id(span_context.trace_id)}
    # Stand-in for a trace ID when no tracer provider is installed.
    return {"dummyID": str(random.randrange(100_000))}


def build_samplers(
    settings: Settings, rpc_metrics: RpcMetrics, oscillation: Oscillation
) -> List[Sampler]:
    """Create the uniform, normal and exponential samplers."""

    def draw_uniform() -> float:
        return random.random() * settings.uniform_domain

    def draw_normal() -> float:
        return random.gauss(0.0, 1.0) * settings.normal_domain + settings.normal_mean

    def draw_exponential() -> float:
        return random.expovariate(1.0) / 1e6

    def record_normal(value: float) -> None:
        rpc_metrics.observe("normal", value)
        # Illustrates exemplar support: the observation carries the ID of the
        # span it was recorded under.
        with _TRACER.start_as_current_span("rpc.normal") as span:
            span.set_attribute("rpc.duration_seconds", value)
            rpc_metrics.observe_with_exemplar(value, _normal_exemplar())

    return [
        Sampler(
            "uniform",
            draw_uniform,
            lambda value: rpc_metrics.observe("uniform", value),
            100,
            oscillation,
        ),
        Sampler("normal", draw_normal, record_normal, 75, oscillation),
        Sampler(
            "exponential",
            draw_exponential,
            lambda value: rpc_metrics.observe("exponential", value),
            50,
            oscillation,
        ),
    ]
