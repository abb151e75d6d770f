"""FastAPI application and process entry point.

/metrics renders the prometheus_client registry, /ping answers after a fixed
delay with a configured success rate. main() wires the HTTP server, the signal
watcher and the background samplers into one lifecycle group.

Traces and logs go to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is set;
otherwise spans only feed the exemplar trace IDs and logs go to stderr.
"""
import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from opentelemetry import trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from . import __version__
from . import metrics as app_metrics
from .config import Settings, parse_settings
from .generators import build_samplers
from .lifecycle import Group, HTTPServer, SignalWatcher
from .oscillation import Oscillation

_LOGGER = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def setup_telemetry(settings: Settings) -> List[Any]:
    """Initialise logging and the OTel tracer (and, with an endpoint, log export).

    Returns the providers that must be shut down before exit.
    """
    resource = Resource.create()
    export = bool(os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT"))
    providers: List[Any] = []

    # ── Traces ───────────────────────────────────────────────────────────────
    # Always installed so exemplars carry real trace IDs.
    tracer_provider = TracerProvider(resource=resource)
    if export:
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
    trace.set_tracer_provider(tracer_provider)
    providers.append(tracer_provider)

    # ── Logs ─────────────────────────────────────────────────────────────────
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if export:
        logger_provider = LoggerProvider(resource=resource)
        logger_provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter()))
        set_logger_provider(logger_provider)
        handlers.append(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
        providers.append(logger_provider)
    logging.basicConfig(level=settings.log_level, format=_LOG_FORMAT, handlers=handlers, force=True)

    _LOGGER.info("Telemetry initialised (OTLP export %s)", "enabled" if export else "disabled")
    return providers


# ── Probe ─────────────────────────────────────────────────────────────────────

@dataclass
class Probe:
    """Answers "pong" after latency_ms when randrange(100) <= success_probability.

    The comparison is inclusive, so the success rate is (prob + 1) / 100 and
    prob=100 never fails.
    """

    latency_ms: int = 0
    success_probability: int = 100
    rng: Any = random

    @classmethod
    def from_settings(cls, settings: Settings) -> "Probe":
        return cls(latency_ms=settings.latency_ms, success_probability=settings.success_probability)

    def succeeds(self) -> bool:
        return self.rng.randrange(100) <= self.success_probability

    def respond(self) -> Response:
        time.sleep(self.latency_ms / 1000)
        if self.succeeds():
            return PlainTextResponse("pong")
        return Response(status_code=500)


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    return request.client.host if request.client else ""


# ── App ───────────────────────────────────────────────────────────────────────

def create_app(
    settings: Settings,
    rpc_metrics: app_metrics.RpcMetrics,
    probe: Optional[Probe] = None,
) -> FastAPI:
    """Build the FastAPI app around an explicit registry and probe."""
    if probe is None:
        probe = Probe.from_settings(settings)

    app = FastAPI(
        title="pingmetrics",
        description="Synthetic RPC latency metrics and a tunable ping probe",
        version=__version__,
    )

    @app.get("/metrics", tags=["ops"])
    def metrics(request: Request):
        """Current registry state; OpenMetrics (with exemplars) when requested."""
        body, content_type = rpc_metrics.render(request.headers.get("accept"))
        return Response(content=body, media_type=content_type)

    @app.get("/ping", tags=["probe"])
    def ping(request: Request):
        """Sleep the configured latency, then pong or fail with 500."""
        _LOGGER.debug("ping from %s", client_address(request))
        return probe.respond()

    @app.get("/health", tags=["ops"])
    def health():
        """Liveness probe: always returns 200 if the process is up."""
        return {"status": "ok"}

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        _LOGGER.exception("Unhandled exception: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics")
    return app


# ── Entry point ───────────────────────────────────────────────────────────────

def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = parse_settings(argv)

    # Handlers go in before any slow setup; a signal during startup still
    # ends the run with status 0 once the group starts.
    with SignalWatcher() as watcher:
        providers = setup_telemetry(settings)
        try:
            rpc_metrics = app_metrics.configure(settings)
            oscillation = Oscillation(settings.oscillation_period)
            server = HTTPServer(create_app(settings, rpc_metrics), settings.listen_address)

            group = Group()
            group.add(server.execute, server.interrupt, name="http-server")
            for sampler in build_samplers(settings, rpc_metrics, oscillation):
                group.add(sampler.run, sampler.interrupt, name=sampler.name)
            group.add(watcher.execute, watcher.interrupt, name="signal-watcher")
            group.run()
        except Exception as exc:
            _LOGGER.error("Error: %s", exc)
            return 1
        finally:
            for provider in providers:
                provider.shutdown()

    _LOGGER.info("Shut down cleanly")
    return 0
