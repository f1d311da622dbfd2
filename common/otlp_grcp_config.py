import logging

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

# Logging (Experimental)
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor


def configure_telemetry(service_name: str, endpoint: str = "http://localhost:4317", insecure=True, enabled=True):
    """Install OTLP exporters for traces, metrics and logs. No-op when disabled."""
    if not enabled:
        logging.info(f"Telemetry disabled for {service_name}")
        return

    resource = Resource(attributes={
        SERVICE_NAME: service_name
    })

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=insecure)))
    trace.set_tracer_provider(trace_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint, insecure=insecure)
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))

    logger_provider = LoggerProvider(resource=resource)
    set_logger_provider(logger_provider)
    logger_provider.add_log_record_processor(
        BatchLogRecordProcessor(OTLPLogExporter(endpoint=endpoint, insecure=insecure))
    )
    # Attach OTLP handler to root logger
    logging.getLogger().addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))


class SagaInstruments:
    """Tracer and counters shared by the stock participants."""

    def __init__(self, name: str = "stock-service"):
        self.tracer = trace.get_tracer(name)
        meter = metrics.get_meter(name)
        self.reservations = meter.create_counter(
            "stock.reservations", description="Reservation attempts by outcome")
        self.compensations = meter.create_counter(
            "stock.compensations", description="Compensation requests by outcome")
        self.timeouts = meter.create_counter(
            "saga.timeouts", description="Timeout signals emitted by the monitor")
        self.duplicates = meter.create_counter(
            "events.duplicates", description="Redelivered events acknowledged without effect")

    def span(self, name: str, event):
        return self.tracer.start_as_current_span(
            name,
            attributes={
                "saga.id": event.saga_id,
                "event.id": event.event_id,
                "event.type": event.event_type,
            },
        )
