"""OpenTelemetry tracing for monitoring cycles, optimizer runs and rollbacks."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

from session_guard.config import TracingConfig

logger = logging.getLogger(__name__)


class NoOpSpan:
	"""A no-op span that acts as a context manager and attribute sink."""

	def set_attribute(self, key: str, value: Any) -> None:
		pass

	def set_status(self, status: Any, description: str | None = None) -> None:
		pass

	def record_exception(self, exception: BaseException) -> None:
		pass

	def end(self) -> None:
		pass


class MonitorTracer:
	"""Wraps an OpenTelemetry tracer; yields NoOpSpan when tracing is disabled."""

	def __init__(self, config: TracingConfig | None = None) -> None:
		self._config = config or TracingConfig()
		self._tracer: Any = None
		if not self._config.enabled:
			return

		resource = Resource.create({"service.name": self._config.service_name})
		provider = TracerProvider(resource=resource)
		if self._config.exporter == "otlp":
			# Optional extra: session-guard[otlp]
			from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

			provider.add_span_processor(
				SimpleSpanProcessor(OTLPSpanExporter(endpoint=self._config.otlp_endpoint))
			)
		else:
			provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

		trace.set_tracer_provider(provider)
		self._tracer = provider.get_tracer("session-guard")
		logger.info("Tracing enabled (%s exporter)", self._config.exporter)

	@property
	def active(self) -> bool:
		return self._tracer is not None

	@contextmanager
	def _span(self, name: str, attributes: dict[str, Any]) -> Generator[Any, None, None]:
		if not self.active:
			yield NoOpSpan()
			return
		with self._tracer.start_as_current_span(name) as span:
			for key, value in attributes.items():
				if value is not None:
					span.set_attribute(key, value)
			yield span

	def start_cycle_span(self, scope_id: str) -> Any:
		return self._span("monitor.cycle", {"scope.id": scope_id})

	def start_optimization_span(self, record_id: str, session_id: str, trigger: str) -> Any:
		return self._span("optimization.run", {
			"optimization.id": record_id,
			"session.id": session_id,
			"optimization.trigger": trigger,
		})

	def start_rollback_span(self, session_id: str, reason: str) -> Any:
		return self._span("config.rollback", {"session.id": session_id, "rollback.reason": reason})
