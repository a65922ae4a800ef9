"""OpenTelemetry wiring for bus workers.

Tracing stays off unless ``observability.otel.enabled`` is set. While it is
off the API's proxy tracer hands out non-recording spans, so ``traced``
call sites cost almost nothing.
"""

from __future__ import annotations

from contextlib import contextmanager
from functools import wraps
import inspect
import logging
import os
import threading
from typing import Any, Callable, Dict, Iterator, Mapping, MutableMapping, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.propagate import extract as otel_extract
from opentelemetry.propagate import inject as otel_inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode

from core.errors import AppError


logger = logging.getLogger("OTel")

ERROR_TYPE_ATTR = "vci.error.type"
ERROR_KIND_ATTR = "vci.error.kind"
ERROR_MESSAGE_ATTR = "vci.error.message"

_state_lock = threading.Lock()
_otel_initialized = False
_otel_enabled = False
_otel_provider: Any = None
_otel_ref_count = 0


def _coerce_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return default


def _coerce_ratio(value: Any, *, default: float) -> float:
    try:
        ratio = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(ratio, 0.0), 1.0)


def _coerce_str(value: Any, *, default: str = "") -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text if text else default


def _resolve_otel_cfg(cfg: Mapping[str, Any] | None) -> Dict[str, Any]:
    if not isinstance(cfg, Mapping):
        return {}
    obs = cfg.get("observability")
    if not isinstance(obs, Mapping):
        return {}
    otel_cfg = obs.get("otel")
    return dict(otel_cfg) if isinstance(otel_cfg, Mapping) else {}


def init_otel(
    *,
    cfg: Mapping[str, Any] | None = None,
    service_name: Optional[str] = None,
) -> bool:
    """Install the global tracer provider once; later callers share it.

    Returns whether tracing is enabled. Every ``True`` must be paired with a
    ``shutdown_otel()``.
    """
    global _otel_initialized
    global _otel_enabled
    global _otel_provider
    global _otel_ref_count

    with _state_lock:
        if _otel_initialized:
            if _otel_enabled:
                _otel_ref_count += 1
            return _otel_enabled
        _otel_initialized = True
        otel_cfg = _resolve_otel_cfg(cfg)
        if not _coerce_bool(otel_cfg.get("enabled"), default=False):
            _otel_enabled = False
            return False

        resolved_service_name = (
            _coerce_str(otel_cfg.get("service_name"))
            or _coerce_str(service_name)
            or _coerce_str(os.getenv("VCI_SERVICE_NAME"))
            or _coerce_str(os.getenv("OTEL_SERVICE_NAME"))
            or "vc-issuance"
        )
        service_namespace = (
            _coerce_str(otel_cfg.get("service_namespace"))
            or _coerce_str(os.getenv("OTEL_SERVICE_NAMESPACE"))
            or "vc-issuance"
        )
        service_version = (
            _coerce_str(otel_cfg.get("service_version"))
            or _coerce_str(os.getenv("VCI_SERVICE_VERSION"))
            or "0.1.0"
        )
        otlp_endpoint = (
            _coerce_str(otel_cfg.get("otlp_endpoint"))
            or _coerce_str(os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"))
            or _coerce_str(os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"))
        )
        sampler_ratio = _coerce_ratio(otel_cfg.get("sampler_ratio"), default=1.0)

        resource = Resource.create(
            {
                "service.name": resolved_service_name,
                "service.namespace": service_namespace,
                "service.version": service_version,
            }
        )
        provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(sampler_ratio)))
        exporter_kwargs: Dict[str, Any] = {}
        if otlp_endpoint:
            exporter_kwargs["endpoint"] = otlp_endpoint
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))

        try:
            trace.set_tracer_provider(provider)
        except Exception as exc:  # noqa: BLE001
            logger.warning("OpenTelemetry set_tracer_provider failed: %s", exc)

        _otel_provider = provider
        _otel_enabled = True
        _otel_ref_count = 1
        logger.info(
            "OpenTelemetry enabled service=%s endpoint=%s sampler_ratio=%s",
            resolved_service_name,
            otlp_endpoint or "default",
            sampler_ratio,
        )
        return True


def shutdown_otel() -> None:
    global _otel_ref_count

    with _state_lock:
        if _otel_ref_count > 0:
            _otel_ref_count -= 1
        if _otel_ref_count > 0:
            return
        provider = _otel_provider

    if provider is not None:
        try:
            provider.force_flush()
        except Exception as exc:  # noqa: BLE001
            logger.warning("OpenTelemetry flush failed: %s", exc)


def is_otel_enabled() -> bool:
    return _otel_enabled


def get_tracer(name: str) -> Any:
    return trace.get_tracer(name)


def _clean_span_attributes(attributes: Mapping[str, Any] | None) -> Dict[str, Any]:
    if not attributes:
        return {}
    return {str(key): value for key, value in attributes.items() if value is not None}


def set_span_attrs(span: Any, attributes: Mapping[str, Any] | None) -> None:
    if span is None:
        return
    for key, value in _clean_span_attributes(attributes).items():
        span.set_attribute(key, value)


@contextmanager
def start_span(
    tracer: Any,
    name: str,
    *,
    headers: Mapping[str, str] | None = None,
    attributes: Mapping[str, Any] | None = None,
    mark_error_on_exception: bool = False,
    **kwargs: Any,
) -> Iterator[Any]:
    span_kwargs: Dict[str, Any] = dict(kwargs)
    if headers:
        span_kwargs.setdefault("context", extract_context_from_headers(headers))
    cleaned_attrs = _clean_span_attributes(attributes)
    if cleaned_attrs:
        span_kwargs["attributes"] = cleaned_attrs
    with tracer.start_as_current_span(name, **span_kwargs) as span:
        try:
            yield span
        except Exception as exc:
            if mark_error_on_exception:
                mark_span_error(span, exc)
            raise


def traced(
    tracer: Any,
    name: str,
    *,
    headers_arg: Optional[str] = None,
    span_arg: Optional[str] = None,
    attributes_getter: Optional[Callable[[Mapping[str, Any]], Mapping[str, Any] | None]] = None,
    mark_error_on_exception: bool = False,
    **span_kwargs: Any,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Wrap a coroutine function (or plain function) in a span.

    ``attributes_getter`` receives the bound call arguments by name. When
    ``span_arg`` is given the live span is passed to the function under that
    keyword.
    """
    span_name = str(name).strip()
    if not span_name:
        raise ValueError("traced requires a non-empty span name")

    def _decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        signature = inspect.signature(func)

        def _resolve(args: tuple[Any, ...], kwargs: Dict[str, Any]) -> tuple[Any, Any]:
            arguments = dict(signature.bind_partial(*args, **kwargs).arguments)
            headers = arguments.get(headers_arg) if headers_arg else None
            attributes = attributes_getter(arguments) if attributes_getter else None
            return headers, attributes

        if inspect.iscoroutinefunction(func):

            @wraps(func)
            async def _wrapped_async(*args: Any, **kwargs: Any) -> Any:
                headers, attributes = _resolve(args, kwargs)
                with start_span(
                    tracer,
                    span_name,
                    headers=headers,
                    attributes=attributes,
                    mark_error_on_exception=mark_error_on_exception,
                    **span_kwargs,
                ) as span:
                    if span_arg:
                        kwargs = {**kwargs, span_arg: span}
                    return await func(*args, **kwargs)

            return _wrapped_async

        @wraps(func)
        def _wrapped(*args: Any, **kwargs: Any) -> Any:
            headers, attributes = _resolve(args, kwargs)
            with start_span(
                tracer,
                span_name,
                headers=headers,
                attributes=attributes,
                mark_error_on_exception=mark_error_on_exception,
                **span_kwargs,
            ) as span:
                if span_arg:
                    kwargs = {**kwargs, span_arg: span}
                return func(*args, **kwargs)

        return _wrapped

    return _decorator


def extract_context_from_headers(headers: Mapping[str, str] | None) -> Any:
    carrier = {str(k): str(v) for k, v in (headers or {}).items()}
    try:
        return otel_extract(carrier)
    except Exception as exc:  # noqa: BLE001
        logger.debug("OpenTelemetry extract failed: %s", exc)
        return None


def inject_context_to_headers(headers: MutableMapping[str, str]) -> MutableMapping[str, str]:
    # An explicit upstream traceparent is kept as-is.
    try:
        injected: Dict[str, str] = {}
        otel_inject(injected)
        for k, v in injected.items():
            if not headers.get(k):
                headers[k] = v
    except Exception as exc:  # noqa: BLE001
        logger.debug("OpenTelemetry inject failed: %s", exc)
    return headers


def compact_error_message(exc: BaseException, *, max_len: int = 512) -> str:
    text = str(exc).strip()
    if "\n" in text:
        text = text.splitlines()[0].strip()
    if not text:
        text = type(exc).__name__
    return text[:max_len]


def _iter_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ if current.__cause__ is not None else current.__context__


def is_compact_exception(exc: BaseException) -> bool:
    """Client-side failures (AppError, pydantic validation) are reported without stack traces."""
    for chained in _iter_exception_chain(exc):
        if isinstance(chained, AppError) and chained.http_status < 500:
            return True
        cls = type(chained)
        if cls.__name__ == "ValidationError" and str(cls.__module__ or "").startswith("pydantic"):
            return True
    return False


def mark_span_error(
    span: Any,
    exc: BaseException,
    *,
    include_exception: Optional[bool] = None,
) -> None:
    if span is None:
        return
    summary = compact_error_message(exc)
    record = bool(include_exception) if include_exception is not None else not is_compact_exception(exc)
    if record:
        span.record_exception(exc)
    span.set_attribute(ERROR_TYPE_ATTR, type(exc).__name__)
    if isinstance(exc, AppError):
        span.set_attribute(ERROR_KIND_ATTR, exc.kind)
    span.set_attribute(ERROR_MESSAGE_ATTR, summary)
    span.set_status(Status(StatusCode.ERROR, description=summary))
