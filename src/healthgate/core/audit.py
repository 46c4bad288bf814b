"""
Audit records and request-scoped logging.

Every request gets exactly one AuditRecord, opened at dispatch and emitted
at completion. Log output for health-data requests is sanitized per call by
the RequestLogger carried on the request context.
"""

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from ..config import AuditSettings
from .masking import anonymize_ip, sanitize_log_data, sanitize_value, session_hash


class RequestLogger:
    """
    Logger handed to every stage of one request.

    Context is merged at call time so that bound values go through the
    sanitizer as well. Nothing here touches process-wide state.
    """

    def __init__(
        self,
        logger: Any,
        sanitize: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._logger = logger
        self.sanitize = sanitize
        self._context = dict(context or {})

    def bind(self, **kwargs: Any) -> "RequestLogger":
        return RequestLogger(self._logger, self.sanitize, {**self._context, **kwargs})

    def with_sanitization(self, sanitize: bool) -> "RequestLogger":
        return RequestLogger(self._logger, sanitize, self._context)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log("debug", event, kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log("info", event, kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log("warning", event, kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log("error", event, kwargs)

    def _log(self, level: str, event: str, kwargs: Dict[str, Any]) -> None:
        values = {**self._context, **kwargs}
        if self.sanitize:
            event = sanitize_log_data(event)
            values = sanitize_value(values)
        getattr(self._logger, level)(event, **values)


@dataclass
class AuditRecord:
    """Anonymized trace of one request."""

    timestamp: str
    method: str
    path: str
    ip: str
    user_agent: Optional[str]
    session_id: str
    health_data: bool = False
    status_code: Optional[int] = None
    response_time_ms: Optional[float] = None
    success: Optional[bool] = None
    started_at: float = field(default_factory=time.perf_counter, repr=False)
    emitted: bool = field(default=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("started_at")
        data.pop("emitted")
        return data


class AuditLogger:
    """Builds and emits audit records."""

    def __init__(self, settings: AuditSettings, logger: Any = None) -> None:
        self.settings = settings
        self.logger = logger if logger is not None else structlog.get_logger(settings.logger_name)

    def request_logger(self, sanitize: bool = False, **context: Any) -> RequestLogger:
        """Request-scoped logger over the audit sink."""
        return RequestLogger(
            self.logger,
            sanitize=sanitize and self.settings.sanitize_health_logs,
            context=context,
        )

    def open(
        self,
        method: str,
        path: str,
        client_ip: Optional[str],
        user_agent: Optional[str],
        health_data: bool = False,
    ) -> AuditRecord:
        return AuditRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            method=method,
            path=path,
            ip=anonymize_ip(client_ip),
            user_agent=user_agent,
            session_id=session_hash(
                client_ip,
                user_agent,
                length=self.settings.session_hash_length,
            ),
            health_data=health_data,
        )

    def close(self, record: AuditRecord, status_code: int, log: RequestLogger) -> bool:
        """
        Finalize and emit the record.

        Returns False, emitting nothing, when the record was already emitted.
        """
        if record.emitted:
            return False
        record.emitted = True
        record.status_code = status_code
        record.response_time_ms = round((time.perf_counter() - record.started_at) * 1000, 2)
        record.success = status_code < 400
        log.info("audit", **record.to_dict())
        return True
