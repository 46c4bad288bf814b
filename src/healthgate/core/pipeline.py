"""
Request gate pipeline.

Orchestrates every inbound request through an ordered chain of stages:
1. Audit record, health-data classification, request logger
2. Transport security (production)
3. Header integrity and declared body size
4. API key authentication (never rejects)
5. Origin allow-list (production)
6. Rate limiting
7. Threat detection, then the optional intrusion variant
8. Terminology allow-list
9. Downstream handler; a failure becomes a 500 rejection body
10. Response annotation and audit emission

The first rejecting stage short-circuits the chain. A stage that fails
internally is logged and skipped; the request continues.
"""

import inspect
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.routing import Match
from starlette.types import ASGIApp

from ..config import Settings
from .audit import AuditLogger, AuditRecord, RequestLogger
from .auth import ApiKeyAuthenticator
from .compliance import ComplianceAnnotator
from .detection import DetectionEvent, ThreatDetector
from .exceptions import GateRejection, InternalError, RateLimitExceeded, ValidationRejection
from .keystore import ApiKeyRecord, ApiKeyStore
from .masking import anonymize_ip
from .metrics import GateMetrics
from .rate_limit import FixedWindowRateLimiter, RateLimitDecision

logger = structlog.get_logger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass
class GateContext:
    """Per-request state shared by the stages and downstream handlers."""

    log: RequestLogger
    audit: AuditRecord
    client_ip: Optional[str]
    contains_health_data: bool = False
    api_key: Optional[ApiKeyRecord] = None
    authenticated: bool = False
    rate_limit: Optional[RateLimitDecision] = None
    body: Any = None


def resolve_client_ip(request: Request, trust_forwarded_for: bool = False) -> Optional[str]:
    """Caller address; the first X-Forwarded-For hop when the proxy is trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else None


def _multi_dict(items: List[Any]) -> Dict[str, Any]:
    """Collapse repeated keys into lists, keep single values as strings."""
    result: Dict[str, Any] = {}
    for key, value in items:
        if key in result:
            existing = result[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[key] = [existing, value]
        else:
            result[key] = value
    return result


class RequestGate:
    """
    Runs the defense and compliance stages around a downstream handler.

    One instance serves all requests of an app. Mutable state lives only in
    the rate limiter and the key store, both of which serialize their own
    updates.
    """

    def __init__(
        self,
        settings: Settings,
        api_key_store: ApiKeyStore,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[GateMetrics] = None,
    ) -> None:
        self.settings = settings
        self.store = api_key_store
        self.audit = audit_logger or AuditLogger(settings.audit)
        self.metrics = metrics or GateMetrics()
        self.authenticator = ApiKeyAuthenticator(api_key_store, settings.security)
        self.detector = ThreatDetector(settings.detection)
        self.rate_limiter = FixedWindowRateLimiter(settings.rate_limit)
        self.compliance = ComplianceAnnotator(settings.compliance, settings.security)

    async def handle(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Screen request, call downstream, annotate and audit the response."""
        context = self._open(request)
        request.state.gate = context

        try:
            await self._screen(request, context)
        except GateRejection as exc:
            response = self._reject(exc, context)
        else:
            try:
                response = await call_next(request)
            except Exception as e:
                context.log.error(
                    "Downstream handler failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                response = InternalError().to_response()

        self._annotate(request, response, context)
        self._finish(request, context, response.status_code)
        return response

    # ── stages ──────────────────────────────────────────────

    def _open(self, request: Request) -> GateContext:
        path = request.url.path
        client_ip = resolve_client_ip(request, self.settings.security.trust_forwarded_for)
        user_agent = request.headers.get("user-agent")
        health_data = self.compliance.contains_health_data(path)

        audit = self.audit.open(
            method=request.method,
            path=path,
            client_ip=client_ip,
            user_agent=user_agent,
            health_data=health_data,
        )
        log = self.audit.request_logger(
            sanitize=health_data,
            method=request.method,
            path=path,
            session_id=audit.session_id,
        )

        if self.settings.detection.log_suspicious_access and self.detector.is_suspicious_access(str(request.url)):
            log.warning(
                "Suspicious access attempt",
                url=path,
                ip=anonymize_ip(client_ip),
                user_agent=user_agent,
            )

        return GateContext(
            log=log,
            audit=audit,
            client_ip=client_ip,
            contains_health_data=health_data,
        )

    async def _screen(self, request: Request, context: GateContext) -> None:
        path = request.url.path
        headers = request.headers

        await self._stage(
            "transport",
            context,
            self.compliance.enforce_transport,
            request.url.scheme,
            headers.get("x-forwarded-proto"),
        )
        await self._stage("headers", context, self.detector.check_headers, headers.items())
        await self._stage("body_size", context, self.detector.check_body_size, headers.get("content-length"))

        await self._authenticate(request, context)

        await self._stage(
            "origin",
            context,
            self.compliance.enforce_origin,
            headers.get("origin"),
            context.api_key.cors_origins if context.api_key else None,
        )

        context.rate_limit = await self._stage(
            "rate_limit",
            context,
            self.rate_limiter.check,
            context.client_ip or "unknown",
            path,
        )

        context.body = await self._stage("body", context, self._parse_body, request)
        await self._stage("detection", context, self._detect, request, context)

        await self._stage("terminology", context, self.compliance.enforce_terminology, path, context.body)

    async def _stage(
        self,
        name: str,
        context: GateContext,
        func: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Run one stage; rejections propagate, internal faults are skipped."""
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except GateRejection:
            raise
        except Exception as e:
            context.log.warning(
                "Gate stage failed, continuing",
                stage=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.metrics.record_stage_failure(name)
            return None

    async def _authenticate(self, request: Request, context: GateContext) -> None:
        raw_key = self.authenticator.extract_key(request.headers, request.query_params)
        result = await self.authenticator.authenticate(raw_key, context.log)
        context.authenticated = result.authenticated
        context.api_key = result.record
        self.metrics.record_authentication(result.outcome)

    async def _parse_body(self, request: Request) -> Any:
        """
        Parse a JSON or form body for scanning.

        Other content types are not inspected. Starlette caches the body, so
        downstream handlers can read it again.
        """
        raw = await request.body()
        if not raw:
            return None

        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type == "application/json" or content_type.endswith("+json"):
            try:
                return json.loads(raw)
            except (ValueError, RecursionError):
                raise ValidationRejection(
                    "Request body is not valid JSON",
                    error_code="INVALID_BODY",
                    error="Invalid body",
                )
        if content_type == FORM_CONTENT_TYPE:
            try:
                return _multi_dict(parse_qsl(raw.decode("utf-8"), keep_blank_values=True))
            except UnicodeDecodeError:
                raise ValidationRejection(
                    "Request body is not valid form data",
                    error_code="INVALID_BODY",
                    error="Invalid body",
                )
        return None

    def _path_params(self, request: Request) -> Dict[str, Any]:
        """Resolve path parameters by matching the app routes; the router has not run yet."""
        app = request.scope.get("app")
        routes = getattr(getattr(app, "router", None), "routes", [])
        for route in routes:
            match, child_scope = route.matches(request.scope)
            if match == Match.FULL:
                return dict(child_scope.get("path_params", {}))
        return {}

    def _detect(self, request: Request, context: GateContext) -> None:
        match = self.detector.scan_raw_target(
            request.scope.get("raw_path", b"").decode("latin-1"),
            request.scope.get("query_string", b"").decode("latin-1"),
        )
        query = _multi_dict(request.query_params.multi_items())
        if match is None:
            match = self.detector.scan_surfaces({
                "query": query,
                "params": self._path_params(request),
                "body": context.body,
            })
        if match is None and self.settings.detection.intrusion_detection:
            match = self.detector.scan_intrusion(
                request.url.path,
                context.body,
                request.headers.get("user-agent"),
                query=query,
            )
        if match is None:
            return

        event = DetectionEvent.from_match(match, anonymize_ip(context.client_ip), request.url.path)
        context.log.warning("Threat detected", **event.as_log())
        self.metrics.record_threat(match.category.value)
        raise self.detector.rejection_for(match)

    # ── completion ──────────────────────────────────────────

    def _reject(self, exc: GateRejection, context: GateContext) -> Response:
        context.log.warning(
            "Request rejected",
            stage=exc.stage,
            code=exc.error_code,
            status_code=exc.status_code,
        )
        self.metrics.record_rejection(exc.stage, exc.error_code)
        if isinstance(exc, RateLimitExceeded):
            self.metrics.record_rate_limited(exc.tier)
        return exc.to_response()

    def _annotate(self, request: Request, response: Response, context: GateContext) -> None:
        try:
            response.headers.update(
                self.compliance.response_headers(request.url.path, context.contains_health_data)
            )
            if context.rate_limit is not None:
                response.headers.update(context.rate_limit.headers())
        except Exception as e:
            context.log.warning(
                "Response annotation failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            self.metrics.record_stage_failure("annotation")

    def _finish(self, request: Request, context: GateContext, status_code: int) -> None:
        if self.audit.close(context.audit, status_code, context.log):
            self.metrics.record_request(
                request.method,
                status_code,
                time.perf_counter() - context.audit.started_at,
            )


class RequestGateMiddleware(BaseHTTPMiddleware):
    """ASGI adapter placing a RequestGate in front of the app."""

    def __init__(self, app: ASGIApp, gate: RequestGate) -> None:
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        return await self.gate.handle(request, call_next)
