"""
ToolSpec Gateway Server

FastAPI service for install registration, review submission and gated review
reads.

Properties:
- Submissions are validated in full before touching storage; every violation
  is reported in one 400 response.
- A submission is stored at most once per idempotency key. Replays return the
  original review id and count and do not re-run install activation.
- Review reads are gated per install on every request.
- Storage failures surface as retryable 503s, never as a fabricated success.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, replace
from typing import Any, List, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .errors import (
    TS_E_BAD_REQUEST,
    TS_E_INVALID_JSON,
    TS_E_RATE_LIMITED,
    TS_E_REQUEST_TOO_LARGE,
    TS_E_VALIDATION_FAILED,
    ToolSpecError,
    TransientStorageError,
    ValidationFailed,
    toolspec_error,
)
from .installs import InstallManager
from .metrics import (
    instrument_fastapi,
    record_access_decision,
    record_rate_limited,
    record_submission,
    set_lockdown_active,
)
from .ops_stats import OPS_STATS
from .ratelimit import RateLimiter, parse_rate_limit
from .reviews import ReviewCatalog
from .store import ToolSpecStore
from .validation import validate_submission

logger = logging.getLogger("toolspec_gateway")


def _env_flag(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    db_path: str = "toolspec_gateway.db"
    max_request_bytes: int = 1048576
    rate_limit_installs: str = "10/m"
    rate_limit_submissions: str = "60/m"
    rate_limit_max_keys: int = 20000
    env: str = "dev"
    stats_token: str = ""
    stats_require_auth: bool = False
    metrics_token: str = ""

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        try:
            max_bytes = int(os.getenv("TOOLSPEC_MAX_REQUEST_BYTES", str(cls.max_request_bytes)) or cls.max_request_bytes)
        except ValueError:
            max_bytes = cls.max_request_bytes
        try:
            max_keys = int(os.getenv("TOOLSPEC_RATE_LIMIT_MAX_KEYS", str(cls.rate_limit_max_keys)) or cls.rate_limit_max_keys)
        except ValueError:
            max_keys = cls.rate_limit_max_keys

        env = (os.getenv("TOOLSPEC_ENV", cls.env) or cls.env).strip().lower()
        require = _env_flag("TOOLSPEC_STATS_REQUIRE_AUTH")
        if require is None:
            require = env in ("prod", "production")

        return cls(
            db_path=(os.getenv("TOOLSPEC_DB_PATH", "") or "").strip() or cls.db_path,
            max_request_bytes=max(1024, max_bytes),
            rate_limit_installs=os.getenv("TOOLSPEC_RATE_LIMIT_INSTALLS", cls.rate_limit_installs).strip(),
            rate_limit_submissions=os.getenv("TOOLSPEC_RATE_LIMIT_SUBMISSIONS", cls.rate_limit_submissions).strip(),
            rate_limit_max_keys=max(1, max_keys),
            env=env,
            stats_token=(os.getenv("TOOLSPEC_STATS_TOKEN", "") or "").strip(),
            stats_require_auth=bool(require),
            metrics_token=(os.getenv("TOOLSPEC_METRICS_TOKEN", "") or "").strip(),
        )


# ---------------------------
# Response models
# ---------------------------

class InstallResponse(BaseModel):
    install_id: str
    install_secret: str
    secret_version: int


class RevokeResponse(BaseModel):
    revoked: bool


class ContributorStatus(BaseModel):
    submission_access: str
    reason: str


class SubmissionResponse(BaseModel):
    review_id: str
    status: str
    validated_tool_use_count: int
    contributor_status: ContributorStatus


class AccessStatusResponse(BaseModel):
    submission_access: str
    deny_reason: Optional[str] = None
    next_actions: List[str]
    post_install_required: bool
    post_install_required_command: Optional[str] = None
    post_install_required_message: Optional[str] = None
    first_submission_completed_at: Optional[str] = None


def _build_limiter(spec: str, max_keys: int) -> Optional[RateLimiter]:
    if not spec or spec.lower() in ("0", "off", "disabled", "false"):
        return None
    try:
        cap, refill = parse_rate_limit(spec)
        return RateLimiter(capacity=cap, refill_rate_per_sec=refill, max_keys=max_keys)
    except ValueError as e:
        logger.warning("Invalid rate limit %r: %s (disabled)", spec, e)
        return None


def _rl_key(req: Request) -> str:
    if req.client and req.client.host:
        return f"ip:{req.client.host}"
    return "_anon"


def _token_matches(req: Request, token: str, header_name: str) -> bool:
    authz = (req.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == token:
        return True
    return (req.headers.get(header_name) or "").strip() == token


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(store: Optional[ToolSpecStore] = None, config: Optional[GatewayConfig] = None) -> FastAPI:
    """Create the FastAPI application. Seeds the review catalog on first start."""
    from . import __version__ as toolspec_version

    config = config or GatewayConfig.from_env()
    store = store or ToolSpecStore(config.db_path)
    installs = InstallManager(store)
    catalog = ReviewCatalog(store)
    catalog.seed()

    app = FastAPI(
        title="ToolSpec Gateway",
        description="Tool reliability reviews for coding agents",
        version=toolspec_version,
    )
    app.state.store = store
    app.state.installs = installs
    app.state.catalog = catalog

    @app.exception_handler(ToolSpecError)
    async def _toolspec_error_handler(request: Request, exc: ToolSpecError):
        if isinstance(exc, TransientStorageError):
            OPS_STATS.record_storage_unavailable()
            set_lockdown_active(store.circuit.is_lockdown_active())
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------

    def _authorize_metrics(req: Request) -> bool:
        if not config.metrics_token:
            return True
        return _token_matches(req, config.metrics_token, "X-Metrics-Token")

    instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Request size + rate limiting
    # ---------------------------

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > config.max_request_bytes
            except ValueError:
                err = toolspec_error(TS_E_BAD_REQUEST, "malformed Content-Length header")
                return JSONResponse(status_code=400, content=err.as_dict())
            if too_large:
                err = toolspec_error(
                    TS_E_REQUEST_TOO_LARGE,
                    f"request body exceeds {config.max_request_bytes} bytes",
                    http_status=413,
                )
                return JSONResponse(status_code=413, content=err.as_dict())
        return await call_next(req)

    install_limiter = _build_limiter(config.rate_limit_installs, config.rate_limit_max_keys)
    submission_limiter = _build_limiter(config.rate_limit_submissions, config.rate_limit_max_keys)

    def _enforce_rate_limit(limiter: Optional[RateLimiter], req: Request, endpoint: str) -> None:
        if limiter is None or limiter.allow(_rl_key(req)):
            return
        OPS_STATS.record_rate_limited(endpoint)
        record_rate_limited(endpoint)
        raise toolspec_error(TS_E_RATE_LIMITED, "too many requests; retry later", retryable=True, http_status=429)

    def _gate(install_id: Optional[str]):
        decision = installs.access_status(install_id)
        OPS_STATS.record_access_check(decision.submission_access)
        record_access_decision(decision.submission_access, decision.deny_reason)
        if not decision.granted:
            raise decision.to_error()
        return decision

    # ---------------------------
    # Installs
    # ---------------------------

    @app.post("/installs", response_model=InstallResponse, status_code=201)
    async def register_install(http_request: Request):
        _enforce_rate_limit(install_limiter, http_request, "installs")
        creds = await asyncio.to_thread(installs.create_install)
        OPS_STATS.record_install_created()
        return InstallResponse(**creds.to_dict())

    @app.post("/installs/{install_id}/revoke", response_model=RevokeResponse)
    async def revoke_install(install_id: str):
        install_id = install_id.strip()
        if not install_id:
            raise toolspec_error(TS_E_VALIDATION_FAILED, "install_id is required")
        existed = await asyncio.to_thread(installs.revoke_install, install_id)
        if existed:
            OPS_STATS.record_install_revoked()
        return RevokeResponse(revoked=existed)

    @app.get("/access-status", response_model=AccessStatusResponse)
    async def access_status(
        install_id: Optional[str] = Query(None),
        x_install_id: Optional[str] = Header(None, alias="X-Toolspec-Install-Id"),
    ):
        decision = await asyncio.to_thread(installs.access_status, x_install_id or install_id)
        OPS_STATS.record_access_check(decision.submission_access)
        record_access_decision(decision.submission_access, decision.deny_reason)
        return decision.as_status()

    # ---------------------------
    # Submissions
    # ---------------------------

    @app.post("/submissions", response_model=SubmissionResponse, status_code=202)
    async def submit_review(http_request: Request):
        _enforce_rate_limit(submission_limiter, http_request, "submissions")
        try:
            body: Any = await http_request.json()
        except ValueError:
            OPS_STATS.record_submission("rejected")
            record_submission("rejected")
            return JSONResponse(
                status_code=400,
                content={
                    "error": TS_E_INVALID_JSON,
                    "errors": [{"field": "body", "message": "must be valid JSON"}],
                },
            )

        result = validate_submission(body)
        if not result.ok:
            OPS_STATS.record_submission("rejected")
            record_submission("rejected")
            raise ValidationFailed(details={"errors": result.errors_as_dicts()})

        submission = result.value
        stored = await asyncio.to_thread(store.store_submission, submission)
        status = "duplicate" if stored.duplicate else "submitted"
        OPS_STATS.record_submission(status)
        record_submission(status)

        decision = await asyncio.to_thread(installs.access_status, submission.install_id)
        return SubmissionResponse(
            review_id=stored.review_id,
            status=status,
            validated_tool_use_count=stored.validated_tool_use_count,
            contributor_status=ContributorStatus(**decision.contributor_status()),
        )

    # ---------------------------
    # Gated review reads
    # ---------------------------

    @app.get("/reviews")
    async def list_reviews(
        http_request: Request,
        install_id: Optional[str] = Query(None),
        x_install_id: Optional[str] = Header(None, alias="X-Toolspec-Install-Id"),
    ):
        await asyncio.to_thread(_gate, x_install_id or install_id)
        return await asyncio.to_thread(catalog.list_payload, http_request.headers)

    @app.get("/reviews/{tool_slug}")
    async def get_review(
        tool_slug: str,
        http_request: Request,
        install_id: Optional[str] = Query(None),
        x_install_id: Optional[str] = Header(None, alias="X-Toolspec-Install-Id"),
    ):
        await asyncio.to_thread(_gate, x_install_id or install_id)
        return await asyncio.to_thread(catalog.detail_payload, tool_slug, http_request.headers)

    # ---------------------------
    # Operational stats (/stats)
    # ---------------------------

    def _authorize_stats(req: Request) -> bool:
        if not config.stats_require_auth:
            return True
        if not config.stats_token:
            return False
        return _token_matches(req, config.stats_token, "X-Stats-Token")

    @app.get("/stats")
    async def stats(http_request: Request):
        if not _authorize_stats(http_request):
            return JSONResponse(status_code=401, content={"error": "stats_unauthorized", "message": "stats token required"})
        lockdown = store.circuit.is_lockdown_active()
        set_lockdown_active(lockdown)
        return OPS_STATS.snapshot(extra={"lockdown_active": lockdown})

    @app.get("/health")
    async def health_check():
        return {
            "status": "degraded" if store.circuit.is_lockdown_active() else "healthy",
            "version": toolspec_version,
        }

    return app


def main():
    """
    Main entry point for the toolspec-gateway CLI.

    Usage:
        toolspec-gateway                    # Start on default port 8000
        toolspec-gateway --port 9000        # Start on custom port
        toolspec-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="ToolSpec Gateway - install gating and review submissions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    toolspec-gateway                         Start gateway on 0.0.0.0:8000
    toolspec-gateway --port 9000             Start on custom port
    toolspec-gateway --host 127.0.0.1        Bind to localhost only

Environment Variables:
    TOOLSPEC_DB_PATH                  Path to SQLite database (default: toolspec_gateway.db)
    TOOLSPEC_MAX_REQUEST_BYTES        Request body cap (default: 1048576)
    TOOLSPEC_RATE_LIMIT_INSTALLS      Install registration rate (default: 10/m)
    TOOLSPEC_RATE_LIMIT_SUBMISSIONS   Submission rate (default: 60/m)
    TOOLSPEC_ENV                      'prod' requires TOOLSPEC_STATS_TOKEN for /stats
    TOOLSPEC_PROXY_HEADERS            If set (1/true), trust X-Forwarded-* headers
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--db-path", default=None, help="SQLite database path (overrides TOOLSPEC_DB_PATH)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])

    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    config = GatewayConfig.from_env()
    if args.db_path:
        config = replace(config, db_path=args.db_path)

    print(f"Starting ToolSpec Gateway on {args.host}:{args.port}")
    print(f"  Database: {config.db_path}")
    print("  Endpoints:")
    print("    POST /installs                 - Register an install")
    print("    POST /installs/{id}/revoke     - Revoke an install")
    print("    GET  /access-status            - Gating state for an install")
    print("    POST /submissions              - Submit a review")
    print("    GET  /reviews[/{slug}]         - Gated review reads")
    print("    GET  /health                   - Health check")
    print()

    app = create_app(config=config)

    env_proxy = os.environ.get("TOOLSPEC_PROXY_HEADERS", "").strip().lower()
    proxy_headers = args.proxy_headers or env_proxy in ("1", "true", "yes")

    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
