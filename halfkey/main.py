from __future__ import annotations

import asyncio
import contextlib
import logging
from asyncio import Task, create_task
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from halfkey.attestation import (
    AttestationClientCache,
    AttestationRegistry,
    DeviceCheckVerifier,
    PlayIntegrityVerifier,
    WebVerifier,
)
from halfkey.attestation.play_integrity import close_google_client
from halfkey.config import GatewaySettings, get_settings, load_yaml_config, merge_settings
from halfkey.db import (
    CredentialRepository,
    InMemoryCredentialRepository,
    PrismaClientManager,
    PrismaCredentialRepository,
)
from halfkey.middleware.errors import register_exception_handlers
from halfkey.models.requests import ProxyHeaderNames
from halfkey.routers import health_router, metrics_router, proxy_router
from halfkey.services import (
    DestinationPolicy,
    ProxyGateway,
    RateLimiter,
    UsageDispatcher,
    UsageRecorder,
    WebhookUsageRecorder,
)

logger = logging.getLogger(__name__)


def build_attestation_registry(settings: GatewaySettings, http_client: httpx.AsyncClient) -> AttestationRegistry:
    google_clients = AttestationClientCache(
        max_size=settings.attestation_client_cache_size,
        ttl_seconds=settings.attestation_client_cache_ttl,
        on_evict=close_google_client,
    )
    return AttestationRegistry(
        [
            DeviceCheckVerifier(
                http_client,
                timeout=settings.device_check_timeout,
                sandbox_fallback=settings.device_check_sandbox_fallback,
            ),
            PlayIntegrityVerifier(
                http_client,
                client_cache=google_clients,
                timeout=settings.play_integrity_timeout,
            ),
            WebVerifier(),
        ]
    )


def build_gateway(
    settings: GatewaySettings,
    credentials: CredentialRepository,
    http_client: httpx.AsyncClient,
    usage_recorder: UsageRecorder | None = None,
    rate_limiter: RateLimiter | None = None,
    attestation: AttestationRegistry | None = None,
) -> ProxyGateway:
    if usage_recorder is None and settings.usage_webhook_url:
        usage_recorder = WebhookUsageRecorder(settings.usage_webhook_url, http_client)
    return ProxyGateway(
        credentials=credentials,
        rate_limiter=rate_limiter or RateLimiter(window_seconds=settings.rate_limit_window_seconds),
        attestation=attestation or build_attestation_registry(settings, http_client),
        destinations=DestinationPolicy(settings.blacklisted_destinations),
        usage=UsageDispatcher(usage_recorder),
        http_client=http_client,
        header_names=ProxyHeaderNames(prefix=settings.header_prefix),
        forward_timeout=settings.forward_timeout,
    )


async def _prune_rate_windows(rate_limiter: RateLimiter, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = rate_limiter.prune()
        if removed:
            logger.debug("pruned expired rate windows", extra={"removed": removed})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    cfg = load_yaml_config(settings.config_path)
    gateway_settings = merge_settings(settings, cfg)
    app.state.settings = settings
    app.state.app_config = cfg

    prisma_manager = PrismaClientManager()
    await prisma_manager.connect(gateway_settings.database_url)
    app.state.prisma_manager = prisma_manager

    if prisma_manager.client is not None:
        credentials: CredentialRepository = PrismaCredentialRepository(prisma_manager.client)
    else:
        credentials = InMemoryCredentialRepository(item.to_credential() for item in cfg.credentials)
        logger.info("using static credentials from config", extra={"count": len(cfg.credentials)})
    app.state.credential_repository = credentials

    app.state.http_client = httpx.AsyncClient(timeout=gateway_settings.forward_timeout, follow_redirects=False)
    gateway = build_gateway(gateway_settings, credentials, app.state.http_client)
    app.state.gateway = gateway

    prune_task: Task[None] | None = None
    if settings.rate_limit_prune_interval > 0:
        prune_task = create_task(_prune_rate_windows(gateway.rate_limiter, settings.rate_limit_prune_interval))

    logger.info("application startup complete")
    try:
        yield
    finally:
        if prune_task is not None:
            prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await prune_task
        await gateway.usage.shutdown()
        await gateway.attestation.close()
        gateway.rate_limiter.clear()
        await app.state.http_client.aclose()
        await prisma_manager.disconnect()


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
    register_exception_handlers(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(proxy_router)
    return app


def cli() -> None:
    """Command line entry point for the gateway."""
    import argparse
    import os

    import uvicorn

    parser = argparse.ArgumentParser(description="HalfKey split-key gateway")
    parser.add_argument("--config", "-c", help="Path to configuration file", default=None)
    parser.add_argument("--host", "-H", help="Host to bind to", default="0.0.0.0")
    parser.add_argument("--port", "-p", help="Port to bind to", type=int, default=8000)
    args = parser.parse_args()

    if args.config:
        os.environ["HALFKEY_CONFIG_PATH"] = args.config
        get_settings.cache_clear()

    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    cli()
