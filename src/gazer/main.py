"""
Gazer Controller API

FastAPI application hosting the StaticSite control loop and its health endpoints.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, HTTPException, status

from .config import GazerSettings
from .control_plane import (
    JobOrchestrator,
    KubeClients,
    Reconciler,
    RefResolver,
    SiteController,
)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )
    logging.basicConfig(level=level)


# Initialize settings and logging
settings = GazerSettings()
setup_logging(settings.log_level_number)
logger = structlog.get_logger(__name__)

# Initialize controller (will be created in lifespan)
controller: SiteController | None = None


def build_controller(kube: KubeClients, settings: GazerSettings) -> SiteController:
    """Wire the control plane components together."""
    orchestrator = JobOrchestrator(
        kube,
        job_prefix=settings.job_prefix,
        builder_image=settings.builder_image,
    )
    resolver = RefResolver(kube, timeout_seconds=settings.ls_remote_timeout_seconds)
    reconciler = Reconciler(
        orchestrator,
        resolver,
        short_requeue_seconds=settings.short_requeue_seconds,
        long_requeue_seconds=settings.long_requeue_seconds,
    )
    return SiteController(
        kube,
        reconciler,
        worker_count=settings.worker_count,
        resync_seconds=settings.resync_seconds,
        watch_timeout_seconds=settings.watch_timeout_seconds,
        namespace=settings.watch_namespace,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan: startup and shutdown.

    - Load cluster configuration
    - Verify the StaticSite CRD is installed
    - Start the controller workers
    - Stop workers and close connections on shutdown
    """
    global controller

    # Startup
    logger.info("gazer_starting")
    kube = KubeClients.load(settings)
    controller = build_controller(kube, settings)
    await controller.verify_crd()
    await controller.start()
    logger.info("gazer_ready", workers=settings.worker_count)

    yield

    # Shutdown
    logger.info("gazer_shutting_down")
    await controller.shutdown()
    controller = None
    kube.dispose()
    logger.info("gazer_stopped")


# Create FastAPI app
app = FastAPI(
    title="Gazer",
    description="Automatic static site deployer for Kubernetes.",
    version="0.1.0",
    lifespan=lifespan,
)


def get_controller() -> SiteController:
    """Dependency to get controller instance."""
    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Controller not initialized"
        )
    return controller


# Health check
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "gazer",
        "workers": settings.worker_count,
        "ready": controller is not None,
    }


# Queue stats endpoint
@app.get("/api/v1/queue/stats")
async def get_queue_stats(
    ctrl: SiteController = Depends(get_controller),
):
    """Get reconcile queue statistics."""
    return ctrl.get_stats()


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "gazer",
        "version": "0.1.0",
        "status": "operational",
    }
