from contextlib import asynccontextmanager
from pathlib import Path

import conf
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routes.base import router
from settlement.coordinator import SettlementCoordinator
from settlement.notifications import NotificationDispatcher, build_notifier
from settlement.payments import PaymentSessionManager
from settlement.providers import build_provider
from settlement.scheduler import init_scheduler, shutdown_scheduler
from settlement.sweeper import ExpirySweeper
from utils import log

from clients.couchbase import check_connection

log.init(conf.get_log_level())
logger = log.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Check database connection
    logger.info("Verifying Couchbase connection...")
    await check_connection()
    logger.info("Couchbase connection verified.")

    # Initialize auth client if enabled
    if conf.USE_AUTH:
        from utils import auth

        app.state.auth_client = auth.AuthClient(conf.get_auth_config())
    else:
        logger.warning("Authentication is disabled (set USE_AUTH to enable)")

    # Settlement wiring
    payment_conf = conf.get_payment_conf()
    sweeper_conf = conf.get_sweeper_conf()
    provider = build_provider(payment_conf)

    sessions = PaymentSessionManager(payment_conf, provider)
    notifier = NotificationDispatcher(build_notifier(conf.get_notification_conf()))
    coordinator = SettlementCoordinator(payment_conf, sessions, notifier)
    sweeper = ExpirySweeper(coordinator, sessions, sweeper_conf)

    app.state.sweeper_conf = sweeper_conf
    app.state.notifier = notifier
    app.state.coordinator = coordinator
    app.state.sweeper = sweeper

    init_scheduler(sweeper, sweeper_conf)

    yield

    shutdown_scheduler()
    await notifier.drain()


app = FastAPI(
    title="Marketplace Auctions API",
    version="0.1.0",
    docs_url="/docs",
    lifespan=lifespan,
    debug=conf.get_http_expose_errors(),
)

app.include_router(router)

if not conf.validate():
    raise ValueError("Invalid configuration.")

http_conf = conf.get_http_conf()

app.add_middleware(
    CORSMiddleware,
    allow_origins=http_conf.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger.info(f"Starting API on port {http_conf.port}")

# Log all registered routes to help debug routing issues
logger.info("--- Registered Routes ---")
for route in app.routes:
    methods_set = getattr(route, "methods", None)
    methods = ", ".join(methods_set) if methods_set else "Any"
    path = getattr(route, "path", "<unknown>")
    logger.info(f"{path} [{methods}]")
logger.info("-------------------------")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=http_conf.host,
        port=http_conf.port,
        reload=http_conf.autoreload,
        log_level="info",
        reload_dirs=[str(Path(__file__).parent), "/models", "/clients"],
        log_config=None,
    )
