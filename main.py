# main.py
import logging
import sys
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent
sys.path.append(str(ROOT_DIR))

from config import Settings, get_settings
from database import create_db_engine, create_session_factory, init_db
from exceptions import FulfillerError
from routes import webhooks, picker, transfer, packer
from services.enrichment import EnrichmentService
from services.reconciliation import OrderReconciler
from shopify_service import ShopifyService

load_dotenv()

logger = logging.getLogger("fulfiller")

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("fulfiller")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))


def build_shopify_client(settings: Settings, *, timeout: Optional[float] = None,
                         max_retries: Optional[int] = None) -> Optional[ShopifyService]:
    if not (settings.shop_url and settings.shop_token):
        logger.warning("SHOP_URL / SHOP_TOKEN not set; running without a Shopify client")
        return None
    kwargs = {}
    if timeout is not None:
        kwargs["timeout"] = timeout
    if max_retries is not None:
        kwargs["max_retries"] = max_retries
    return ShopifyService(settings.shop_url, settings.shop_token, api_version=settings.shopify_api_version, **kwargs)


def create_app(settings: Optional[Settings] = None, shopify: Optional[ShopifyService] = None,
               enrichment_client: Optional[ShopifyService] = None) -> FastAPI:
    """
    Builds the app and everything it owns: engine, session factory,
    Shopify clients and the reconciler. Tests pass their own settings and
    fake clients. Run with `uvicorn main:create_app --factory`.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)

    injected = shopify is not None
    if shopify is None:
        shopify = build_shopify_client(settings)
    if enrichment_client is None:
        # Enrichment runs under the order lock, so it gets the short timeout and retry budget.
        enrichment_client = shopify if injected else build_shopify_client(
            settings,
            timeout=settings.enrichment_timeout_seconds,
            max_retries=settings.enrichment_max_retries,
        )

    app = FastAPI(title="Hera Fulfiller")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.shopify = shopify
    app.state.reconciler = OrderReconciler(
        session_factory,
        EnrichmentService(enrichment_client),
        shopify=shopify,
    )

    @app.exception_handler(FulfillerError)
    async def fulfiller_error_handler(request: Request, exc: FulfillerError):
        status_code = exc.status_code or 500
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error_code": exc.error_code, "retryable": exc.retryable},
        )

    @app.get("/health", include_in_schema=False)
    def health():
        return {"status": "ok"}

    # Routers
    app.include_router(webhooks.router)
    app.include_router(picker.router)
    app.include_router(transfer.router)
    app.include_router(packer.router)
    return app

