from fastapi import FastAPI, APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from pathlib import Path
from datetime import datetime, timezone
import os
import logging

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from utils.environment import ENVIRONMENT, cors_origins, is_production
from credit_wallet import __version__
from credit_wallet.ledger import AccountNotFoundError
from credit_wallet.routes import credit_wallet_router, get_stripe_service
from routes.generation import generation_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="MiniaturIA - Thumbnail Generator API",
    version=__version__,
    docs_url=None if is_production() else "/docs",
)

api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "MiniaturIA API", "version": __version__}


@api_router.get("/health")
async def health():
    from database import check_db_connection
    db_ok, db_error = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "ok" if db_ok else db_error,
        "environment": ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


api_router.include_router(credit_wallet_router)
api_router.include_router(generation_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins(),
    allow_origin_regex=r"https://.*\.vercel\.app",
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"detail": message, "errors": jsonable_errors(errors)})


@app.exception_handler(AccountNotFoundError)
async def account_not_found_handler(request: Request, exc: AccountNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Account not found"})


def jsonable_errors(errors: list) -> list:
    return [
        {"loc": list(error.get("loc", [])), "msg": error.get("msg"), "type": error.get("type")}
        for error in errors
    ]


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    from database import check_db_connection, db
    from credit_wallet.db_init import ensure_indexes

    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    for line in await ensure_indexes(db):
        logger.info(line)

    if os.environ.get("STRIPE_SECRET_KEY"):
        try:
            await get_stripe_service().sync_catalog()
        except Exception as e:
            # Checkout re-syncs on demand
            logger.error(f"Stripe catalog sync failed on startup: {e}")
    else:
        logger.warning("STRIPE_SECRET_KEY not set - checkout and portal are disabled")

    logger.info(f"MiniaturIA API started (environment={ENVIRONMENT})")


@app.on_event("shutdown")
async def shutdown_db_client():
    from database import client
    client.close()
