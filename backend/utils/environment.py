"""
Environment Configuration Utility

ENVIRONMENT values:
- production: Stripe catalog sync failures are logged loudly, docs are hidden
- development: Local defaults (localhost CORS origins allowed)
- test: Automated tests
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def cors_origins() -> list:
    """
    Exact origins allowed by CORS.

    localhost origins are only allowed outside production. FRONTEND_URL is
    always allowed when set. Vercel previews are matched by regex in server.py.
    """
    origins = ["https://miniatur-ia.com", "https://www.miniatur-ia.com"]

    if not is_production():
        origins += ["http://localhost:3000", "http://localhost:5173"]

    frontend_url = os.environ.get("FRONTEND_URL")
    if frontend_url:
        origins.append(frontend_url.rstrip("/"))

    return origins


# Log environment on module load
logging.info(f"Environment: {ENVIRONMENT}")
