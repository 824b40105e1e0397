"""
Runtime settings for the Waste Collection API.

Everything is read from the environment. The defaults are only meant for
local development; a real deployment supplies all of them.
"""
import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

FRONTEND_URL = os.getenv("FRONTEND_URL", "*")
PORT = int(os.getenv("PORT", 8000))

APP_ENV = os.getenv("APP_ENV", "production")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

API_PREFIX = "/api/v1"

# Roles allowed to author waste tips
PRIVILEGED_ROLES = [r.strip() for r in os.getenv("PRIVILEGED_ROLES", "collector").split(",") if r.strip()]


def is_development() -> bool:
    return APP_ENV.lower() == "development"
