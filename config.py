import os

APP_NAME = "Fix My Area API"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEBUG = ENVIRONMENT == "development"

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret")
JWT_ALGORITHM = "HS256"
JWT_ISSUER = "fix-my-area"
JWT_AUDIENCE = "fix-my-area-users"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", 7))
AUTH_COOKIE_NAME = "auth-token"

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "fixmyarea")
# "memory" keeps everything in-process; transactions need a replica set with "mongo"
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo" if DATABASE_URL else "memory")

OTP_EXPIRE_MINUTES = int(os.getenv("OTP_EXPIRE_MINUTES", 10))
OTP_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("OTP_RATE_LIMIT_WINDOW_SECONDS", 15 * 60))
OTP_RATE_LIMIT_MAX_REQUESTS = int(os.getenv("OTP_RATE_LIMIT_MAX_REQUESTS", 5))
RATE_LIMIT_SWEEP_SECONDS = int(os.getenv("RATE_LIMIT_SWEEP_SECONDS", 5 * 60))

EMAIL_API_URL = os.getenv("EMAIL_API_URL")
EMAIL_API_KEY = os.getenv("EMAIL_API_KEY", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Fix My Area <no-reply@fixmyarea.local>")
EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", 10))
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrator")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
