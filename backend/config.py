import os

# Database URL (defaults to a SQLite file created in the backend folder)
DATABASE_URL = os.getenv("KPI_DATABASE_URL", "sqlite:///./kpi_evaluations.db")

# IMPORTANT: In a real deployment, override the secret key via the environment
SECRET_KEY = os.getenv(
    "KPI_SECRET_KEY", "super-secret-key-change-this-in-production-123456"
)
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("KPI_TOKEN_EXPIRE_MINUTES", "60"))

# Evaluations older than this can no longer be moved forward automatically
STALE_AFTER_DAYS = int(os.getenv("KPI_STALE_AFTER_DAYS", "30"))

LOG_LEVEL = os.getenv("KPI_LOG_LEVEL", "INFO")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "KPI_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
    ).split(",")
    if origin.strip()
]
