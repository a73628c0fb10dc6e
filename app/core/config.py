# app/core/config.py
import os
from typing import List
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "IPD Bed Board")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- MySQL ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "ipd_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "ipd_bed_board")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # DATABASE_URL wins over the MySQL parts (sqlite:///./ipd.db for local runs)
    SQLALCHEMY_DATABASE_URI: str = os.getenv(
        "DATABASE_URL",
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}?charset=utf8mb4",
    )

    # Every store call must come back within these bounds
    DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "10"))
    DB_CONNECT_TIMEOUT: int = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
    DB_ECHO: bool = _env_bool("DB_ECHO")

    # ---------- Hospital ----------
    # Day keys for admission numbers are cut in this timezone
    TIMEZONE: str = os.getenv("TIMEZONE", "Asia/Kolkata")
    TAT_DEFAULT_SECONDS: int = int(os.getenv("TAT_DEFAULT_SECONDS", "1800"))

    # ---------- Bed change notifications ----------
    NOTIFY_RETRY_ATTEMPTS: int = int(os.getenv("NOTIFY_RETRY_ATTEMPTS", "3"))

    # ---------- Setup ----------
    SEED_BEDS: int = int(os.getenv("SEED_BEDS", "20"))
    SEED_ROOM_TYPE: str = os.getenv("SEED_ROOM_TYPE", "GENERAL")
    SEED_DAILY_RATE: float = float(os.getenv("SEED_DAILY_RATE", "0") or 0.0)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
