import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        bcrypt_rounds: int,
        upload_dir: Path,
        max_receipt_bytes: int,
        frontend_origin: str,
        auto_create_schema: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.bcrypt_rounds = bcrypt_rounds
        self.upload_dir = upload_dir
        self.max_receipt_bytes = max_receipt_bytes
        self.frontend_origin = frontend_origin
        self.auto_create_schema = auto_create_schema


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Paris")
    token_secret = os.getenv(
        "FINANCE_TOKEN_SECRET",
        "5f0c3c2a9d3e4b7f8a61c2d0e9b4a7f31c8e2d5b6a9f0e3d7c4b1a8e5f2d9c6b",
    )
    token_max_age_hours = int(os.getenv("FINANCE_TOKEN_MAX_AGE_HOURS", "168"))
    bcrypt_rounds = int(os.getenv("FINANCE_BCRYPT_ROUNDS", "12"))
    upload_dir = Path(
        os.getenv("FINANCE_UPLOAD_DIR", str(data_dir / "receipts"))
    ).resolve()
    max_receipt_bytes = int(
        os.getenv("FINANCE_MAX_RECEIPT_BYTES", str(5 * 1024 * 1024))
    )
    frontend_origin = os.getenv("FINANCE_FRONTEND_ORIGIN", "http://localhost:5173")
    auto_create_schema = os.getenv("FINANCE_AUTO_CREATE_SCHEMA", "1") not in {
        "0",
        "false",
        "no",
    }
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        bcrypt_rounds=bcrypt_rounds,
        upload_dir=upload_dir,
        max_receipt_bytes=max_receipt_bytes,
        frontend_origin=frontend_origin,
        auto_create_schema=auto_create_schema,
    )
