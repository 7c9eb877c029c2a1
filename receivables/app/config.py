import os
from decimal import Decimal
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.getenv(name) or "").strip() or default
    try:
        return Decimal(raw)
    except ArithmeticError:
        return Decimal(default)


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/receivables"
        # Comma-separated list of allowed CORS origins for the POS front-end.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Ledger policy.
        self.tax_rate = _env_decimal("LEDGER_TAX_RATE", "0.16")
        self.default_due_days = _env_int("LEDGER_DEFAULT_DUE_DAYS", 30)
        self.due_soon_days = _env_int("LEDGER_DUE_SOON_DAYS", 7)
        self.statement_payments_limit = _env_int("LEDGER_STATEMENT_PAYMENTS_LIMIT", 50)

        # Transaction behaviour.
        self.lock_timeout_ms = _env_int("LEDGER_LOCK_TIMEOUT_MS", 5000)
        self.tx_retries = max(1, _env_int("LEDGER_TX_RETRIES", 3))

        self.pool_min_size = _env_int("DB_POOL_MIN_SIZE", 1)
        self.pool_max_size = _env_int("DB_POOL_MAX_SIZE", 10)


settings = Settings()
