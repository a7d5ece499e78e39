import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        default_user_id: int,
        page_size: int,
        max_page_size: int,
        transfer_category_name: str,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.default_user_id = default_user_id
        self.page_size = page_size
        self.max_page_size = max_page_size
        self.transfer_category_name = transfer_category_name
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    default_user_id = int(os.getenv("LEDGER_DEFAULT_USER_ID", "1"))
    page_size = int(os.getenv("LEDGER_PAGE_SIZE", "50"))
    max_page_size = int(os.getenv("LEDGER_MAX_PAGE_SIZE", "100"))
    transfer_category_name = os.getenv("LEDGER_TRANSFER_CATEGORY_NAME", "Transfer")
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        default_user_id=default_user_id,
        page_size=page_size,
        max_page_size=max_page_size,
        transfer_category_name=transfer_category_name,
        log_level=log_level,
    )
