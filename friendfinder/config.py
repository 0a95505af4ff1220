import logging
import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
    api_key: str = None
    store_backend: str = "memory"
    firebase_project_id: str = None
    firebase_api_key: str = None
    firestore_access_token: str = None
    default_region: str = "US"
    # Firestore 'in' queries take at most 10 values
    match_batch_size: int = 10
    contacts_page_size: int = 1000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            api_key=os.getenv("API_KEY"),
            store_backend=os.getenv("STORE_BACKEND", "memory").lower(),
            firebase_project_id=os.getenv("FIREBASE_PROJECT_ID"),
            firebase_api_key=os.getenv("FIREBASE_API_KEY"),
            firestore_access_token=os.getenv("FIRESTORE_ACCESS_TOKEN"),
            default_region=os.getenv("DEFAULT_REGION", "US").upper(),
            match_batch_size=int(os.getenv("MATCH_BATCH_SIZE", "10")),
            contacts_page_size=int(os.getenv("CONTACTS_PAGE_SIZE", "1000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
