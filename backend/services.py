import logging
from functools import lru_cache

from auth import AccountService, LocalAccounts
from config import Settings
from db import make_engine, make_session_factory
from remote import RemoteBackend
from repository import DataAccess
from storage import JsonFileStore, LocalBackend

logger = logging.getLogger(__name__)


class Services:
    def __init__(self, settings, data_access, accounts):
        self.settings = settings
        self.data_access = data_access
        self.accounts = accounts


def build_services(settings: Settings) -> Services:
    """Pick the storage backend once, from what is configured."""
    if settings.remote_enabled:
        session_factory = make_session_factory(make_engine(settings.database_url))
        backend = RemoteBackend(session_factory)
        accounts = AccountService(
            session_factory,
            secret_key=settings.secret_key,
            session_max_age=settings.session_max_age,
            reset_token_max_age=settings.reset_token_max_age,
        )
    else:
        backend = LocalBackend(JsonFileStore(settings.local_store_dir))
        accounts = LocalAccounts()
    logger.info("Using %s survey storage", backend.name)
    return Services(settings, DataAccess(backend), accounts)


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(Settings.from_env())


def get_settings() -> Settings:
    return get_services().settings


def get_data_access() -> DataAccess:
    return get_services().data_access


def get_accounts():
    return get_services().accounts
