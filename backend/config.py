import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Runtime configuration read from the environment (and `.env`).

    The presence of DATABASE_URL selects the relational backend; without it
    everything lives in the local JSON store under LOCAL_STORE_DIR.
    """

    def __init__(self, database_url=None, local_store_dir="./survey-data", secret_key="dev-secret",
                 session_max_age=7 * 24 * 3600, reset_token_max_age=3600,
                 origins=("http://localhost:5173",), public_base_url="http://localhost:5173",
                 log_level="INFO"):
        self.database_url = database_url or None
        self.local_store_dir = local_store_dir
        self.secret_key = secret_key
        self.session_max_age = int(session_max_age)
        self.reset_token_max_age = int(reset_token_max_age)
        self.origins = list(origins)
        self.public_base_url = public_base_url.rstrip("/")
        self.log_level = log_level

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            local_store_dir=os.getenv("LOCAL_STORE_DIR", "./survey-data"),
            secret_key=os.getenv("SECRET_KEY", "dev-secret"),
            session_max_age=os.getenv("SESSION_MAX_AGE", str(7 * 24 * 3600)),
            reset_token_max_age=os.getenv("RESET_TOKEN_MAX_AGE", "3600"),
            origins=os.getenv("ORIGINS", "http://localhost:5173").split(","),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:5173"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @property
    def remote_enabled(self) -> bool:
        return bool(self.database_url)

    def public_url(self, public_id: str) -> str:
        return f"{self.public_base_url}/s/{public_id}"
