"""Environment-driven settings for the persona-sim service and CLI."""
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_BUNDLED_PERSONAS = Path(__file__).parent / "personas" / "data"


@dataclass(frozen=True)
class Settings:
    db_path: str = "persona_sim.db"
    personas_dir: Path = _BUNDLED_PERSONAS
    # Model call gateway
    chat_backend: str = "modelkey"
    chat_api_url: str = ""
    model_pools_url: str = ""
    model_pools: tuple[str, ...] = ()
    chat_poll_attempts: int = 60
    chat_poll_interval: float = 2.0
    openai_api_key: str | None = None
    analysis_concurrency: int = 10
    # Content store
    content_backend: str = "local"
    content_dir: Path = Path("uploads")
    content_bucket_name: str = ""
    aws_region: str = "ap-southeast-1"
    public_base_url: str = "http://127.0.0.1:8000"
    signing_secret: str = "dev-secret"
    # Worker / misc
    queue_workers: int = 1
    stage: str = "dev"
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Build Settings from the current environment (and .env, if present)."""
    pools = os.getenv("MODEL_POOLS", "")
    return Settings(
        db_path=os.getenv("DB_PATH", "persona_sim.db"),
        personas_dir=Path(os.getenv("PERSONAS_DIR", str(_BUNDLED_PERSONAS))),
        chat_backend=os.getenv("CHAT_BACKEND", "modelkey").lower(),
        chat_api_url=os.getenv("CHAT_API_URL", ""),
        model_pools_url=os.getenv("MODEL_POOLS_URL", ""),
        model_pools=tuple(p.strip() for p in pools.split(",") if p.strip()),
        chat_poll_attempts=int(os.getenv("CHAT_POLL_ATTEMPTS", "60")),
        chat_poll_interval=float(os.getenv("CHAT_POLL_INTERVAL", "2.0")),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        analysis_concurrency=int(os.getenv("ANALYSIS_CONCURRENCY", "10")),
        content_backend=os.getenv("CONTENT_BACKEND", "local").lower(),
        content_dir=Path(os.getenv("CONTENT_DIR", "uploads")),
        content_bucket_name=os.getenv("CONTENT_BUCKET_NAME", ""),
        aws_region=os.getenv("AWS_REGION", "ap-southeast-1"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://127.0.0.1:8000").rstrip("/"),
        signing_secret=os.getenv("SIGNING_SECRET", "dev-secret"),
        queue_workers=int(os.getenv("QUEUE_WORKERS", "1")),
        stage=os.getenv("STAGE", "dev"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
