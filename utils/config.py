from dotenv import load_dotenv
import os

load_dotenv()

PROFILE= os.getenv("PROFILE","development")


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    DEBUG = False
    LOG_LEVEL = "INFO"
    LOG_TO_FILE = True
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_FILE = os.getenv("LOG_FILE", "entity_resolution.log")
    LOG_MAX_BYTES = 10 * 1024 * 1024
    LOG_BACKUP_COUNT = 18
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o")
    LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", 0.0))
    LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", 300))
    LLM_TIMEOUT_SECONDS = int(os.getenv("LLM_TIMEOUT_SECONDS", 20))
    MAX_LLM_RETRIES = int(os.getenv("MAX_LLM_RETRIES", 3))
    LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", 1.0))
    USE_AI_INTERPRETER = _env_flag("USE_AI_INTERPRETER")
    USE_AI_RANKING = _env_flag("USE_AI_RANKING")

    # Duplicate detection
    DUPLICATE_SCORE_THRESHOLD = int(os.getenv("DUPLICATE_SCORE_THRESHOLD", 30))
    DUPLICATE_CANDIDATE_LIMIT = int(os.getenv("DUPLICATE_CANDIDATE_LIMIT", 20))
    DUPLICATE_TOP_K = int(os.getenv("DUPLICATE_TOP_K", 5))

    # Workflow execution
    MAX_SUBFLOW_DEPTH = int(os.getenv("MAX_SUBFLOW_DEPTH", 5))
    MAX_STEPS_PER_TURN = int(os.getenv("MAX_STEPS_PER_TURN", 25))
    MAX_HISTORY_MESSAGES = int(os.getenv("MAX_HISTORY_MESSAGES", 20))
    DEFAULT_WORKSPACE_ID = int(os.getenv("DEFAULT_WORKSPACE_ID", 1))
    PLURAL_RULES = {
        "person": "people",
        "child": "children",
    }

    # Session persistence
    SESSION_STORE = os.getenv("SESSION_STORE", "redis")
    SESSION_FILE = os.getenv("SESSION_FILE", "sessions.json")
    REDIS_HOST = os.getenv("REDIS_HOST", "redis")
    REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
    SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 86400))
    SESSION_LOCK_TIMEOUT_SECONDS = int(os.getenv("SESSION_LOCK_TIMEOUT_SECONDS", 30))


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = "DEBUG"
    SESSION_STORE = os.getenv("SESSION_STORE", "file")

class TestingConfig(Config):
    DEBUG = True
    LOG_LEVEL = "WARNING"
    LOG_TO_FILE = False
    SESSION_STORE = "file"
    USE_AI_INTERPRETER = False
    USE_AI_RANKING = False

class ProductionConfig(Config):
    DEBUG = False
    LOG_LEVEL = "ERROR"

# Profile Mapping
config_map = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}

# Get the active config
ActiveConfig = config_map.get(PROFILE, DevelopmentConfig)()
