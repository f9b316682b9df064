import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = {
    "GEMINI_API_KEY": "Gemini API key for interviewer replies and congruency checks",
    "MONGO_URI": "MongoDB connection string for the credit ledger and interview records",
}

class Settings:
    def __init__(self):
        self._validate_required_env_vars()
        self._load_validated_settings()

    def _validate_required_env_vars(self):
        """Fail fast at import when a required variable is missing or malformed"""
        problems = []
        for var_name, description in REQUIRED_ENV_VARS.items():
            value = os.getenv(var_name)
            if not value:
                problems.append(f"  - {var_name} is missing ({description})")
            elif not self._validate_var_format(var_name, value):
                problems.append(f"  - {var_name} has an invalid format")

        if problems:
            error_msg = "🚨 CONFIGURATION ERROR - voice interview service cannot start:\n" + "\n".join(problems)
            logger.critical(error_msg)
            raise ValueError(error_msg)

        logger.info("✅ Voice interview settings validated")

    @staticmethod
    def _validate_var_format(var_name: str, value: str) -> bool:
        if var_name == "MONGO_URI":
            return value.startswith(("mongodb://", "mongodb+srv://"))
        if var_name == "GEMINI_API_KEY":
            return value.startswith("AIza") and len(value) > 20
        return True

    def _load_validated_settings(self):
        """Load settings after validation"""
        # Database
        self.MONGO_URI: str = os.getenv("MONGO_URI")
        self.MONGO_DB_NAME: str = os.getenv("MONGO_DB_NAME", "voice_interviews")

        # LLM
        self.GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY")
        self.GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
        self.GEMINI_CONGRUENCY_MODEL: str = os.getenv("GEMINI_CONGRUENCY_MODEL", "gemini-2.0-flash")
        self.LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "20"))

        # Voice agents
        self.RETELL_AGENT_ID: str = os.getenv("RETELL_AGENT_ID", "")
        self.RETELL_AGENT_ID_ZH: str = os.getenv("RETELL_AGENT_ID_ZH", "")

        # Session Configuration
        self.MAX_INTERVIEW_DURATION_MINUTES: int = int(os.getenv("MAX_INTERVIEW_DURATION_MINUTES", "15"))
        self.MAX_CONVERSATION_HISTORY: int = 20
        self.MAX_REMINDERS: int = 2

        # Call context store
        self.CALL_CONTEXT_TTL_SECONDS: int = int(os.getenv("CALL_CONTEXT_TTL_SECONDS", str(2 * 60 * 60)))
        self.CALL_CONTEXT_PURGE_INTERVAL_SECONDS: int = int(os.getenv("CALL_CONTEXT_PURGE_INTERVAL_SECONDS", "300"))

        # HTTP
        self.CORS_ORIGINS: list = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
            if origin.strip()
        ]

settings = Settings()
