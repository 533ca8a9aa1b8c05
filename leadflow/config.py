"""Configuration management for LeadFlow."""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _parse_working_days(raw: str) -> list[int]:
    """Parse a comma list of weekdays (0=Sunday ... 6=Saturday)."""
    if not raw or not raw.strip():
        return [1, 2, 3, 4, 5, 6]  # Mon-Sat
    return [int(part.strip()) for part in raw.split(",") if part.strip()]


class Config:
    """Application configuration."""

    # Application Settings
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./leadflow.db")

    # AI Configuration
    # AI_PROVIDER picks the primary provider; the other one (when its key is set)
    # is used as the fallback.
    AI_PROVIDER: str = os.getenv("AI_PROVIDER", "openai").lower()
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-lite")
    PROMPT_STYLE: str = os.getenv("PROMPT_STYLE", "standard").lower()

    # Persona
    AI_BRAND_NAME: str = os.getenv("AI_BRAND_NAME", "LeadFlow")
    BOT_NAME: str = os.getenv("BOT_NAME", "LeadFlow")

    # Business calendar
    BUSINESS_HOURS_START: str = os.getenv("BUSINESS_HOURS_START", "09:00")
    BUSINESS_HOURS_END: str = os.getenv("BUSINESS_HOURS_END", "18:00")
    WORKING_DAYS: list[int] = _parse_working_days(os.getenv("WORKING_DAYS", ""))
    SLOT_INTERVAL_MINUTES: int = int(os.getenv("SLOT_INTERVAL_MINUTES", "30"))

    # Google Sheets (appointment calendar + LEADS tab)
    GOOGLE_SHEETS_ID: str = os.getenv("GOOGLE_SHEETS_ID", "")
    # Either a path to the service account file or the JSON document itself.
    GOOGLE_SERVICE_ACCOUNT_JSON: str = os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON", "") or os.getenv(
        "GOOGLE_SERVICE_ACCOUNT_PATH", ""
    )

    # WhatsApp transport (Twilio)
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_WHATSAPP_FROM: str = os.getenv("TWILIO_WHATSAPP_FROM", "")
    TWILIO_VALIDATE_SIGNATURE: bool = os.getenv("TWILIO_VALIDATE_SIGNATURE", "True").lower() == "true"

    # Session directory of the messaging client. Stale browser lock files left
    # behind by a crashed instance are removed from here before connecting.
    WHATSAPP_SESSION_PATH: str = os.getenv("WHATSAPP_SESSION_PATH", "./.wa_session")
    ORPHAN_PROCESS_PATTERN: str = os.getenv("ORPHAN_PROCESS_PATTERN", "chromium.*puppeteer")

    # Operator notifications (Telegram)
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    TELEGRAM_CHAT_ID: str = os.getenv("TELEGRAM_CHAT_ID", "")

    # Security
    API_KEY: str = os.getenv("API_KEY", "")  # For admin API authentication

    @classmethod
    def has_openai_key(cls) -> bool:
        """Check if OpenAI API key is configured."""
        return bool(cls.OPENAI_API_KEY)

    @classmethod
    def has_gemini_key(cls) -> bool:
        """Check if Gemini API key is configured."""
        return bool(cls.GEMINI_API_KEY)

    @classmethod
    def has_twilio_config(cls) -> bool:
        """Check if Twilio configuration is complete."""
        return all([
            cls.TWILIO_ACCOUNT_SID,
            cls.TWILIO_AUTH_TOKEN,
            cls.TWILIO_WHATSAPP_FROM,
        ])

    @classmethod
    def has_sheets_config(cls) -> bool:
        """Check if the Google Sheets integration is configured."""
        return bool(cls.GOOGLE_SHEETS_ID and cls.GOOGLE_SERVICE_ACCOUNT_JSON)

    @classmethod
    def has_telegram_config(cls) -> bool:
        return bool(cls.TELEGRAM_BOT_TOKEN and cls.TELEGRAM_CHAT_ID)


# Create a global config instance
config = Config()
