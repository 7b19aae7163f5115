"""
Application settings

Values come from environment variables (or a local .env file) so the same
build runs against a developer MongoDB and a hosted one.
"""

import logging
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: str = Field("vibe_chat", description="MongoDB database name")

    jwt_secret: str = Field("change-me", description="Shared secret used to sign bearer tokens")
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"

    # Off: any disconnect flips the user offline, even with other sockets open.
    presence_reference_counted: bool = False

    message_page_size: int = 50
    max_message_page_size: int = 200

    # Static key shared with the web client. Obfuscation only, not confidentiality.
    content_obfuscation_key: str = "super-secret-key-that-should-be-unique-per-conversation"
    obfuscate_at_rest: bool = False


settings = Settings()
