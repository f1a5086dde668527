"""
Application Settings
--------------------
Settings are read from environment variables, with a .env file loaded first if
one is present.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

from qurban_upload.core.review_policy import ReviewPolicy
from qurban_upload.models.data_models import DuplicateAction, DuplicateDetectionConfig

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    default_tolerance: float = 0.8
    default_strict_mode: bool = False
    default_duplicate_action: DuplicateAction = DuplicateAction.PROMPT
    review_new_ratio_threshold: float = 0.8
    auto_resolve_action: DuplicateAction = DuplicateAction.SKIP
    log_level: str = "INFO"
    port: int = 8000

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper()

    @property
    def use_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def detection_config(self) -> DuplicateDetectionConfig:
        """Default detection policy for uploads that do not bring their own."""
        return DuplicateDetectionConfig(
            strict_mode=self.default_strict_mode,
            action=self.default_duplicate_action,
            tolerance=self.default_tolerance,
        )

    def review_policy(self) -> ReviewPolicy:
        return ReviewPolicy(
            new_ratio_threshold=self.review_new_ratio_threshold,
            auto_resolve_action=self.auto_resolve_action,
        )


def get_settings() -> Settings:
    """
    Build the settings from the environment.

    Raises:
        pydantic.ValidationError: If a variable holds an invalid value
    """
    return Settings(
        supabase_url=os.getenv("SUPABASE_URL") or None,
        supabase_key=os.getenv("SUPABASE_KEY") or None,
        default_tolerance=os.getenv("DEFAULT_TOLERANCE", "0.8"),
        default_strict_mode=_env_bool("DEFAULT_STRICT_MODE", False),
        default_duplicate_action=os.getenv("DEFAULT_DUPLICATE_ACTION", "prompt"),
        review_new_ratio_threshold=os.getenv("REVIEW_NEW_RATIO_THRESHOLD", "0.8"),
        auto_resolve_action=os.getenv("AUTO_RESOLVE_ACTION", "skip"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        port=os.getenv("PORT", "8000"),
    )
