"""
Key lifecycle policy.
"""

from pydantic import BaseModel, Field


DEFAULT_MAX_KEY_AGE_DAYS = 7
DEFAULT_MAX_HISTORICAL_KEYS = 10  # retired keys beyond this are dropped


class KeyPolicy(BaseModel):
    """Thresholds driving rotation prompts and historical retention"""
    max_key_age_days: float = Field(default=DEFAULT_MAX_KEY_AGE_DAYS, gt=0)
    max_historical_keys: int = Field(default=DEFAULT_MAX_HISTORICAL_KEYS, ge=1)
