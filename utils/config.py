# utils/config.py
"""
Environment-driven settings (.env supported through python-dotenv)
"""
import os
from typing import Dict, List

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Runtime settings for the field mapper"""

    schema_dir: str = Field(default='schemas', description="Directory holding <key>.json schemas")
    log_level: str = Field(default='INFO', description="Root logging level")
    log_file: str = Field(default='logs/field_mapper.log', description="Log file; empty disables")
    log_module_levels: Dict[str, str] = Field(
        default_factory=dict,
        description="Per-logger level overrides, e.g. extractors=DEBUG"
    )
    custom_rule_keywords: List[str] = Field(
        default_factory=list,
        description="Extra schema keywords whose literal text is collected as a rule"
    )
    data_sheet_name: str = Field(default='mapping', description="Sheet name of exported mappings")


def _split_keywords(raw: str) -> List[str]:
    return [kw.strip() for kw in raw.split(',') if kw.strip()]


def _split_levels(raw: str) -> Dict[str, str]:
    """'extractors=DEBUG, mapper.binder=WARNING' -> {'extractors': 'DEBUG', 'mapper.binder': 'WARNING'}"""
    levels = {}
    for item in _split_keywords(raw):
        name, _, level = item.partition('=')
        if name.strip() and level.strip():
            levels[name.strip()] = level.strip().upper()
    return levels


def load_settings(env_file: str = None) -> Settings:
    """Load .env (if present) and build Settings from the environment"""
    load_dotenv(env_file)

    return Settings(
        schema_dir=os.getenv('SCHEMA_DIR', 'schemas'),
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
        log_file=os.getenv('LOG_FILE', 'logs/field_mapper.log'),
        log_module_levels=_split_levels(os.getenv('LOG_MODULE_LEVELS', '')),
        custom_rule_keywords=_split_keywords(os.getenv('CUSTOM_RULE_KEYWORDS', '')),
        data_sheet_name=os.getenv('DATA_SHEET_NAME', 'mapping'),
    )
