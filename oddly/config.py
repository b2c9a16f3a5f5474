from __future__ import annotations

import copy
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_project_root() -> Path:
    override = os.getenv("ODDLY_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name, "").strip()
    return Path(value).expanduser() if value else default


# Keyword and pattern tables for the local content screener. Categories use the
# same keys as the public analysis result. Any key can be overridden from YAML.
DEFAULT_SAFETY_RULES: dict[str, Any] = {
    "flag_threshold": 0.4,
    # Flagged content above this score is also blocked outright.
    "auto_block_threshold": 0.9,
    "weights": {
        "harassment": 1.2,
        "hate": 1.5,
        "selfHarm": 2.0,
        "violence": 1.3,
        "sexual": 1.0,
        "spam": 0.5,
    },
    "profanity": ["scam", "fraud", "cheat", "steal", "fucking", "fuck", "shit", "damn", "hell"],
    "harassment": {
        "patterns": [
            r"you\s+(are|r)\s+(stupid|dumb|idiot|moron)",
            r"kill\s+yourself",
            r"nobody\s+likes\s+you",
            r"worthless",
            r"waste\s+of\s+space",
            r"(fucking|completely)\s+(terrible|stupid|worthless)",
            r"\btrash\b",
        ],
        "pattern_score": 0.3,
        "profanity_score": 0.4,
    },
    "hate": {
        "keywords": ["hate", "disgust", "subhuman", "vermin"],
        "keyword_score": 0.25,
        "profanity_ratio_weight": 0.8,
    },
    "selfHarm": {
        "patterns": [
            r"suicid(e|al)",
            r"kill\s+myself",
            r"(want|going)\s+to\s+kill\s+myself",
            r"end\s+(it|my\s+life)",
            r"cut\s+myself",
            r"self\s*-?\s*harm",
        ],
        "pattern_score": 0.5,
    },
    "violence": {
        "keywords": ["kill", "murder", "attack", "destroy", "harm", "hurt"],
        "keyword_score": 0.15,
        "weapons": ["gun", "knife", "weapon", "bomb"],
        "weapon_score": 0.2,
    },
    "sexual": {
        "keywords": ["sex", "sexual", "porn", "nude", "naked"],
        "keyword_score": 0.3,
    },
    "spam": {
        "patterns": [
            r"click\s+here",
            r"free\s+money",
            r"limited\s+time",
            r"act\s+now",
            r"\$\$\$",
            r"make\s+money\s+fast",
        ],
        "pattern_score": 0.2,
        "caps_ratio": 0.6,
        "caps_score": 0.3,
        "punctuation_limit": 5,
        "punctuation_score": 0.2,
    },
    # Minimum incident severity once a category has any match at all.
    "severity_floors": {"selfHarm": 3, "violence": 3, "hate": 2, "harassment": 2},
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    database_path: Path = Field(
        default_factory=lambda: _env_path("ODDLY_DATABASE", _resolve_project_root() / "data" / "oddly.db")
    )
    upload_dir: Path = Field(
        default_factory=lambda: _env_path("ODDLY_UPLOAD_DIR", _resolve_project_root() / "data" / "uploads")
    )
    evidence_dir: Path = Field(
        default_factory=lambda: _env_path("EVIDENCE_STORAGE_PATH", _resolve_project_root() / "data" / "evidence")
    )
    evidence_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "EVIDENCE_BASE_URL", "http://localhost:8001/api/admin/evidence/verify"
        )
    )
    safety_rules_file: Path = Field(
        default_factory=lambda: _env_path(
            "ODDLY_SAFETY_RULES", _resolve_project_root() / "config" / "safety_rules.yaml"
        )
    )

    safety_cache_ttl_seconds: int = 604800  # 7 days
    manifest_tolerance: float = 0.01
    proposal_tolerance: float = 0.10
    max_upload_bytes: int = 10 * 1024 * 1024

    gini_weight: float = 0.3
    red_flag_penalty: float = 0.15
    green_flag_bonus: float = 0.05

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.evidence_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_safety_rules(self) -> dict[str, Any]:
        return _deep_merge(DEFAULT_SAFETY_RULES, self.load_yaml(self.safety_rules_file))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
