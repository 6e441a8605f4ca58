"""
Configuration management for the Chat Hub backend.
Supports environment variables and JSON configuration files.
Thread-safe singleton with validation.
"""
import json
import logging
import os
from dataclasses import dataclass, asdict
from typing import Optional, List
from threading import RLock

logger = logging.getLogger(__name__)

_config: Optional['HubConfig'] = None
_config_lock = RLock()  # Reentrant lock


@dataclass
class HubConfig:
    """Process-wide settings. Per-request values (credentials, guard config) are not stored here."""

    # Provider defaults
    ollama_endpoint: str = "http://localhost:11434"
    openai_endpoint: str = "https://api.openai.com/v1"
    anthropic_endpoint: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    anthropic_max_tokens: int = 4096
    llm_timeout_seconds: float = 120.0

    # AI Guard
    guard_base_domain: str = "xdr.trendmicro.com"
    guard_timeout_seconds: float = 30.0

    # Attachments
    max_attachment_bytes: int = 20 * 1024 * 1024

    # Scanner
    scanner_command: str = "tmas"
    scanner_region: str = "us-east-1"
    scan_timeout_seconds: float = 1800.0

    # History
    scan_history_path: str = "scan_history.json"
    max_scan_history: int = 50
    max_guard_log: int = 100

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return asdict(self)

    def save_to_file(self, filepath: str = "config.json"):
        """Save configuration to JSON file."""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def validate(self) -> List[str]:
        """Validate configuration values, return list of issues."""
        errors = []
        if self.llm_timeout_seconds <= 0:
            errors.append("llm_timeout_seconds must be positive")
        if self.guard_timeout_seconds <= 0:
            errors.append("guard_timeout_seconds must be positive")
        if self.scan_timeout_seconds <= 0:
            errors.append("scan_timeout_seconds must be positive")
        if self.max_attachment_bytes <= 0:
            errors.append("max_attachment_bytes must be positive")
        if self.max_scan_history <= 0 or self.max_guard_log <= 0:
            errors.append("History caps must be positive")
        if self.anthropic_max_tokens <= 0:
            errors.append("anthropic_max_tokens must be positive")
        if not self.scanner_command.strip():
            errors.append("scanner_command must not be empty")
        return errors

    @classmethod
    def load_from_file(cls, filepath: str = "config.json") -> 'HubConfig':
        if os.path.exists(filepath):
            with open(filepath, 'r') as f:
                data = json.load(f)
            return cls(**data)
        return cls()

    @classmethod
    def load_from_env(cls) -> 'HubConfig':
        config = cls()
        config.ollama_endpoint = os.getenv('OLLAMA_ENDPOINT', config.ollama_endpoint)
        config.openai_endpoint = os.getenv('OPENAI_ENDPOINT', config.openai_endpoint)
        config.anthropic_endpoint = os.getenv('ANTHROPIC_ENDPOINT', config.anthropic_endpoint)
        config.anthropic_max_tokens = int(os.getenv('ANTHROPIC_MAX_TOKENS', config.anthropic_max_tokens))
        config.llm_timeout_seconds = float(os.getenv('LLM_TIMEOUT_SECONDS', config.llm_timeout_seconds))
        config.guard_base_domain = os.getenv('AI_GUARD_BASE_DOMAIN', config.guard_base_domain)
        config.guard_timeout_seconds = float(os.getenv('AI_GUARD_TIMEOUT_SECONDS', config.guard_timeout_seconds))
        config.max_attachment_bytes = int(os.getenv('MAX_ATTACHMENT_BYTES', config.max_attachment_bytes))
        config.scanner_command = os.getenv('SCANNER_COMMAND', config.scanner_command)
        config.scanner_region = os.getenv('SCANNER_REGION', config.scanner_region)
        config.scan_timeout_seconds = float(os.getenv('SCAN_TIMEOUT_SECONDS', config.scan_timeout_seconds))
        config.scan_history_path = os.getenv('SCAN_HISTORY_PATH', config.scan_history_path)
        config.max_scan_history = int(os.getenv('MAX_SCAN_HISTORY', config.max_scan_history))
        config.max_guard_log = int(os.getenv('MAX_GUARD_LOG', config.max_guard_log))
        return config


def get_config() -> HubConfig:
    """Get or create global configuration instance (thread-safe)."""
    global _config
    with _config_lock:
        if _config is None:
            config_path = os.getenv('CHAT_HUB_CONFIG', 'config.json')
            if os.path.exists(config_path):
                _config = HubConfig.load_from_file(config_path)
            else:
                _config = HubConfig.load_from_env()
            errors = _config.validate()
            if errors:
                logger.warning("Configuration validation errors:")
                for error in errors:
                    logger.warning(f"  - {error}")
        return _config


def reload_config() -> HubConfig:
    """Reload configuration from file or environment (thread-safe)."""
    global _config
    with _config_lock:
        _config = None
        return get_config()


def get_config_snapshot() -> dict:
    """Get immutable snapshot of current configuration."""
    with _config_lock:
        config = get_config()
        return config.to_dict()
