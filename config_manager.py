"""
Configuration manager for the Storybook Pipeline.
Provides validation, caching, and type-safe configuration handling.
"""

import json
import logging
from copy import deepcopy
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


@dataclass
class ApiConfig:
    """Gemini API configuration with validation"""
    planning_model: str = "gemini-2.5-pro"
    image_model: str = "gemini-2.5-flash-image"
    analysis_model: str = "gemini-2.0-flash"
    temperature: float = 0.7
    timeout: int = 120
    max_retries: int = 3
    retry_delay: float = 1.0
    plan_parse_attempts: int = 2

    def __post_init__(self):
        """Validate configuration values"""
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"Temperature must be between 0.0 and 2.0, got {self.temperature}")
        if self.timeout < 1:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay cannot be negative, got {self.retry_delay}")
        if self.plan_parse_attempts < 1:
            raise ValueError(f"plan_parse_attempts must be at least 1, got {self.plan_parse_attempts}")


@dataclass
class PipelineConfig:
    """Generation pipeline configuration"""
    consistency_check: bool = True
    consistency_max_retries: int = 3
    previous_page_context: int = 2
    max_source_chars: int = 15000
    page_count_min: int = 5
    page_count_max: int = 30

    def __post_init__(self):
        """Validate pipeline configuration"""
        if self.consistency_max_retries < 1:
            raise ValueError(
                f"consistency_max_retries must be at least 1, got {self.consistency_max_retries}"
            )
        if not 0 <= self.previous_page_context <= 2:
            raise ValueError(
                f"previous_page_context must be between 0 and 2, got {self.previous_page_context}"
            )
        if not 1 <= self.page_count_min <= self.page_count_max:
            raise ValueError(
                f"Page count range invalid: min={self.page_count_min}, max={self.page_count_max}"
            )


@dataclass
class StorageConfig:
    """Persistence configuration"""
    backend: str = "json"
    data_dir: str = "stories"

    def __post_init__(self):
        valid_backends = ["json", "memory"]
        if self.backend not in valid_backends:
            raise ValueError(f"backend must be one of {valid_backends}")


@dataclass
class LanguageConfig:
    """Caption language configuration"""
    default: str = "en"
    supported: List[str] = field(default_factory=lambda: [
        "en", "zh", "zh-tw", "es", "fr", "de", "ja", "ko",
        "it", "pt", "ru", "ar", "hi"
    ])

    def __post_init__(self):
        """Validate language configuration"""
        if self.default not in self.supported:
            raise ValueError(f"Default language '{self.default}' not in supported languages")


@dataclass
class UIConfig:
    """CLI configuration"""
    show_progress: bool = True
    color_output: bool = True
    verbose_logging: bool = False


@dataclass
class AppConfig:
    """Complete application configuration"""
    api: ApiConfig = field(default_factory=ApiConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    language: LanguageConfig = field(default_factory=LanguageConfig)
    ui: UIConfig = field(default_factory=UIConfig)


SECTIONS = {
    "api": ApiConfig,
    "pipeline": PipelineConfig,
    "storage": StorageConfig,
    "language": LanguageConfig,
    "ui": UIConfig,
}


class ConfigManager:
    """Configuration manager with caching and validation"""

    def __init__(self):
        self._config_path: Optional[Path] = None
        self._config: Optional[AppConfig] = None
        self._config_cache: Dict[str, AppConfig] = {}
        self._load_times: Dict[str, float] = {}
        self._watchers: List[Callable[[AppConfig], None]] = []

    @staticmethod
    def get_default_config() -> Dict[str, Any]:
        """Get default configuration as a fresh dictionary"""
        return asdict(AppConfig())

    def load_config(self, config_path: Union[str, Path] = "config.json") -> AppConfig:
        """Load configuration from file with validation and caching"""
        config_path = Path(config_path)
        cache_key = str(config_path.absolute())

        if cache_key in self._config_cache:
            mtime = config_path.stat().st_mtime if config_path.exists() else 0
            if mtime <= self._load_times.get(cache_key, 0):
                return self._config_cache[cache_key]

        config_dict = self.get_default_config()

        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    user_config = json.load(f)
                config_dict = self._deep_merge_config(config_dict, user_config)
                logger.info(f"Loaded configuration from {config_path}")
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON in {config_path}: {e}. Using defaults.")
            except IOError as e:
                logger.warning(f"Error reading {config_path}: {e}. Using defaults.")
        else:
            logger.info(f"Config file {config_path} not found, using defaults.")

        try:
            config = self._build_config(config_dict)
        except (ValueError, TypeError) as e:
            logger.error(f"Configuration validation error: {e}")
            config = AppConfig()

        self._load_times[cache_key] = config_path.stat().st_mtime if config_path.exists() else 0
        self._config_cache[cache_key] = config
        self._config_path = config_path
        self._config = config
        self._notify_watchers(config)
        return config

    @staticmethod
    def _build_config(config_dict: Dict[str, Any]) -> AppConfig:
        return AppConfig(**{
            name: section_cls(**config_dict.get(name, {}))
            for name, section_cls in SECTIONS.items()
        })

    def _deep_merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge user configuration with defaults"""
        result = deepcopy(default)

        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def save_config(self, config: Optional[AppConfig] = None,
                    config_path: Optional[Union[str, Path]] = None) -> bool:
        """Save configuration to file atomically"""
        config = config or self._config
        if config is None:
            logger.error("No configuration to save")
            return False

        config_path = Path(config_path or self._config_path or "config.json")

        try:
            temp_path = config_path.with_suffix(".tmp")
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(asdict(config), f, indent=2, ensure_ascii=False)
            temp_path.replace(config_path)
            logger.info(f"Configuration saved to {config_path}")
            return True
        except IOError as e:
            logger.error(f"Failed to save configuration: {e}")
            return False

    def get_config(self) -> AppConfig:
        """Get current configuration, loading if necessary"""
        if self._config is None:
            return self.load_config()
        return self._config

    def watch_config(self, callback: Callable[[AppConfig], None]) -> None:
        """Register a callback for configuration changes"""
        self._watchers.append(callback)

    def _notify_watchers(self, config: AppConfig) -> None:
        for callback in self._watchers:
            try:
                callback(config)
            except Exception as e:
                logger.error(f"Error in config watcher: {e}")

    def validate_config(self, config_dict: Dict[str, Any]) -> List[str]:
        """Validate configuration dictionary and return list of errors"""
        errors = []
        for name, section_cls in SECTIONS.items():
            try:
                section_cls(**config_dict.get(name, {}))
            except (ValueError, TypeError) as e:
                errors.append(f"{name} config error: {e}")
        return errors

    def clear_cache(self) -> None:
        """Clear configuration cache"""
        self._config_cache.clear()
        self._load_times.clear()


config_manager = ConfigManager()


def get_config(config_path: Union[str, Path] = "config.json") -> AppConfig:
    """Convenience function to get configuration"""
    return config_manager.load_config(config_path)
