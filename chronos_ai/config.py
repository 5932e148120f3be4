# config.py
"""
Configuration management and validation for the Chronos AI gateway
"""
import os
import logging
from typing import Dict, Any, List
from dataclasses import dataclass, field

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]
VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ServiceConfig:
    """Configuration class for the gateway service"""

    # Required configurations
    gemini_api_key: str

    # Optional configurations
    gemini_model: str = "gemini-2.0-flash"
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    service_name: str = "Chronos API"
    rate_limit_max_requests: int = 30
    rate_limit_window_seconds: int = 60
    rate_limit_max_identities: int = 10000
    upstream_timeout_seconds: float = 30.0
    max_image_chars: int = 10 * 1024 * 1024
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    trust_forwarded_for: bool = False

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Create configuration from environment variables"""

        api_key = os.getenv('GEMINI_API_KEY')
        if not api_key:
            raise ValueError("Missing required environment variables: GEMINI_API_KEY")

        config_dict: Dict[str, Any] = {'gemini_api_key': api_key}

        # env var -> (config key, default, converter)
        optional_vars = {
            'GEMINI_MODEL': ('gemini_model', "gemini-2.0-flash", str),
            'HOST': ('host', "0.0.0.0", str),
            'PORT': ('port', 3001, int),
            'LOG_LEVEL': ('log_level', "INFO", str),
            'SERVICE_NAME': ('service_name', "Chronos API", str),
            'RATE_LIMIT_MAX_REQUESTS': ('rate_limit_max_requests', 30, int),
            'RATE_LIMIT_WINDOW_SECONDS': ('rate_limit_window_seconds', 60, int),
            'RATE_LIMIT_MAX_IDENTITIES': ('rate_limit_max_identities', 10000, int),
            'UPSTREAM_TIMEOUT_SECONDS': ('upstream_timeout_seconds', 30.0, float),
            'MAX_IMAGE_CHARS': ('max_image_chars', 10 * 1024 * 1024, int),
        }

        for env_var, (config_key, default_value, convert) in optional_vars.items():
            raw = os.getenv(env_var)
            if raw is None or raw == "":
                config_dict[config_key] = default_value
                continue
            try:
                config_dict[config_key] = convert(raw)
            except ValueError:
                logger.warning(f"Invalid value for {env_var}, using default: {default_value}")
                config_dict[config_key] = default_value

        cors = os.getenv('CORS_ORIGINS')
        config_dict['cors_origins'] = _parse_list(cors) if cors else list(DEFAULT_CORS_ORIGINS)
        config_dict['trust_forwarded_for'] = _parse_bool(os.getenv('TRUST_FORWARDED_FOR', 'false'))

        return cls(**config_dict)

    def validate(self) -> Dict[str, Any]:
        """
        Validate configuration and return validation results

        Returns:
            Dictionary with validation results and any issues found
        """
        issues = []
        warnings = []

        if not self.gemini_api_key.strip():
            issues.append("GEMINI_API_KEY must not be blank")

        if not 0 < self.port < 65536:
            issues.append("PORT must be between 1 and 65535")

        if self.rate_limit_max_requests < 1:
            issues.append("RATE_LIMIT_MAX_REQUESTS must be at least 1")

        if self.rate_limit_window_seconds < 1:
            issues.append("RATE_LIMIT_WINDOW_SECONDS must be at least 1")

        if self.rate_limit_max_identities < 1:
            issues.append("RATE_LIMIT_MAX_IDENTITIES must be at least 1")

        if self.upstream_timeout_seconds <= 0:
            issues.append("UPSTREAM_TIMEOUT_SECONDS must be positive")
        elif self.upstream_timeout_seconds < 5:
            warnings.append("UPSTREAM_TIMEOUT_SECONDS is very low, may cause timeouts")

        if self.max_image_chars < 1024:
            warnings.append("MAX_IMAGE_CHARS is very low, most receipt photos will be rejected")

        for origin in self.cors_origins:
            if origin != "*" and not origin.startswith(('http://', 'https://')):
                issues.append(f"CORS origin '{origin}' must be a valid HTTP/HTTPS URL")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            issues.append(f"LOG_LEVEL must be one of: {', '.join(VALID_LOG_LEVELS)}")

        return {
            'valid': len(issues) == 0,
            'issues': issues,
            'warnings': warnings,
            'config_summary': self.to_dict(mask_secrets=True)
        }

    def to_dict(self, mask_secrets: bool = True) -> Dict[str, Any]:
        """Convert configuration to dictionary, optionally masking secrets"""
        return {
            'gemini_api_key': '***masked***' if mask_secrets else self.gemini_api_key,
            'gemini_model': self.gemini_model,
            'host': self.host,
            'port': self.port,
            'log_level': self.log_level,
            'service_name': self.service_name,
            'rate_limit_max_requests': self.rate_limit_max_requests,
            'rate_limit_window_seconds': self.rate_limit_window_seconds,
            'rate_limit_max_identities': self.rate_limit_max_identities,
            'upstream_timeout_seconds': self.upstream_timeout_seconds,
            'max_image_chars': self.max_image_chars,
            'cors_origins': list(self.cors_origins),
            'trust_forwarded_for': self.trust_forwarded_for,
        }


def load_and_validate_config() -> ServiceConfig:
    """
    Load configuration from environment and validate it

    Returns:
        ServiceConfig instance

    Raises:
        ValueError: If a required variable is missing
        RuntimeError: If validation fails
    """
    # .env.local wins over .env; neither overrides the real environment
    load_dotenv('.env.local')
    load_dotenv()

    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        logger.error(f"Configuration error: {str(e)}")
        raise

    validation_result = config.validate()

    if not validation_result['valid']:
        error_msg = f"Configuration validation failed: {'; '.join(validation_result['issues'])}"
        logger.error(error_msg)
        raise RuntimeError(error_msg)

    for warning in validation_result['warnings']:
        logger.warning(f"Configuration warning: {warning}")

    logger.info("Configuration loaded and validated successfully")
    logger.debug(f"Configuration: {validation_result['config_summary']}")

    return config
