"""
Centralized configuration management for the Patient Identity Service
"""

import os
import json
from typing import Optional, Dict, Any
from dataclasses import dataclass, field, asdict
from functools import lru_cache
import logging

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-9


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _validate_weights(label: str, weights: Dict[str, float]) -> None:
    negative = [name for name, value in weights.items() if value < 0]
    if negative:
        raise ConfigurationError(f"{label} weights must be non-negative: {negative}")

    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ConfigurationError(f"{label} weights must sum to 1.0, got {total}")


@dataclass(frozen=True)
class MatchWeights:
    """Weights for local-to-local comparisons"""
    name: float = field(default_factory=lambda: _env_float("MATCH_WEIGHT_NAME", "0.4"))
    dob: float = field(default_factory=lambda: _env_float("MATCH_WEIGHT_DOB", "0.3"))
    address: float = field(default_factory=lambda: _env_float("MATCH_WEIGHT_ADDRESS", "0.2"))
    phone: float = field(default_factory=lambda: _env_float("MATCH_WEIGHT_PHONE", "0.1"))

    def __post_init__(self):
        _validate_weights("Match", asdict(self))


@dataclass(frozen=True)
class IdentifierMatchWeights:
    """Weights for local-to-external comparisons"""
    name: float = field(default_factory=lambda: _env_float("EXTERNAL_WEIGHT_NAME", "0.4"))
    dob: float = field(default_factory=lambda: _env_float("EXTERNAL_WEIGHT_DOB", "0.3"))
    identifier: float = field(default_factory=lambda: _env_float("EXTERNAL_WEIGHT_IDENTIFIER", "0.3"))

    def __post_init__(self):
        _validate_weights("Identifier match", asdict(self))


@dataclass
class DatabaseConfig:
    """Storage backend selection and MongoDB connection settings"""
    backend: str = field(default_factory=lambda: os.getenv("STORAGE_BACKEND", "memory"))
    uri: str = field(default_factory=lambda: os.getenv("MONGODB_URI", "mongodb://localhost:27017"))
    name: str = field(default_factory=lambda: os.getenv("IDENTITY_DB", "patient_identity"))
    max_pool_size: int = field(default_factory=lambda: int(os.getenv("MONGO_POOL_SIZE", "50")))
    min_pool_size: int = field(default_factory=lambda: int(os.getenv("MONGO_MIN_POOL_SIZE", "10")))
    server_selection_timeout_ms: int = field(default_factory=lambda: int(os.getenv("MONGO_SERVER_SELECTION_TIMEOUT_MS", "5000")))

    # Collection names
    patients_collection: str = "patients"
    duplicate_matches_collection: str = "duplicate_matches"
    master_patient_index_collection: str = "master_patient_index"
    merge_history_collection: str = "merge_history"
    patient_audit_collection: str = "patient_audit"


@dataclass
class HTTPConfig:
    """aiohttp session settings for external system lookups"""
    total_timeout: int = field(default_factory=lambda: int(os.getenv("HTTP_TOTAL_TIMEOUT", "30")))
    connect_timeout: int = field(default_factory=lambda: int(os.getenv("HTTP_CONNECT_TIMEOUT", "10")))
    max_pool_size: int = field(default_factory=lambda: int(os.getenv("CONNECTION_POOL_SIZE", "100")))
    max_per_host: int = field(default_factory=lambda: int(os.getenv("HTTP_MAX_PER_HOST", "30")))


@dataclass
class MatchingConfig:
    """Duplicate detection settings"""
    weights: MatchWeights = field(default_factory=MatchWeights)
    external_weights: IdentifierMatchWeights = field(default_factory=IdentifierMatchWeights)
    duplicate_threshold: float = field(default_factory=lambda: _env_float("DUPLICATE_MATCH_THRESHOLD", "0.85"))
    potential_threshold: float = field(default_factory=lambda: _env_float("POTENTIAL_MATCH_THRESHOLD", "0.6"))
    scan_page_size: int = field(default_factory=lambda: int(os.getenv("SCAN_PAGE_SIZE", "500")))
    max_concurrent_comparisons: int = field(default_factory=lambda: int(os.getenv("MAX_CONCURRENT_COMPARISONS", "50")))


@dataclass
class ReconciliationConfig:
    """External system reconciliation settings"""
    client: str = field(default_factory=lambda: os.getenv("EXTERNAL_CLIENT", "memory"))
    systems_file: Optional[str] = field(default_factory=lambda: os.getenv("EXTERNAL_SYSTEMS_FILE"))
    max_concurrent_lookups: int = field(default_factory=lambda: int(os.getenv("MAX_CONCURRENT_LOOKUPS", "8")))
    lookup_timeout_seconds: float = field(default_factory=lambda: _env_float("LOOKUP_TIMEOUT_SECONDS", "10"))
    max_write_retries: int = field(default_factory=lambda: int(os.getenv("MPI_MAX_WRITE_RETRIES", "3")))


@dataclass
class AuditConfig:
    """Audit collaborator settings"""
    backend: str = field(default_factory=lambda: os.getenv("AUDIT_BACKEND", "memory"))
    default_role: str = field(default_factory=lambda: os.getenv("AUDIT_DEFAULT_ROLE", "provider"))
    source_context: str = field(default_factory=lambda: os.getenv("AUDIT_SOURCE_CONTEXT", "127.0.0.1"))


@dataclass
class LoggingConfig:
    """Log level, format and optional rotating log file"""
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    # File logging
    log_file: Optional[str] = field(default_factory=lambda: os.getenv("LOG_FILE"))
    max_file_size: int = field(default_factory=lambda: int(os.getenv("LOG_MAX_FILE_SIZE", "10485760")))  # 10MB
    backup_count: int = field(default_factory=lambda: int(os.getenv("LOG_BACKUP_COUNT", "5")))


@dataclass
class ApplicationConfig:
    """Every configuration section of the identity service"""
    app_name: str = field(default_factory=lambda: os.getenv("APP_NAME", "Patient Identity Service"))
    app_version: str = field(default_factory=lambda: os.getenv("APP_VERSION", "1.0.0"))
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))

    # Component configurations
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    http: HTTPConfig = field(default_factory=HTTPConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Reject inconsistent settings at construction"""
        self.validate()

    def validate(self):
        """Collect every problem and raise one ConfigurationError listing them"""
        errors = []

        if self.database.backend not in ("memory", "mongo"):
            errors.append("STORAGE_BACKEND must be 'memory' or 'mongo'")
        if self.database.backend == "mongo" and not self.database.uri:
            errors.append("Database URI is required for the mongo backend")
        if self.audit.backend not in ("memory", "mongo"):
            errors.append("AUDIT_BACKEND must be 'memory' or 'mongo'")

        matching = self.matching
        if not 0 <= matching.duplicate_threshold <= 1:
            errors.append("Duplicate match threshold must be between 0 and 1")
        if not 0 <= matching.potential_threshold <= matching.duplicate_threshold:
            errors.append("Potential match threshold must be between 0 and the duplicate threshold")
        if matching.scan_page_size <= 0:
            errors.append("Scan page size must be positive")
        if matching.max_concurrent_comparisons <= 0:
            errors.append("Max concurrent comparisons must be positive")

        reconciliation = self.reconciliation
        if reconciliation.client not in ("http", "memory"):
            errors.append("EXTERNAL_CLIENT must be 'http' or 'memory'")
        # The built-in system catalog carries no API endpoints
        if reconciliation.client == "http" and not reconciliation.systems_file:
            errors.append("EXTERNAL_SYSTEMS_FILE is required for the http client")
        if reconciliation.max_concurrent_lookups <= 0:
            errors.append("Max concurrent lookups must be positive")
        if reconciliation.lookup_timeout_seconds <= 0:
            errors.append("Lookup timeout must be positive")
        if reconciliation.max_write_retries < 0:
            errors.append("MPI write retries cannot be negative")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict of every section, with credential-bearing URIs masked"""
        config_dict = asdict(self)
        if "@" in config_dict["database"]["uri"]:
            config_dict["database"]["uri"] = "***masked***"
        return config_dict


@lru_cache(maxsize=1)
def get_config() -> ApplicationConfig:
    """
    Get application configuration.
    Cached, so every caller shares one instance; cache_clear() reloads it.
    """
    config = ApplicationConfig()
    logger.info(f"Configuration loaded for environment: {config.environment}")
    return config


def load_config_from_file(file_path: str) -> ApplicationConfig:
    """
    Load configuration from a JSON file.

    Top-level keys map to environment variables directly; nested objects
    are ignored except for the well-known sections below.
    """
    section_prefixes = {"matching": "", "reconciliation": "", "database": "", "audit": "AUDIT_"}

    try:
        with open(file_path, 'r') as f:
            config_data = json.load(f)

        for key, value in config_data.items():
            if isinstance(value, dict):
                prefix = section_prefixes.get(key)
                if prefix is None:
                    continue
                for sub_key, sub_value in value.items():
                    os.environ[f"{prefix}{sub_key.upper()}"] = str(sub_value)
            else:
                os.environ[key.upper()] = str(value)

        get_config.cache_clear()
        return get_config()

    except FileNotFoundError:
        logger.error(f"Configuration file not found: {file_path}")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in configuration file: {e}")
        raise
