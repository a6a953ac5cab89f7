"""
Process-wide configuration of the persistence core.

Values come from, in decreasing priority: environment variables prefixed
``CXS_`` (nested keys joined with ``__``, e.g. ``CXS_BULK_PROCESSOR__BULK_ACTIONS=3``),
the YAML file named by ``CXS_CONFIG_FILE`` (flat dotted keys such as
``bulkProcessor.bulkActions: 3`` or nested mappings), and the defaults below.
"""
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cxs_data_model.data_model_utils import to_snake

CONFIG_FILE_ENV = "CXS_CONFIG_FILE"


class ClusterSettings(BaseModel):
    name: str = "contextserver"
    hosts: List[str] = Field(default_factory=lambda: ["http://localhost:9200"])
    request_timeout: int = 30
    max_retries: int = 3


class MonthlyIndexSettings(BaseModel):
    number_of_shards: int = 3
    number_of_replicas: int = 0
    check_initial_delay: float = 10.0
    check_period: float = 24 * 60 * 60.0


class BulkProcessorSettings(BaseModel):
    name: str = "cxs-bulk"
    enabled: bool = True
    concurrent_requests: int = 1
    bulk_actions: int = 1000
    bulk_size: str = "5MB"
    flush_interval: str = "5s"
    backoff_policy: str = "exponential"


class ContextServerSettings(BaseModel):
    address: str = "localhost"
    port: int = 8181
    secure_address: str = "localhost"
    secure_port: int = 9443


class PersistenceSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CXS_", env_nested_delimiter="__", extra="ignore")

    index_name: str = "context"
    number_of_shards: int = 5
    number_of_replicas: int = 0
    max_result_window: int = 2147483647
    default_query_limit: int = 10
    index_names: Dict[str, str] = Field(default_factory=dict)
    items_monthly_indexed: List[str] = Field(default_factory=lambda: ["event", "session"])
    routing_by_type: Dict[str, str] = Field(default_factory=dict)

    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    monthly_index: MonthlyIndexSettings = Field(default_factory=MonthlyIndexSettings)
    bulk_processor: BulkProcessorSettings = Field(default_factory=BulkProcessorSettings)
    contextserver: ContextServerSettings = Field(default_factory=ContextServerSettings)

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings,
                                   file_secret_settings):
        # environment overrides win over file and explicit values
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @classmethod
    def load(cls, config_file: Optional[str] = None, **overrides) -> "PersistenceSettings":
        """Build the settings from an optional YAML file plus explicit overrides."""
        config_file = config_file or os.getenv(CONFIG_FILE_ENV)
        values: Dict[str, Any] = {}
        if config_file and os.path.exists(config_file):
            with open(config_file) as f:
                values = normalize_keys(yaml.safe_load(f) or {})
        _deep_merge(values, normalize_keys(overrides))
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str) -> "PersistenceSettings":
        return cls.load(config_file=path)


def normalize_keys(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Turn ``{"bulkProcessor.bulkActions": 3}`` or ``{"bulkProcessor": {"bulkActions": 3}}``
    into ``{"bulk_processor": {"bulk_actions": 3}}``. Keys of the free-form maps
    (``indexNames``, ``routingByType``) are item kinds and are kept verbatim.
    """
    result: Dict[str, Any] = {}
    for key, value in raw.items():
        path = [to_snake(part) for part in str(key).split(".")]
        if isinstance(value, dict) and path[-1] not in ("index_names", "routing_by_type"):
            value = normalize_keys(value)
        _deep_merge(result, _nest(path, value))
    return result


def _nest(path: List[str], value: Any) -> Dict[str, Any]:
    for part in reversed(path):
        value = {part: value}
    return value


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value
    return target
