"""
Configuration Manager for Anchor Lens
Loads configuration from YAML files with environment variable support
"""

import os
import re
import yaml
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from pathlib import Path

from solders.pubkey import Pubkey

from anchor_lens.core.decoder import EnumStrategy


@dataclass
class LogConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "json"
    output_file: Optional[str] = None


@dataclass
class MetricsConfig:
    """Metrics configuration"""
    enable_histogram: bool = True
    histogram_buckets: List[float] = field(
        default_factory=lambda: [0.1, 0.5, 1, 5, 10, 50, 100]
    )


@dataclass
class DecoderConfig:
    """Decoding behaviour shared by the decoder, checker and decomposer"""
    # first_match: try enum variants in order (no tag byte)
    # tagged: read a u8 variant index first
    enum_strategy: EnumStrategy = EnumStrategy.FIRST_MATCH
    max_type_depth: int = 64
    max_call_depth: int = 8
    # Extra trailing accounts beyond the declared roles are reported,
    # not treated as an error
    allow_remaining_accounts: bool = True


@dataclass
class IdlSource:
    """Interface document preloaded into the schema cache"""
    program_id: str
    path: str


@dataclass
class LensConfig:
    """Complete library configuration"""
    log_config: LogConfig
    metrics_config: MetricsConfig
    decoder_config: DecoderConfig
    idl_sources: List[IdlSource] = field(default_factory=list)


class ConfigurationManager:
    """Manages configuration from YAML files and environment variables"""

    def __init__(self, config_path: str):
        """
        Initialize configuration manager

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = Path(config_path)
        self._config_data: Optional[Dict[str, Any]] = None
        self._lens_config: Optional[LensConfig] = None

    def load_config(self) -> LensConfig:
        """
        Load and validate configuration from file

        Returns:
            LensConfig: Validated configuration object

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {self.config_path}"
            )

        with open(self.config_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration root must be a mapping")

        self._config_data = self._substitute_env_vars(raw_config)
        self._lens_config = self._parse_config(self._config_data)

        return self._lens_config

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key

        Args:
            key: Dot-notation key (e.g., "decoder.enum_strategy")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if self._config_data is None:
            raise RuntimeError("Configuration not loaded. Call load_config() first.")

        value = self._config_data
        for k in key.split('.'):
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def _substitute_env_vars(self, config: Any) -> Any:
        """
        Recursively substitute ${VAR_NAME} environment variables

        Supports both full-value and embedded substitution:
        - Full: "${IDL_DIR}" -> "/srv/idls"
        - Embedded: "${IDL_DIR}/marinade.json" -> "/srv/idls/marinade.json"
        """
        if isinstance(config, dict):
            return {k: self._substitute_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            def replace_var(match):
                var_name = match.group(1)
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(
                        f"Environment variable {var_name} not found"
                    )
                return value

            return re.sub(r'\$\{([^}]+)\}', replace_var, config)
        else:
            return config

    def _parse_config(self, config: Dict[str, Any]) -> LensConfig:
        """
        Parse raw configuration into typed objects

        Raises:
            ValueError: If configuration is invalid
        """
        log_data = config.get('logging') or {}
        log_config = LogConfig(
            level=log_data.get('level', 'INFO'),
            format=log_data.get('format', 'json'),
            output_file=log_data.get('output_file')
        )
        if log_config.format not in ("json", "console"):
            raise ValueError(f"Unknown log format: {log_config.format}")

        metrics_data = config.get('metrics') or {}
        metrics_config = MetricsConfig(
            enable_histogram=metrics_data.get('enable_histogram', True),
            histogram_buckets=metrics_data.get('histogram_buckets', [0.1, 0.5, 1, 5, 10, 50, 100])
        )

        decoder_data = config.get('decoder') or {}
        strategy_name = decoder_data.get('enum_strategy', EnumStrategy.FIRST_MATCH.value)
        try:
            enum_strategy = EnumStrategy(strategy_name)
        except ValueError:
            raise ValueError(
                f"Unknown enum_strategy '{strategy_name}', expected one of "
                f"{[s.value for s in EnumStrategy]}"
            )

        decoder_config = DecoderConfig(
            enum_strategy=enum_strategy,
            max_type_depth=decoder_data.get('max_type_depth', 64),
            max_call_depth=decoder_data.get('max_call_depth', 8),
            allow_remaining_accounts=decoder_data.get('allow_remaining_accounts', True)
        )
        for name in ("max_type_depth", "max_call_depth"):
            if getattr(decoder_config, name) <= 0:
                raise ValueError(f"decoder.{name} must be positive")

        idl_sources = []
        for entry in config.get('idls') or []:
            try:
                program_id = entry['program_id']
                path = entry['path']
            except (KeyError, TypeError):
                raise ValueError(f"IDL entry needs program_id and path: {entry!r}")
            try:
                Pubkey.from_string(program_id)
            except ValueError:
                raise ValueError(f"Invalid program id in idls: {program_id}")
            idl_sources.append(IdlSource(program_id=program_id, path=path))

        return LensConfig(
            log_config=log_config,
            metrics_config=metrics_config,
            decoder_config=decoder_config,
            idl_sources=idl_sources
        )
