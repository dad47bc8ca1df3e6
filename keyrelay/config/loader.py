"""YAML configuration loader for KeyRelay."""
import yaml
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from keyrelay.config.schema import KeyRelayConfig


class ConfigLoader:
    """Load and validate KeyRelay configuration.

    Without a path every setting takes its default.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Path to YAML configuration file (optional)
        """
        self.config_path = Path(config_path) if config_path else None
        self.config = KeyRelayConfig()

    def load(self) -> KeyRelayConfig:
        """Load and validate configuration from the YAML file."""
        if self.config_path is None:
            self.config = KeyRelayConfig()
            return self.config

        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML syntax in {self.config_path}: {e}") from e

        if not isinstance(raw_config, dict):
            raise ValueError(f"Configuration root must be a mapping in {self.config_path}")

        # Validate through Pydantic
        try:
            self.config = KeyRelayConfig(**raw_config)
        except ValidationError as e:
            raise ValueError(f"Configuration validation failed in {self.config_path}: {e}") from e

        return self.config
