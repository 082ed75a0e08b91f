import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from openbio_desktop.errors import ConfigStoreError
from openbio_desktop.models import DeploymentConfig
from openbio_desktop.paths import get_config_file_path

logger = logging.getLogger(__name__)


class ConfigStore:
    """Reads and writes the deployment configuration file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else get_config_file_path()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> DeploymentConfig:
        """
        Return the persisted configuration.
        A missing or unreadable file yields the unconfigured defaults.
        """
        if not self.path.exists():
            return DeploymentConfig()

        try:
            content = self.path.read_text(encoding="utf-8-sig")
            return DeploymentConfig.model_validate_json(content)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Discarding unreadable config %s: %s", self.path, e)
            return DeploymentConfig()

    def save(self, config: DeploymentConfig) -> None:
        """Write the configuration, replacing whatever was there before."""
        content = config.model_dump_json(by_alias=True, indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(content + "\n", encoding="utf-8")
        except OSError as e:
            raise ConfigStoreError(f"Unable to save config to {self.path}: {e}") from e
        logger.debug("Saved config to %s (mode=%s)", self.path, config.mode.value)
