"""
CLI context for DataBridge.

This module provides the context object that is passed to all CLI commands,
holding the configuration, the state store and the project catalog.
"""

from dataclasses import dataclass, field
from pathlib import Path

from databridge.client.exceptions import ConfigurationError
from databridge.config import EngineConfig, LoggingConfig, load_config_from_yaml
from databridge.migration.catalog import ProjectCatalog, YamlProjectCatalog
from databridge.migration.state import ExecutionStateStore
from databridge.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@dataclass
class BridgeContext:
    """
    Context object for CLI commands.

    Attributes:
        config_path: Path to configuration file (environment only when None)
        log_level: Console logging level from the command line, if given
        log_file: Optional log file path
    """

    config_path: Path | None = None
    log_level: str | None = None
    log_file: Path | None = None

    # Lazy-loaded attributes
    _config: EngineConfig | None = field(default=None, init=False, repr=False)
    _state: ExecutionStateStore | None = field(default=None, init=False, repr=False)
    _catalog: ProjectCatalog | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> EngineConfig:
        """Get or load the engine configuration."""
        if self._config is None:
            if self.config_path is None:
                logger.debug("config_from_environment")
                self._config = EngineConfig()
            else:
                logger.debug("config_loading", config_path=str(self.config_path))
                try:
                    self._config = load_config_from_yaml(self.config_path)
                except (FileNotFoundError, ValueError) as e:
                    raise ConfigurationError(str(e)) from e
            self._apply_logging(self._config.logging)
        return self._config

    def _apply_logging(self, logging_config: LoggingConfig) -> None:
        """Command-line options win over the logging section of the configuration."""
        log_file = str(self.log_file) if self.log_file else logging_config.file
        configure_logging(
            level=self.log_level or logging_config.level,
            log_format=logging_config.format,
            log_file=log_file,
            file_level=logging_config.file_level,
        )

    @property
    def state(self) -> ExecutionStateStore:
        """Get or open the execution state store."""
        if self._state is None:
            logger.debug("state_store_opening", db_path=self.config.state.db_path)
            self._state = ExecutionStateStore(config=self.config.state)
        return self._state

    @property
    def catalog(self) -> ProjectCatalog:
        """Get or load the project catalog."""
        if self._catalog is None:
            if not self.config.catalog_file:
                raise ConfigurationError(
                    "No project catalog configured. Set catalog_file in the configuration "
                    "or DATABRIDGE_CATALOG_FILE."
                )
            self._catalog = YamlProjectCatalog(self.config.catalog_file)
        return self._catalog

    def cleanup(self) -> None:
        """Release the state store connection pool."""
        if self._state is not None:
            self._state.close()
            self._state = None
