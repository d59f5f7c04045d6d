"""
Log manager for unistore.

Applies a ``logging.config.dictConfig`` dictionary exactly once per process
and hands out named loggers.
"""

import logging
import logging.config
import os


class LogManager:
    """
    Singleton that owns the process logging configuration.

    Attributes:
        _instance (LogManager | None): Singleton instance of LogManager
        logger_settings (dict): Logging configuration settings
    """

    _instance: 'LogManager | None' = None

    def __init__(self, logger_settings: dict | None):
        """
        Apply the logging settings.

        Args:
            logger_settings (dict): Dictionary containing logging configuration
        """
        self.logger_settings = dict(logger_settings or {})
        if not self._has_content(self.logger_settings):
            return

        self.logger_settings.setdefault('version', 1)

        for handler in self.logger_settings.get('handlers', {}).values():
            log_path = handler.get('filename') if isinstance(handler, dict) else None
            if log_path and os.path.dirname(log_path):
                os.makedirs(os.path.dirname(log_path), exist_ok=True)

        try:
            logging.config.dictConfig(self.logger_settings)
        except (ValueError, TypeError, AttributeError, ImportError) as e:
            logging.basicConfig(level=logging.INFO)
            logging.warning(
                f"Failed to configure logging with provided settings: {e}")

    @staticmethod
    def _has_content(settings: dict) -> bool:
        return any(settings.get(section) for section in
                   ('handlers', 'loggers', 'root', 'formatters'))

    @classmethod
    def get_instance(cls, logger_settings: dict | None = None) -> 'LogManager':
        """
        Get the singleton instance of LogManager.

        Args:
            logger_settings (dict, optional): Dictionary containing logging configuration

        Returns:
            LogManager: Singleton instance of LogManager
        """
        if cls._instance is None:
            cls._instance = cls(logger_settings)
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Forget the singleton (for testing)."""
        cls._instance = None

    def get_logger(self, name: str) -> logging.Logger:
        """
        Get a logger instance by name.

        Args:
            name (str): Name of the logger

        Returns:
            logging.Logger: Logger instance
        """
        return logging.getLogger(name)
