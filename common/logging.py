"""Application logger setup shared by the CLI and every ghintel module."""
import logging
import os
import sys
from datetime import datetime
from typing import Optional, Union


class LoggingManager:
    """Configures one named logger; modules fetch children with `get_logger`."""

    DEFAULT_LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)8s | %(message)s"
    DEFAULT_LOG_LEVEL = logging.INFO

    def __init__(self,
                 logger_name: str = 'ghintel',
                 log_level: Union[int, str] = DEFAULT_LOG_LEVEL,
                 log_format: str = DEFAULT_LOG_FORMAT,
                 log_file: Optional[str] = None,
                 console_output: bool = True,
                 propagate: bool = False):
        self.logger_name = logger_name
        self.log_file = log_file
        self.console_output = console_output

        self.logger = logging.getLogger(logger_name)
        self.logger.setLevel(log_level)
        self.logger.propagate = propagate

        # Reconfiguring the same logger name must not duplicate handlers.
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        self._formatter = logging.Formatter(log_format)
        self._configure_handlers()

    @classmethod
    def for_application(cls, name: str, log_dir: str, log_level: Union[int, str] = DEFAULT_LOG_LEVEL,
                        console_output: bool = True) -> "LoggingManager":
        """Configure `name` with a timestamped `<name>_<stamp>.log` file in `log_dir`."""
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(log_dir, f'{name}_{timestamp}.log')
        return cls(logger_name=name, log_level=log_level, log_file=log_file,
                   console_output=console_output, propagate=False)

    def _configure_handlers(self) -> None:
        if self.console_output:
            # stdout is reserved for command output.
            console_handler = logging.StreamHandler(stream=sys.stderr)
            console_handler.setFormatter(self._formatter)
            self.logger.addHandler(console_handler)

        if self.log_file:
            try:
                file_handler = logging.FileHandler(self.log_file, mode='a')
            except OSError as e:
                self.logger.warning(f"Could not set up logging to file {self.log_file}: {e}")
                return
            file_handler.setFormatter(self._formatter)
            self.logger.addHandler(file_handler)
            self.logger.debug(f"Logging to file: {self.log_file}")

    @staticmethod
    def get_logger(name: str) -> logging.Logger:
        return logging.getLogger(name)
