from .logging_config import JSONFormatter, setup_logging

__all__ = ["JSONFormatter", "setup_logging"]
