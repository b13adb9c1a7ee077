import logging


def get_logger(name: str) -> logging.Logger:
    """Return a named logger.

    Handlers are never attached here; entry points configure the root
    logger once (see ``llmgate.cli.main``).
    """
    return logging.getLogger(name)
