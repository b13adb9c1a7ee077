import logging

from llmgate._logging import get_logger


def test_get_logger_name():
    """Verify get_logger returns a logger with the correct name."""
    logger = get_logger("LlmGate.Test")
    assert logger.name == "LlmGate.Test"


def test_no_double_handlers():
    """get_logger never attaches handlers; only the entry point configures logging."""
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    root_logger.handlers = []

    try:
        logging.basicConfig(level=logging.INFO)

        logger = get_logger("LlmGate.Router")
        logger_2 = get_logger("LlmGate.Router")

        assert logger is logger_2
        assert len(root_logger.handlers) == 1
        assert len(logger.handlers) == 0

    finally:
        root_logger.handlers = original_handlers
