from __future__ import annotations

from collections.abc import Iterator
import logging

import pytest

from cibot import observability


@pytest.fixture(autouse=True)
def restore_cibot_logger_state() -> Iterator[None]:
    logger = logging.getLogger("cibot")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    original_secrets = set(observability._REGISTERED_SECRETS)
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate
        observability._REGISTERED_SECRETS.clear()
        observability._REGISTERED_SECRETS.update(original_secrets)
