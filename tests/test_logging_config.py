import pytest
from loguru import logger

from capsule_chat.logging_config import setup_logging


@pytest.fixture
def quiet_logger():
    yield
    # Drop sinks bound to the captured streams before they close.
    setup_logging(console=False)


def test_console_sink_writes_to_stdout(capsys, quiet_logger):
    setup_logging(level="INFO")
    logger.info("relay ready")

    captured = capsys.readouterr()
    assert "relay ready" in captured.out
    assert "relay ready" not in captured.err


def test_console_sink_can_be_disabled(capsys, quiet_logger):
    setup_logging(level="INFO", console=False)
    logger.info("chat started")

    captured = capsys.readouterr()
    assert "chat started" not in captured.out
    assert "chat started" not in captured.err
