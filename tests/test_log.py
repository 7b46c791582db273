import logging

from rich.logging import RichHandler

from maestro.log import configure_logging


def test_file_logging(tmp_path):
    log_file = tmp_path / "orchestrator.log"
    logger = configure_logging(log_file, console_output=False)

    logging.getLogger("maestro.orchestrator").info("Phase planning -> implementing")
    for handler in logger.handlers:
        handler.flush()

    assert "Phase planning -> implementing" in log_file.read_text()
    assert not any(isinstance(h, RichHandler) for h in logger.handlers)


def test_reconfigure_replaces_handlers(tmp_path):
    configure_logging(tmp_path / "a.log")
    logger = configure_logging(None, verbose=True)

    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], RichHandler)
    assert logger.level == logging.DEBUG


def test_missing_log_directory_is_tolerated(tmp_path):
    logger = configure_logging(tmp_path / "missing" / "orchestrator.log", console_output=False)
    assert isinstance(logger.handlers[0], logging.NullHandler)
