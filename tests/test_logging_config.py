from loguru import logger

from trade_mirror.logging_config import configure_logging


def test_log_file_sink_is_created(tmp_path):
    log_file = tmp_path / "logs" / "trade_mirror.log"
    configure_logging("info", log_file)
    logger.info("Poll cycle finished for {} channels", 3)
    logger.remove()

    assert "Poll cycle finished for 3 channels" in log_file.read_text()
    assert "| INFO |" in log_file.read_text()
