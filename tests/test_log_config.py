"""
Tests for logging setup
"""
import pytest
from loguru import logger

from binance_connect import configure_logging


@pytest.fixture(autouse=True)
def restore_logger():
    yield
    logger.remove()


class TestConfigureLogging:
    """Test sink installation"""

    def test_file_sink(self, tmp_path):
        log_file = tmp_path / "connect.log"

        configure_logging("debug", str(log_file))
        logger.debug("stream ready")
        logger.complete()
        logger.remove()

        content = log_file.read_text()
        assert "stream ready" in content
        assert "DEBUG" in content

    def test_level_filters_file_sink(self, tmp_path):
        log_file = tmp_path / "connect.log"

        configure_logging("warning", str(log_file))
        logger.info("hidden")
        logger.warning("shown")
        logger.remove()

        content = log_file.read_text()
        assert "shown" in content
        assert "hidden" not in content


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
