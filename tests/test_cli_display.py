"""
Unit tests for vaultkeeper.cli_display
"""

import logging
import os
import threading

from vaultkeeper.cli_display import TokenTracker, setup_logger


class TestTokenTracker:

    def test_record_and_summary(self):
        tracker = TokenTracker()
        tracker.record(10, 5, model_name="gpt")
        tracker.record(3, 2, model_name="gpt")
        tracker.record(1, 1)
        assert tracker.total_tokens == 22
        assert tracker.by_model == {"gpt": 20}
        assert tracker.summary() == "3 call(s), 14 prompt + 8 completion tokens"

    def test_reset(self):
        tracker = TokenTracker()
        tracker.record(1, 1, model_name="m")
        tracker.reset()
        assert tracker.total_tokens == 0 and tracker.call_count == 0 and tracker.by_model == {}

    def test_thread_safe(self):
        tracker = TokenTracker()
        threads = [threading.Thread(target=lambda: [tracker.record(1, 1) for _ in range(500)])
                   for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert tracker.call_count == 4000


def test_setup_logger_writes_file(tmp_path):
    logger = setup_logger(str(tmp_path / "logs"))
    try:
        logging.getLogger("vaultkeeper.kb.synchronizer").info("[sync] hello log")
        for handler in logger.handlers:
            handler.flush()
        files = os.listdir(tmp_path / "logs")
        assert len(files) == 1
        assert "[sync] hello log" in (tmp_path / "logs" / files[0]).read_text(encoding="utf-8")
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
