import logging
import os
import threading
from datetime import datetime


class TokenTracker:
    """Global tracker for token usage across all inference sessions."""

    def __init__(self):
        self.total_prompt_tokens = 0
        self.total_completion_tokens = 0
        self.call_count = 0
        self.by_model: dict[str, int] = {}
        self._lock = threading.Lock()

    def record(self, prompt_tokens: int, completion_tokens: int, model_name: str | None = None):
        with self._lock:
            self.total_prompt_tokens += prompt_tokens
            self.total_completion_tokens += completion_tokens
            self.call_count += 1
            if model_name:
                self.by_model[model_name] = (
                    self.by_model.get(model_name, 0) + prompt_tokens + completion_tokens
                )

    def reset(self):
        with self._lock:
            self.total_prompt_tokens = 0
            self.total_completion_tokens = 0
            self.call_count = 0
            self.by_model.clear()

    @property
    def total_tokens(self):
        return self.total_prompt_tokens + self.total_completion_tokens

    def summary(self) -> str:
        return (f"{self.call_count} call(s), {self.total_prompt_tokens} prompt + "
                f"{self.total_completion_tokens} completion tokens")


# Global singleton
token_tracker = TokenTracker()


def setup_logger(log_dir: str = ".vaultkeeper/logs") -> logging.Logger:
    """Creates a file logger. All verbose output goes here."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"vaultkeeper_{timestamp}.log")

    logger = logging.getLogger("vaultkeeper")
    logger.setLevel(logging.DEBUG)

    # File handler captures everything
    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    logger.addHandler(fh)

    return logger
