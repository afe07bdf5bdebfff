# =====================================================
# FILE: credvault/core/log_filters.py
# Logging setup and the secret-masking filter
# =====================================================

import logging
import threading


class SecretRedactionFilter(logging.Filter):
    """Masks any registered secret value that reaches a log record"""

    MASK = "***REDACTED***"

    def __init__(self):
        super().__init__()
        self._secrets = set()
        self._lock = threading.Lock()

    def register(self, *values) -> None:
        with self._lock:
            for value in values:
                if value and len(str(value)) >= 8:
                    self._secrets.add(str(value))

    def forget(self, *values) -> None:
        with self._lock:
            for value in values:
                self._secrets.discard(str(value))

    def __len__(self) -> int:
        return len(self._secrets)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in list(self._secrets):
            if secret in redacted:
                redacted = redacted.replace(secret, self.MASK)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


redaction_filter = SecretRedactionFilter()


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    for handler in logging.getLogger().handlers:
        if redaction_filter not in handler.filters:
            handler.addFilter(redaction_filter)
