"""Structured logging setup for the decision service."""

import json
import logging
import sys


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = {
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        # Structured fields emitted by the decision pipeline
        for attr in [
            "user_id",
            "experiment_key",
            "feature_key",
            "rule",
            "decision_source",
            "error_code",
        ]:
            if hasattr(record, attr):
                value = getattr(record, attr)
                data[attr] = value.value if hasattr(value, "value") else value
        return json.dumps(data, ensure_ascii=False)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root.handlers = [handler]
