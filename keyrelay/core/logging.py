"""Structured logging for KeyRelay."""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class StructuredLogger:
    """Structured JSON logger for forwarded requests."""

    def __init__(self, name: str = "keyrelay"):
        self.logger = logging.getLogger(name)

    def log_dispatch(
        self,
        request_id: str,
        model: Optional[str],
        credential_id: Optional[str],
        attempts: int,
        upstream_status: Optional[int],
        outcome: str = "success",  # "success" or "error"
        error_code: Optional[str] = None,
        latency_ms: int = 0,
        proxy_key_id: Optional[str] = None,
    ):
        """Log one dispatched request as a JSON line.

        Secrets never appear here; credentials are identified by id only.

        Args:
            request_id: Unique request identifier
            model: Model used by the last attempt
            credential_id: Id of the selected credential
            attempts: Number of model attempts made
            upstream_status: Status relayed to the caller
            outcome: "success" or "error"
            error_code: Error code if the proxy produced the error itself
            latency_ms: Time until response headers were ready
            proxy_key_id: Proxy access key used by the caller, if any
        """
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "request_id": request_id,
            "model": model,
            "credential_id": credential_id,
            "attempts": attempts,
            "outcome": outcome,
            "latency_ms": latency_ms,
        }

        if proxy_key_id:
            log_entry["proxy_key_id"] = proxy_key_id

        if upstream_status is not None:
            log_entry["upstream_status"] = upstream_status
        if outcome == "error" and error_code:
            log_entry["error_code"] = error_code

        if outcome == "error" and upstream_status is not None and upstream_status >= 500:
            level = "ERROR"
        elif outcome == "error":
            level = "WARNING"
        else:
            level = "INFO"
        log_entry["level"] = level

        log_message = json.dumps(log_entry, ensure_ascii=False)

        if level == "ERROR":
            self.logger.error(log_message)
        elif level == "WARNING":
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)


# Global structured logger instance
structured_logger = StructuredLogger()
