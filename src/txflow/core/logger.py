# /src/txflow/core/logger.py
import logging
import json
import hmac
import hashlib
import os

import structlog
from structlog.contextvars import bind_contextvars
import sentry_sdk
from prometheus_client import Counter

# --- Prometheus Metrics ---
TX_SUBMITTED = Counter("txflow_transactions_submitted_total", "Transactions accepted by the endpoint")
TX_CONFIRMED = Counter("txflow_transactions_confirmed_total", "Transactions confirmed with a success receipt")
TX_REVERTED = Counter("txflow_transactions_reverted_total", "Transactions mined with a failure receipt")
TX_TIMED_OUT = Counter("txflow_transactions_timed_out_total", "Waits that hit the confirmation deadline")
TX_DROPPED = Counter("txflow_transactions_dropped_total", "Transactions evicted after being accepted")
TX_REPLACED = Counter("txflow_transactions_replaced_total", "Fee-bumped replacements broadcast")
TX_ABANDONED = Counter("txflow_transactions_abandoned_total", "Pending transactions abandoned by the caller")
BROADCAST_REJECTED = Counter("txflow_broadcast_rejected_total", "Broadcasts refused by the endpoint", ["kind"])
ENDPOINT_RETRIES = Counter("txflow_endpoint_retries_total", "Endpoint calls retried after a transient error", ["method"])
NONCE_RESYNCS = Counter("txflow_nonce_resyncs_total", "Nonce resyncs against the endpoint")


def make_audit_processor(path: str, signing_key: bytes):
    """Build a structlog processor that signs each event and appends it to an audit log.

    Each line is ``<json payload>|<hmac-sha256 hex>``, so the trail of every
    transaction this process originated can be verified after the fact.
    """
    def sign_and_append(logger, method_name: str, event_dict: dict) -> dict:
        # Deterministic key order keeps signatures reproducible
        payload = json.dumps(event_dict, sort_keys=True, default=str)
        sig = hmac.new(signing_key, payload.encode(), hashlib.sha256).hexdigest()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(payload + "|" + sig + "\n")
        event_dict["signature"] = sig
        return event_dict

    return sign_and_append


def configure_logging(settings):
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN.get_secret_value(), traces_sample_rate=1.0)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if settings.AUDIT_LOG_PATH:
        key = settings.AUDIT_LOG_SIGNING_KEY.get_secret_value().encode() if settings.AUDIT_LOG_SIGNING_KEY else b""
        if not key:
            get_logger(__name__).warning("AUDIT_LOG_UNSIGNED_KEY_MISSING", path=settings.AUDIT_LOG_PATH)
        processors.append(make_audit_processor(settings.AUDIT_LOG_PATH, key))
    processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.LOG_LEVEL)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)


def bind_account(address: str):
    bind_contextvars(account=address)
