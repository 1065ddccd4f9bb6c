"""
Alerting layer.

Generates alerts from failures, staleness and volume anomalies, and
delivers them once per (alert_type, entity_key, raised_at bucket).
"""
from .generator import ALERT_TYPES, MODEL_FAILURE, STALE_DATA, TEST_FAILURE, Alert, AlertGenerator, WatchedTable
from .dispatcher import (
    AlertDispatcher,
    AlertSink,
    DispatchResult,
    LoggingAlertSink,
    WebhookAlertSink,
    bucket_start,
    collapse_duplicates,
    dedup_key,
)
from .http_client import CircuitBreaker, CircuitOpenError, RetryConfig, WebhookClient


__all__ = [
    'ALERT_TYPES',
    'MODEL_FAILURE',
    'STALE_DATA',
    'TEST_FAILURE',
    'Alert',
    'AlertDispatcher',
    'AlertGenerator',
    'AlertSink',
    'CircuitBreaker',
    'CircuitOpenError',
    'DispatchResult',
    'LoggingAlertSink',
    'RetryConfig',
    'WatchedTable',
    'WebhookAlertSink',
    'WebhookClient',
    'bucket_start',
    'collapse_duplicates',
    'dedup_key',
]
