"""Prometheus series for the reconcile loop, served on their own port."""
import logging

from prometheus_client import Counter, Histogram, start_http_server

logger = logging.getLogger(__name__)

RECONCILE_TOTAL = Counter(
    "pfsense_lb_reconcile_total",
    "Service reconciles by outcome.",
    ["result"],
)
RECONCILE_ERRORS = Counter(
    "pfsense_lb_reconcile_errors_total",
    "Service reconciles that raised an error.",
)
RECONCILE_DURATION = Histogram(
    "pfsense_lb_reconcile_duration_seconds",
    "Time spent reconciling one Service.",
)

RESULT_SUCCESS = "success"
RESULT_REQUEUE = "requeue"
RESULT_ERROR = "error"


def start_metrics_server(host, port):
    start_http_server(port, addr=host or "0.0.0.0")
    logger.info("metrics endpoint listening", extra={"address": host+":"+str(port)})
