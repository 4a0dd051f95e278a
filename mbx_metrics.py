"""
Marbles Exchange - Prometheus Metrics
Observability for the marble ledger operations and payment verification
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# BUSINESS METRICS
# ============================================

operation_counter = Counter(
    'mbx_operations_total',
    'Total number of chaincode operations invoked',
    ['function', 'outcome'],
    registry=metrics_registry
)

operation_failure_counter = Counter(
    'mbx_operation_failures_total',
    'Total number of failed operations by error kind',
    ['function', 'error_kind'],
    registry=metrics_registry
)

marble_transfer_counter = Counter(
    'mbx_marble_transfers_total',
    'Total number of marble ownership transfers',
    ['trigger'],  # direct, settlement
    registry=metrics_registry
)

offer_status_counter = Counter(
    'mbx_offers_total',
    'Offers written by resulting status',
    ['status'],
    registry=metrics_registry
)

# ============================================
# PAYMENT VERIFICATION METRICS
# ============================================

payment_verification_counter = Counter(
    'mbx_payment_verifications_total',
    'Payment verifications against the payment network',
    ['result'],  # confirmed, unmet, error
    registry=metrics_registry
)

payment_verification_duration_histogram = Histogram(
    'mbx_payment_verification_duration_seconds',
    'Duration of the payment network lookups for one verification',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
    registry=metrics_registry
)

# ============================================
# INVARIANT ENFORCEMENT METRICS
# ============================================

invariant_check_counter = Counter(
    'mbx_invariant_checks_total',
    'Total number of invariant checks',
    ['invariant_id', 'check_type', 'result'],
    registry=metrics_registry
)

rollback_counter = Counter(
    'mbx_rollbacks_total',
    'Total number of rollbacks executed',
    ['operation'],
    registry=metrics_registry
)

# ============================================
# SYSTEM HEALTH METRICS
# ============================================

system_health_gauge = Gauge(
    'mbx_system_health_score',
    'Share of passing invariant checks (0-1)',
    registry=metrics_registry
)

ledger_integrity_gauge = Gauge(
    'mbx_decision_ledger_integrity',
    'Decision ledger integrity (1=verified, 0=compromised)',
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_operation(function: str, success: bool, error_kind: str = None):
    """Record the outcome of one chaincode operation."""
    operation_counter.labels(
        function=function,
        outcome="success" if success else "failure"
    ).inc()

    if not success:
        operation_failure_counter.labels(
            function=function,
            error_kind=error_kind or "unknown"
        ).inc()

def record_invariant_check(invariant_id: str, check_type: str, result: bool):
    """Record invariant check metrics."""
    invariant_check_counter.labels(
        invariant_id=invariant_id,
        check_type=check_type,
        result="passed" if result else "failed"
    ).inc()

def record_payment_verification(result: str, duration: float):
    """Record one payment verification and how long the lookups took."""
    payment_verification_counter.labels(result=result).inc()
    payment_verification_duration_histogram.observe(duration)

def update_system_health(health_score: float, ledger_integrity: bool):
    """Update system health metrics."""
    system_health_gauge.set(health_score)
    ledger_integrity_gauge.set(1 if ledger_integrity else 0)
