"""
Prometheus metrics for the identity resolution engine
"""

from prometheus_client import Counter, Histogram

duplicate_scans = Counter(
    'identity_duplicate_scans_total', 'Duplicate candidate scans', ['status']
)
duplicate_candidates = Counter(
    'identity_duplicate_candidates_total', 'Duplicate candidates found'
)
external_lookups = Counter(
    'identity_external_lookups_total', 'External system lookups', ['system', 'status']
)
external_lookup_duration = Histogram(
    'identity_external_lookup_duration_seconds', 'External system lookup duration', ['system']
)
audit_failures = Counter(
    'identity_audit_failures_total', 'Audit writes that failed', ['event']
)
mpi_conflicts = Counter(
    'identity_mpi_conflicts_total', 'Optimistic concurrency conflicts on MPI writes'
)
review_transitions = Counter(
    'identity_review_transitions_total', 'Review workflow transitions', ['status', 'outcome']
)
