"""
Metrics Collection - Prometheus metrics for the Verified Programs API
Covers intake outcomes, builds, verification results, rate limiting and the crawler.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Prometheus metrics collector for the verification pipeline."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        # Intake metrics
        self.submissions = Counter(
            'verified_programs_submissions_total',
            'Verification submissions by resulting status',
            ['status'],  # cached, in_progress, accepted, rejected
            registry=self.registry,
        )

        self.rate_limited = Counter(
            'verified_programs_rate_limited_total',
            'Requests rejected by the rate limiter',
            ['scope'],
            registry=self.registry,
        )

        # Build metrics
        self.builds = Counter(
            'verified_programs_builds_total',
            'Container builds by outcome',
            ['outcome'],  # success, timeout, toolchain_failed, ...
            registry=self.registry,
        )

        self.build_duration = Histogram(
            'verified_programs_build_duration_seconds',
            'Wall-clock duration of container builds',
            buckets=[30, 60, 120, 300, 600, 900, 1200, 1800, 3600],
            registry=self.registry,
        )

        self.builds_in_flight = Gauge(
            'verified_programs_builds_in_flight',
            'Builds currently holding a worker slot',
            registry=self.registry,
        )

        # Verification metrics
        self.verifications = Counter(
            'verified_programs_verifications_total',
            'Verification outcomes',
            ['result'],  # verified, not_verified
            registry=self.registry,
        )

        self.chain_lookups = Counter(
            'verified_programs_chain_lookups_total',
            'Deployed hash lookups by outcome',
            ['outcome'],  # ok, not_found, unreachable
            registry=self.registry,
        )

        # Coordination metrics
        self.lock_contention = Counter(
            'verified_programs_lock_contention_total',
            'Submissions that found a build already in flight',
            registry=self.registry,
        )

        self.lock_degraded = Counter(
            'verified_programs_lock_degraded_total',
            'Lock acquisitions that fell back to no deduplication',
            registry=self.registry,
        )

        # Crawler metrics
        self.crawler_submissions = Counter(
            'verified_programs_crawler_submissions_total',
            'Crawler submissions by outcome',
            ['outcome'],
            registry=self.registry,
        )

    def record_submission(self, status: str):
        self.submissions.labels(status=status).inc()

    def record_build(self, outcome: str, duration_seconds: Optional[float] = None):
        self.builds.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            self.build_duration.observe(duration_seconds)

    def record_verification(self, is_verified: bool):
        self.verifications.labels(result="verified" if is_verified else "not_verified").inc()

    def get_metrics(self) -> bytes:
        """Render metrics in Prometheus exposition format."""
        return generate_latest(self.registry)
