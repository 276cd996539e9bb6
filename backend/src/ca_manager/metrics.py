"""OpenTelemetry metrics for the CA manager."""

from collections.abc import Iterator

from opentelemetry import metrics

meter = metrics.get_meter("ca_manager")

# Root CA lifecycle
root_ca_initialized_total = meter.create_counter(
    name="ca_root_initialized_total",
    description="Total root CA initializations",
    unit="1",
)

key_permission_hardening_failures_total = meter.create_counter(
    name="ca_key_permission_hardening_failures_total",
    description="Private key files whose owner-only mode could not be enforced",
    unit="1",
)

# Issuance
certificates_issued_total = meter.create_counter(
    name="ca_certificates_issued_total",
    description="Total leaf certificates issued",
    unit="1",
)

certificate_issuance_failures_total = meter.create_counter(
    name="ca_certificate_issuance_failures_total",
    description="Total failed issuance attempts",
    unit="1",
)

certificate_issuance_duration = meter.create_histogram(
    name="ca_certificate_issuance_duration_seconds",
    description="Certificate issuance duration in seconds",
    unit="s",
)

# Root CA loaded gauge
_root_ca_loaded = False


def _get_root_ca_loaded(
    options: metrics.CallbackOptions,
) -> Iterator[metrics.Observation]:
    """Callback to report root CA loaded status."""
    yield metrics.Observation(1 if _root_ca_loaded else 0, {})


root_ca_loaded_gauge = meter.create_observable_gauge(
    name="ca_root_loaded",
    description="Root CA loaded (1=yes, 0=no)",
    unit="1",
    callbacks=[_get_root_ca_loaded],
)


class CAMetrics:
    """Facade for CA metrics with proper labels."""

    def record_root_ca_initialized(self, overwrite: bool) -> None:
        """Record root CA creation. Labels: overwrite=true|false"""
        root_ca_initialized_total.add(1, {"overwrite": str(overwrite).lower()})

    def record_key_permission_failure(self, owner: str) -> None:
        """Record a failed chmod. Labels: owner=root|leaf"""
        key_permission_hardening_failures_total.add(1, {"owner": owner})

    def record_certificate_issued(self, issuance_type: str, duration_seconds: float) -> None:
        """Record issuance with duration. Labels: type=initial|renewal"""
        certificates_issued_total.add(1, {"type": issuance_type})
        certificate_issuance_duration.record(duration_seconds)

    def record_issuance_failed(self, reason: str) -> None:
        """Record a failed issuance. Labels: reason=no_root|crypto|filesystem"""
        certificate_issuance_failures_total.add(1, {"reason": reason})

    def record_root_ca_loaded(self) -> None:
        """Mark the root CA as loaded."""
        global _root_ca_loaded
        _root_ca_loaded = True


# Singleton instance
ca_metrics = CAMetrics()
