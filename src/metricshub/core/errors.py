"""Engine error taxonomy.

Provider failures travel as ``AdapterError`` values (see
``metricshub.providers.base``). The exceptions here cover the conditions that
cross component boundaries: credential state, queue backpressure, and
configuration rejected before anything is queued.
"""

from __future__ import annotations


class MetricsHubError(Exception):
    """Base class for engine errors."""


# ─────────────────────────────────────────────────────────────────────────────
# Credentials
# ─────────────────────────────────────────────────────────────────────────────

class NotConnected(MetricsHubError):
    """No credential is stored for the tenant/provider pair."""

    def __init__(self, tenant_id: str, provider_key: str) -> None:
        self.tenant_id = tenant_id
        self.provider_key = provider_key
        super().__init__(f"No {provider_key} credential connected for tenant {tenant_id}")


class CredentialsExpired(MetricsHubError):
    """The stored credential can no longer be used; the tenant must reconnect."""

    def __init__(self, provider_key: str, reason: str = "") -> None:
        self.provider_key = provider_key
        self.reason = reason
        message = f"{provider_key} credentials expired"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class CredentialRefreshUnavailable(MetricsHubError):
    """The token endpoint could not be reached. Retryable, not a reconnect."""

    def __init__(self, provider_key: str, reason: str = "") -> None:
        self.provider_key = provider_key
        self.reason = reason
        super().__init__(f"{provider_key} token refresh unavailable: {reason}")


# ─────────────────────────────────────────────────────────────────────────────
# Queue / scheduling
# ─────────────────────────────────────────────────────────────────────────────

class QueueFull(MetricsHubError):
    """Raised by enqueue when the queue is at its configured depth."""

    def __init__(self, depth: int, max_depth: int) -> None:
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(f"Job queue full ({depth}/{max_depth})")


class ScheduleConfigInvalid(MetricsHubError):
    """Frequency, timezone or window rejected at install/update time."""


# ─────────────────────────────────────────────────────────────────────────────
# Registry lookups
# ─────────────────────────────────────────────────────────────────────────────

class InstallationNotFound(MetricsHubError):
    def __init__(self, installation_id: object) -> None:
        self.installation_id = installation_id
        super().__init__(f"Installation {installation_id} not found")


class ApplicationNotFound(MetricsHubError):
    def __init__(self, application_id: object) -> None:
        self.application_id = application_id
        super().__init__(f"Application {application_id} not found or not active")


class InvalidTrigger(MetricsHubError):
    """Manual trigger rejected for this installation."""


class UnknownProvider(MetricsHubError):
    def __init__(self, provider_key: str) -> None:
        self.provider_key = provider_key
        super().__init__(f"No adapter registered for provider '{provider_key}'")


class AlreadyInstalled(MetricsHubError):
    def __init__(self, tenant_id: str, application_id: object) -> None:
        self.tenant_id = tenant_id
        self.application_id = application_id
        super().__init__(f"Application {application_id} is already installed for tenant {tenant_id}")


class RunNotFound(MetricsHubError):
    def __init__(self, run_id: object) -> None:
        self.run_id = run_id
        super().__init__(f"Execution run {run_id} not found")
