"""Error hierarchy for airlocal.

Error layers:
- AirlocalError: Base class for all airlocal errors
- DomainError: Bad inputs and connector-reported failures
- InfrastructureError: Container engine failures (daemon unreachable, pulls, container start)

The CLI maps every AirlocalError to a single error line and a non-zero exit code.
"""


class AirlocalError(Exception):
    """Base class for all airlocal errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(message)


# =============================================================================
# Domain Errors (inputs and connector outcomes)
# =============================================================================


class DomainError(AirlocalError):
    """Base class for domain errors."""


class ConfigInvalid(DomainError):
    """Run configuration is missing or inconsistent. No run is attempted."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, code="CONFIG_INVALID")
        self.field = field


class ConnectionCheckFailed(DomainError):
    """Source connector rejected its configuration during `check`."""


class ConnectorFailed(DomainError):
    """A connector container exited with a non-zero code."""

    def __init__(self, role: str, exit_code: int) -> None:
        super().__init__(
            f"Failed to run {role} connector: container exited with code {exit_code}",
            code="CONNECTOR_FAILED",
        )
        self.role = role
        self.exit_code = exit_code


class StatePersistError(DomainError):
    """Captured sync state could not be written. Reported as a warning."""


class OutputWriteFailed(DomainError):
    """Forwarded connector output could not be written to its file."""


class CleanupError(DomainError):
    """A container or workspace could not be cleaned up. Logged, never raised to the operator."""


# =============================================================================
# Infrastructure Errors (container engine)
# =============================================================================


class InfrastructureError(AirlocalError):
    """Base class for infrastructure/system errors."""


class RuntimeUnavailable(InfrastructureError):
    """Container engine is not installed or not reachable."""


class PullFailed(InfrastructureError):
    """Image could not be pulled."""

    def __init__(self, image: str, reason: str) -> None:
        super().__init__(f"Failed to pull docker image {image}: {reason}")
        self.image = image


class ContainerStartFailed(InfrastructureError):
    """Container could not be created, attached or started."""


class ConnectorInputClosed(InfrastructureError):
    """Writing to a container's stdin failed because the container stopped reading."""


class ContainerStreamFailed(InfrastructureError):
    """Container output or exit status could not be read from the engine."""
