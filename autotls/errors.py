from __future__ import annotations


class AutoTLSCheckError(RuntimeError):
    """Base class for every fatal condition of a check run."""


class ProvisioningError(AutoTLSCheckError):
    pass


class ResourceFailedError(AutoTLSCheckError):
    def __init__(self, *, kind: str, name: str, reason: str | None, message: str | None) -> None:
        detail = ": ".join(part for part in (reason, message) if part)
        super().__init__(f"{kind} {name} reported a terminal failure ({detail or 'no detail'})")
        self.kind = kind
        self.name = name
        self.reason = reason


class ReadinessTimeoutError(AutoTLSCheckError):
    def __init__(self, *, kind: str, name: str, condition: str, elapsed_seconds: float) -> None:
        super().__init__(
            f"{kind} {name} did not reach {condition} within {elapsed_seconds:.1f}s"
        )
        self.kind = kind
        self.name = name
        self.condition = condition
        self.elapsed_seconds = elapsed_seconds


class CertificateError(AutoTLSCheckError):
    pass


class CertificateNotFoundError(CertificateError):
    pass


class VerificationError(AutoTLSCheckError):
    def __init__(self, message: str, *, expected: str | None = None, observed: str | None = None) -> None:
        if expected is not None or observed is not None:
            message = f"{message} (expected: {expected!s}, observed: {observed!s})"
        super().__init__(message)
        self.expected = expected
        self.observed = observed


class RunInterrupted(AutoTLSCheckError):
    pass
