from __future__ import annotations


class KiterError(Exception):
    pass


class ConfigError(KiterError):
    pass


class ProtocolError(KiterError):
    pass


class TransportError(KiterError):
    def __init__(
        self,
        message: str,
        *,
        operation: str,
        code: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.code = code
        self.retryable = retryable

    def __str__(self) -> str:
        base = super().__str__()
        if self.code:
            return f"{self.operation} failed ({self.code}): {base}"
        return f"{self.operation} failed: {base}"
