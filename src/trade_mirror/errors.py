"""Error taxonomy shared by the poller, correlator and executor."""

from __future__ import annotations

from typing import Any


class TradeMirrorError(RuntimeError):
    pass


class QuotaExhausted(TradeMirrorError):
    """The daily upstream unit budget cannot cover the requested call."""

    def __init__(self, message: str, remaining: int = 0) -> None:
        super().__init__(message)
        self.remaining = remaining


class UpstreamUnavailable(TradeMirrorError):
    """A liveness, vision, speech or capture provider failed or timed out."""

    def __init__(self, provider: str, message: str, reason: str = "") -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.reason = reason


class ConfigurationMissing(TradeMirrorError):
    def __init__(self, setting_name: str) -> None:
        super().__init__(f"{setting_name} is not configured")
        self.setting_name = setting_name


class PolicyRejected(TradeMirrorError):
    """A trade event was intentionally not executed because of a risk rule."""

    def __init__(self, rule: str, message: str, limit: Any = None, current: Any = None) -> None:
        super().__init__(message)
        self.rule = rule
        self.limit = limit
        self.current = current

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "policy_rejected",
            "rule": self.rule,
            "message": str(self),
            "limit": self.limit,
            "current": self.current,
        }


class BrokerRejected(TradeMirrorError):
    """The brokerage returned a failure. The message is the broker's, verbatim."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "broker_rejected",
            "message": str(self),
            "status_code": self.status_code,
        }
