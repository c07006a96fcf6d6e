from __future__ import annotations


class DiscoveryError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DiscoveryError):
    """Missing credentials or malformed input files. Always fatal."""


class RankingContractError(DiscoveryError):
    """The model answered, but not in the shape the ranking step requires."""


class StageTimeout(DiscoveryError):
    pass
