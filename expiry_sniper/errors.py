"""
Exceptions raised across component boundaries.

Expected conditions (reverts from losing a race, missing books, malformed feed
records) are handled inside each component and never surface as exceptions.
"""


class SniperError(Exception):
    """Base class for expiry sniper errors."""


class ConfigError(SniperError):
    """Startup configuration is incomplete or invalid."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class DiscoveryError(SniperError):
    """The market catalog could not be fetched."""


class SettlementError(SniperError):
    """Unclassified on-chain or network failure while settling one market."""

    def __init__(self, question_id: str, message: str):
        self.question_id = question_id
        super().__init__(f"{question_id[:18]}: {message}")
