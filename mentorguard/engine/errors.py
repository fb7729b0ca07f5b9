"""
mentorguard.engine.errors — Governance error taxonomy
======================================================

Four kinds of outcome leave a governance operation:

* infrastructure errors (store unreachable, malformed response)
* not-found errors (the referenced content item does not exist)
* validation errors (malformed input)
* policy outcomes (denied / throttled / flagged)

Only the first three are exceptions.  Policy outcomes are the normal
return value of a check and never raise.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for every error raised by mentorguard."""

    code = "GOVERNANCE_ERROR"

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": str(self)}


class InfrastructureError(GovernanceError):
    """A supporting store failed or returned something unusable."""

    code = "INFRASTRUCTURE_ERROR"


class CounterStoreError(InfrastructureError):
    """The counter/cache store could not complete an operation."""

    code = "COUNTER_STORE_UNAVAILABLE"


class HistoryStoreError(InfrastructureError):
    """The validation-outcome history could not be read."""

    code = "HISTORY_STORE_UNAVAILABLE"


class ChallengeNotFoundError(GovernanceError):
    """No canonical record exists for the requested challenge."""

    code = "CHALLENGE_NOT_FOUND"

    def __init__(self, challenge_id: str) -> None:
        super().__init__(f"Challenge not found: {challenge_id}")
        self.challenge_id = challenge_id


class GovernanceValidationError(GovernanceError, ValueError):
    """Caller supplied input that violates an operation's contract."""

    code = "INVALID_INPUT"
