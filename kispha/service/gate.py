from __future__ import annotations

from kispha.logging import get_logger
from kispha.service.errors import ErrorKind, Outcome
from kispha.service.tokens import TokenValidator
from kispha.storage.models import IdentityRecord

logger = get_logger(__name__)


class MutationGate:
    """Freshness and replay check in front of every token-gated write.

    A presented token is accepted only if it is exactly the record's stored
    token and still passes the validator. The caller must then persist the
    returned token in the same write as its own changes, using the presented
    token as the compare-and-set expectation.
    """

    def __init__(self, validator: TokenValidator) -> None:
        self.validator = validator

    def authorize(self, record: IdentityRecord, presented_token: str | None) -> Outcome[str]:
        if not presented_token:
            logger.warning("gate_missing_token", subject_id=record.subject_id)
            return Outcome.failure(ErrorKind.MISSING_TOKEN)
        if not record.current_token or presented_token != record.current_token:
            logger.warning(
                "gate_stale_token",
                subject_id=record.subject_id,
                has_stored_token=bool(record.current_token),
            )
            return Outcome.failure(ErrorKind.STALE_OR_FORGED_TOKEN)
        return self.validator.check_fresh_and_rotate(presented_token, record.subject_id)
