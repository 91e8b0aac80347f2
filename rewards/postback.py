"""CPX Research postback handling.

The partner calls us with a GET query string and only understands two
answers: a plaintext ``1`` (done, stop sending) or ``0`` (retry later, or a
human has to look at it). Anything else, including non-200 statuses and JSON
error bodies, breaks its parser and triggers retry floods.
"""

import hashlib
import hmac
from decimal import Decimal
from typing import Mapping, Optional
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError

from .log import get_logger
from .models import Outcome, OutcomeKind, PostbackStatus
from .service import CompletionProcessor, RewardsError

logger = get_logger(__name__)

ACK = "1"
RETRY = "0"

REQUIRED_PARAMS = ("user_id", "trans_id", "offer_id", "amount_local", "status", "hash")


class MalformedPostbackError(RewardsError):
    pass


class PostbackParams(BaseModel):
    user_id: UUID
    trans_id: str = Field(..., min_length=1)
    offer_id: str = Field(..., min_length=1)
    amount_local: Decimal
    status: PostbackStatus
    hash: str = Field(..., min_length=1)
    amount_usd: Optional[Decimal] = None
    ip_click: Optional[str] = None


def parse_postback(query: Mapping[str, str]) -> PostbackParams:
    missing = [name for name in REQUIRED_PARAMS if not (query.get(name) or "").strip()]
    if missing:
        raise MalformedPostbackError(f"Missing required parameters: {', '.join(missing)}")

    data = {name: query[name].strip() for name in REQUIRED_PARAMS}
    data["status"] = PostbackStatus.from_code(data["status"])
    for optional in ("amount_usd", "ip_click"):
        if (query.get(optional) or "").strip():
            data[optional] = query[optional].strip()

    try:
        return PostbackParams(**data)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors()})
        raise MalformedPostbackError(f"Invalid parameters: {', '.join(fields)}") from e


def expected_hash(trans_id: str, secure_hash: str) -> str:
    return hashlib.md5(f"{trans_id}-{secure_hash}".encode("utf-8")).hexdigest()


def verify_hash(params: PostbackParams, secure_hash: str) -> bool:
    if not secure_hash:
        return False
    return hmac.compare_digest(
        params.hash.lower(), expected_hash(params.trans_id, secure_hash)
    )


RESPONSE_CODES = {
    OutcomeKind.ACCEPTED: ACK,
    OutcomeKind.ALREADY_PROCESSED: ACK,
    OutcomeKind.NOTHING_TO_REVERSE: ACK,
    OutcomeKind.REVERSED: ACK,
    OutcomeKind.REJECTED: ACK,
    OutcomeKind.IGNORED: ACK,
}


def response_code(outcome: Outcome) -> str:
    # Failures that deserve a retry are raised, never returned as outcomes.
    return RESPONSE_CODES[outcome.kind]


class PostbackHandler:
    def __init__(self, processor: CompletionProcessor, secure_hash: str):
        self.processor = processor
        self.secure_hash = secure_hash

    def handle(self, query: Mapping[str, str]) -> str:
        """Process one postback and return the plaintext response body."""
        try:
            params = parse_postback(query)
        except MalformedPostbackError as e:
            logger.warning("Rejected postback: %s", e)
            return RETRY

        if not verify_hash(params, self.secure_hash):
            logger.warning(
                "Rejected postback for transaction %s: integrity hash mismatch",
                params.trans_id,
            )
            return RETRY

        logger.info(
            "Postback status=%s user=%s transaction=%s offer=%s amount=%s",
            params.status.name,
            params.user_id,
            params.trans_id,
            params.offer_id,
            params.amount_local,
        )

        try:
            if params.status == PostbackStatus.COMPLETED:
                outcome = self.processor.process_completion(
                    params.user_id,
                    params.trans_id,
                    params.offer_id,
                    params.amount_local,
                    amount_usd=params.amount_usd,
                    ip_address=params.ip_click,
                )
            elif params.status == PostbackStatus.CANCELLED:
                outcome = self.processor.process_cancellation(params.user_id, params.trans_id)
            else:
                logger.info("Ignoring postback %s with unknown status", params.trans_id)
                outcome = Outcome(
                    kind=OutcomeKind.IGNORED,
                    user_id=params.user_id,
                    external_transaction_id=params.trans_id,
                    message="Unknown status ignored",
                )
        except RewardsError as e:
            logger.warning(
                "Postback %s for user %s not applied: %s",
                params.trans_id,
                params.user_id,
                e.__class__.__name__,
            )
            return RETRY
        except Exception:
            logger.exception("Unexpected error processing postback %s", params.trans_id)
            return RETRY

        logger.info("Postback %s -> %s", params.trans_id, outcome.kind.value)
        return response_code(outcome)
