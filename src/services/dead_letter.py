"""Durable dead-letter queue for failed workflow steps.

A step that fails is captured with its input and traceback instead of
propagating to the ingestion caller. Letters can be replayed with
per-letter retry semantics; after MAX_RETRIES failed replays a letter
is marked exhausted and needs manual intervention.

Letters are DB-persisted, so they survive process crashes. Pending
letters can be drained via retry_dead_letters().
"""

import json
import logging
import traceback
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from src.db.models import DeadLetter, DeadLetterStatus, utc_now_iso
from src.errors import NotFoundError

logger = logging.getLogger(__name__)

# Maximum replay attempts before a letter is exhausted
MAX_RETRIES = 3


def capture_dead_letter(
    db: Session,
    workflow_name: str,
    trigger_data: dict[str, Any],
    error: BaseException,
    tenant_id: str | None = None,
) -> DeadLetter:
    """Persist a failed step.

    Commits on its own; call after rolling back the failed unit of work.

    Args:
        db: Database session for persistence.
        workflow_name: Workflow whose step failed.
        trigger_data: Input needed to replay the step.
        error: The exception that aborted the step.
        tenant_id: Owning tenant, if known.

    Returns:
        The created DeadLetter ORM instance.
    """
    letter = DeadLetter(
        tenant_id=tenant_id,
        workflow_name=workflow_name,
        trigger_data=json.dumps(trigger_data, default=str),
        error_message=str(error) or error.__class__.__name__,
        error_stack="".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        ),
        retry_count=0,
        max_retries=MAX_RETRIES,
        status=DeadLetterStatus.pending.value,
    )
    db.add(letter)
    db.commit()
    logger.error(
        "dead_letter_captured id=%s workflow=%s tenant=%s error=%s",
        letter.id,
        workflow_name,
        tenant_id,
        letter.error_message,
    )
    return letter


def get_dead_letters(
    db: Session,
    tenant_id: str,
    status: DeadLetterStatus | None = None,
    workflow_name: str | None = None,
    limit: int = 100,
) -> list[DeadLetter]:
    """Query a tenant's dead letters, newest first."""
    query = db.query(DeadLetter).filter(DeadLetter.tenant_id == tenant_id)
    if status is not None:
        query = query.filter(DeadLetter.status == status.value)
    if workflow_name is not None:
        query = query.filter(DeadLetter.workflow_name == workflow_name)
    return query.order_by(DeadLetter.created_at.desc()).limit(limit).all()


def get_dead_letter(db: Session, tenant_id: str, dead_letter_id: str) -> DeadLetter:
    """Fetch one letter scoped to the tenant.

    Raises:
        NotFoundError: If the letter does not exist for this tenant.
    """
    letter = (
        db.query(DeadLetter)
        .filter(DeadLetter.id == dead_letter_id, DeadLetter.tenant_id == tenant_id)
        .first()
    )
    if letter is None:
        raise NotFoundError("Dead letter", dead_letter_id)
    return letter


def resolve_dead_letter(db: Session, tenant_id: str, dead_letter_id: str) -> DeadLetter:
    """Mark a letter resolved after manual intervention."""
    letter = get_dead_letter(db, tenant_id, dead_letter_id)
    letter.status = DeadLetterStatus.resolved.value
    letter.resolved_at = utc_now_iso()
    db.commit()
    logger.info("dead_letter_resolved id=%s tenant=%s", letter.id, tenant_id)
    return letter


def trigger_data_of(letter: DeadLetter) -> dict[str, Any]:
    """Decode the stored trigger data."""
    return json.loads(letter.trigger_data)


def retry_dead_letters(
    db: Session,
    handler: Callable[[DeadLetter], Any],
    tenant_id: str,
    workflow_name: str | None = None,
) -> dict[str, int]:
    """Replay pending letters through handler.

    Each letter is processed independently; a failure in one does not
    affect others. The handler raises to signal failure. Failed letters
    have their retry_count incremented; letters reaching max_retries are
    moved to exhausted status.

    Returns:
        Dict with resolved, failed, and exhausted counts.
    """
    letters = get_dead_letters(
        db, tenant_id, status=DeadLetterStatus.pending, workflow_name=workflow_name
    )
    resolved = 0
    failed = 0
    exhausted = 0

    for letter in letters:
        letter_id = letter.id
        try:
            handler(letter)
        except Exception as e:
            db.rollback()
            letter = db.get(DeadLetter, letter_id)
            letter.retry_count += 1
            letter.last_error = str(e) or e.__class__.__name__
            letter.last_attempt_at = utc_now_iso()
            if letter.retry_count >= letter.max_retries:
                letter.status = DeadLetterStatus.exhausted.value
                exhausted += 1
                logger.error(
                    "dead_letter_exhausted id=%s retries=%d error=%s",
                    letter.id,
                    letter.retry_count,
                    letter.last_error,
                )
            else:
                failed += 1
                logger.warning(
                    "dead_letter_retry_failed id=%s attempt=%d error=%s",
                    letter.id,
                    letter.retry_count,
                    letter.last_error,
                )
            db.commit()
            continue

        letter.status = DeadLetterStatus.resolved.value
        letter.resolved_at = utc_now_iso()
        letter.last_attempt_at = letter.resolved_at
        db.commit()
        resolved += 1

    return {"resolved": resolved, "failed": failed, "exhausted": exhausted}
