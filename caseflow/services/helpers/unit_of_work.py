"""
Transaction and per-case serialization helpers.

``atomic()`` wraps one compound lifecycle operation (close old instance,
create new instance, record transition, seed checklist and steps, write
audit) in a single commit. It is re-entrant: nested blocks join the
outermost unit, which alone commits or rolls back.

``claim_case()`` is the per-case optimistic lock. Every mutation that
touches a case's stage tables bumps ``cases.stage_version`` with a
compare-and-set before doing anything else; whoever loses the race gets
ConflictError and nothing is written.

Usage:
    with atomic():
        case = load_case_for_update(case_id, tenant_id=tenant_id)
        claim_case(case, expected_version=expected_version)
        ...
"""

import logging
from contextlib import contextmanager

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.exc import StaleDataError

from caseflow.core.exceptions import ConflictError
from caseflow.models import db
from caseflow.models.case import LegalCase
from caseflow.services.helpers.scoped_queries import get_scoped

logger = logging.getLogger(__name__)

_DEPTH_KEY = "caseflow.atomic_depth"


@contextmanager
def atomic():
    """Commit on success; on any exception roll back and re-raise.

    IntegrityError (unique index lost a race) and StaleDataError surface as
    ConflictError so callers can re-fetch and retry.
    """
    session = db.session
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except (IntegrityError, StaleDataError) as exc:
        if depth == 0:
            session.rollback()
            logger.warning("Transaction rolled back on concurrent write: %s", exc)
        raise ConflictError(
            "Transaction", None, "Concurrent modification detected; re-fetch and retry",
        ) from exc
    except Exception:
        if depth == 0:
            session.rollback()
            logger.debug("Transaction rolled back", exc_info=True)
        raise
    finally:
        session.info[_DEPTH_KEY] = depth


def load_case_for_update(case_id: int, *, tenant_id: int) -> LegalCase:
    """Tenant-scoped case lookup with a row lock on PostgreSQL."""
    return get_scoped(LegalCase, case_id, tenant_id=tenant_id, for_update=True)


def claim_case(case: LegalCase, expected_version: int | None = None) -> int:
    """Bump ``case.stage_version`` with compare-and-set; return the new version.

    Raises:
        ConflictError: the caller's ``expected_version`` is stale, or another
            transaction bumped the version between our read and our write.
    """
    seen = case.stage_version or 0
    if expected_version is not None and int(expected_version) != seen:
        raise ConflictError(
            "LegalCase", case.id,
            f"Case changed since it was read (expected version {expected_version}, current {seen})",
            details={"expected_version": expected_version, "current_version": seen},
        )

    result = db.session.execute(
        update(LegalCase)
        .where(LegalCase.id == case.id, LegalCase.stage_version == seen)
        .values(stage_version=seen + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "Case claim lost: case=%s version=%s", case.id, seen,
            extra={"tenant_id": case.tenant_id, "case_id": case.id},
        )
        raise ConflictError(
            "LegalCase", case.id,
            "Another lifecycle operation on this case completed first",
            details={"seen_version": seen},
        )
    set_committed_value(case, "stage_version", seen + 1)
    return seen + 1
