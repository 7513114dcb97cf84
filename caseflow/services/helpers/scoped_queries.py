"""
Tenant-scoped lookups.

Every fetch-by-id in the engine goes through ``get_scoped`` so a record that
belongs to another tenant looks exactly like a missing one (404). Use it in
place of ``db.session.get(Model, pk)``:

    case = get_scoped(LegalCase, case_id, tenant_id=tenant_id)
    reply = get_scoped(StageReply, reply_id, tenant_id=tenant_id)

Pass ``case_id=`` as well when a child row must also hang off a given case,
and ``for_update=True`` to lock the row (no-op on SQLite).
"""

import logging

from sqlalchemy import select

from caseflow.core.exceptions import NotFoundError
from caseflow.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk: int, *, tenant_id: int, case_id: int | None = None, for_update: bool = False):
    """Return ``model`` row ``pk`` inside the caller's tenant, or raise NotFoundError."""
    if tenant_id is None:
        raise ValueError(f"{model.__name__} id={pk}: unscoped lookup (tenant_id is None)")
    if case_id is not None and not hasattr(model, "case_id"):
        raise ValueError(f"{model.__name__} has no case_id column to scope by")

    stmt = select(model).where(model.id == pk, model.tenant_id == tenant_id)
    if case_id is not None:
        stmt = stmt.where(model.case_id == case_id)
    if for_update:
        stmt = stmt.with_for_update()

    row = db.session.execute(stmt).scalar_one_or_none()
    if row is None:
        logger.debug("%s id=%s not visible to tenant %s", model.__name__, pk, tenant_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return row
