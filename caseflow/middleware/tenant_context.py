"""
Request context middleware — tenant and actor resolution.

Every /api/v1 request (health excepted) must name its tenant:

    X-Tenant-ID header   →  ?tenant_id= query arg  →  "tenant_id" in JSON body

The tenant must exist and be active, otherwise the request is rejected
with 403 before it reaches a blueprint. The acting user comes from
X-Actor-ID / X-Actor-Role; authentication itself happens upstream, this
layer only carries the identity into ``g`` so services can stamp it on
audit fields.

Sets:
    g.tenant, g.tenant_id, g.actor, g.actor_role
"""

import logging

from flask import g, request

from caseflow.models import db
from caseflow.models.auth import Tenant
from caseflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip tenant context
TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def _requested_tenant_id():
    raw = request.headers.get("X-Tenant-ID") or request.args.get("tenant_id")
    if raw is None and request.is_json:
        raw = (request.get_json(silent=True) or {}).get("tenant_id")
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return False


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None
        g.tenant_id = None
        g.actor = request.headers.get("X-Actor-ID") or None
        g.actor_role = request.headers.get("X-Actor-Role") or None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None
        if request.method == "OPTIONS":
            return None

        tenant_id = _requested_tenant_id()
        if tenant_id is None:
            return api_error(E.FORBIDDEN, "Tenant context required (X-Tenant-ID)", status=403)
        if tenant_id is False:
            return api_error(E.FORBIDDEN, "X-Tenant-ID must be an integer", status=403)

        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            logger.warning("Tenant %s not found", tenant_id, extra={"tenant_id": tenant_id})
            return api_error(E.FORBIDDEN, "Tenant not found", status=403)
        if not tenant.is_active:
            logger.warning("Tenant %s is deactivated", tenant_id, extra={"tenant_id": tenant_id})
            return api_error(E.FORBIDDEN, "Tenant account is deactivated", status=403)

        g.tenant = tenant
        g.tenant_id = tenant.id
        return None

    logger.info("Tenant context middleware installed")
