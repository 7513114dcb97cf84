"""
Document storage gateway.

All outbound HTTP calls to the document service go through this class.
The checklist evaluator uses it to check that the document references
held on notices and replies resolve to stored documents.

  - Timeout: DOCUMENT_LOOKUP_TIMEOUT seconds (default 3)
  - No retries: a failed lookup degrades one checklist item to Pending,
    it never fails the caller
  - Local mode: with no DOCUMENT_SERVICE_URL configured, any non-empty
    reference counts as present

Testability: pass a mock ``session`` to DocumentGateway() in tests, or
monkeypatch ``exists`` on the module-level ``document_gateway``.
"""

from __future__ import annotations

import logging
import time

import requests
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 3.0


class DocumentLookup:
    """Outcome of resolving a batch of document references.

    Attributes:
        found:       References the service confirmed.
        missing:     References the service reported as absent.
        unavailable: True if at least one lookup failed (timeout, 5xx,
                     network error); the verdict is then unknown.
    """

    def __init__(self) -> None:
        self.found: list[str] = []
        self.missing: list[str] = []
        self.unavailable = False

    @property
    def found_count(self) -> int:
        return len(self.found)


class DocumentGateway:
    """Read-only client for the document storage collaborator.

    Usage:
        from caseflow.integrations.document_gateway import document_gateway
        lookup = document_gateway.resolve_many(["doc-1", "doc-2"], tenant_id=1)
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._session = session
        self._base_url = base_url
        self._token = token
        self._timeout = timeout

    # ── Configuration ────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _config(self, key: str, explicit):
        if explicit is not None:
            return explicit
        if has_app_context():
            return current_app.config.get(key)
        return None

    @property
    def base_url(self) -> str | None:
        url = self._config("DOCUMENT_SERVICE_URL", self._base_url)
        return url.rstrip("/") if url else None

    @property
    def timeout(self) -> float:
        value = self._config("DOCUMENT_LOOKUP_TIMEOUT", self._timeout)
        return float(value) if value else _DEFAULT_TIMEOUT

    # ── Lookups ──────────────────────────────────────────────────────────────

    def exists(self, ref: str, *, tenant_id: int | None = None) -> bool | None:
        """True / False when the service answers; None when it cannot be reached."""
        ref = (str(ref).strip() if ref is not None else "")
        if not ref:
            return False

        base_url = self.base_url
        if not base_url:
            return True

        headers = {"Accept": "application/json"}
        token = self._config("DOCUMENT_SERVICE_TOKEN", self._token)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if tenant_id is not None:
            headers["X-Tenant-ID"] = str(tenant_id)

        url = f"{base_url}/documents/{ref}"
        t0 = time.perf_counter()
        try:
            resp = self.session.head(url, headers=headers, timeout=self.timeout)
        except requests.Timeout:
            logger.warning("Document lookup timed out after %ss ref=%s", self.timeout, ref)
            return None
        except requests.RequestException as exc:
            logger.warning("Document lookup failed ref=%s error=%s", ref, str(exc)[:300])
            return None

        duration_ms = (time.perf_counter() - t0) * 1000
        logger.debug("Document lookup ref=%s status=%s (%.0fms)", ref, resp.status_code, duration_ms)
        if resp.status_code == 404:
            return False
        if resp.ok:
            return True
        logger.warning("Document service returned HTTP %s for ref=%s", resp.status_code, ref)
        return None

    def resolve_many(self, refs, *, tenant_id: int | None = None) -> DocumentLookup:
        """Resolve each distinct reference once, preserving first-seen order."""
        lookup = DocumentLookup()
        seen = set()
        for ref in refs:
            key = str(ref).strip() if ref is not None else ""
            if not key or key in seen:
                continue
            seen.add(key)
            verdict = self.exists(key, tenant_id=tenant_id)
            if verdict is None:
                lookup.unavailable = True
            elif verdict:
                lookup.found.append(key)
            else:
                lookup.missing.append(key)
        return lookup


# Module-level singleton
document_gateway = DocumentGateway()
