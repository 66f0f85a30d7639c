from __future__ import annotations

from urllib.parse import urlparse

import requests

from escrowcourt.errors import InvalidEvidenceReference
from escrowcourt.integrations.common import IntegrationResult


def _allowed_hosts(raw: str | None) -> set[str]:
    return {h.strip().lower() for h in (raw or "").split(",") if h.strip()}


def resolve_reference(file_url: str, *, allowed_hosts: str | None = None) -> str:
    """Validate a pre-uploaded evidence URL. Nothing is fetched here."""
    url = str(file_url or "").strip()
    if not url:
        raise InvalidEvidenceReference("file_url is required", field="file_url")
    if len(url) > 1024:
        raise InvalidEvidenceReference("file_url is too long", field="file_url")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidEvidenceReference("file_url must be an http(s) URL", field="file_url")
    hosts = _allowed_hosts(allowed_hosts)
    host = (parsed.hostname or "").lower()
    if hosts and host not in hosts:
        raise InvalidEvidenceReference(f"file_url host {host} is not an accepted evidence store", field="file_url")
    return url


def probe_reference(file_url: str, *, timeout: float = 6.0) -> IntegrationResult:
    try:
        r = requests.head(file_url, allow_redirects=True, timeout=timeout)
    except requests.RequestException as e:
        return IntegrationResult(ok=False, code="EVIDENCE_UNREACHABLE", message=str(e)[:200])
    if 200 <= r.status_code < 400:
        return IntegrationResult(
            ok=True,
            code="OK",
            message="reachable",
            raw={"content_length": r.headers.get("Content-Length"), "content_type": r.headers.get("Content-Type")},
        )
    return IntegrationResult(ok=False, code="EVIDENCE_UNREACHABLE", message=f"http_{r.status_code}")
