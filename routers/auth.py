import logging
from typing import Optional, Tuple

from fastapi import HTTPException, Request


def is_proxy_authenticated_request(request: Request) -> bool:
    """Detect whether the request comes through a proxy that already authenticated it."""
    return bool(request.headers.get("x-ingress-path", "").strip())


def extract_secret(request: Request, body_secret: Optional[str] = None) -> Tuple[str, str]:
    """Extract the run secret from header, bearer token, query, or body (in that order)."""
    header_secret = request.headers.get("x-job-secret", "").strip()
    if header_secret:
        return header_secret, "header"

    authorization = request.headers.get("authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token, "bearer"

    query_secret = request.query_params.get("secret", "").strip()
    if query_secret:
        return query_secret, "query"

    if body_secret:
        body_secret = str(body_secret).strip()
        if body_secret:
            return body_secret, "body"

    return "", "missing"


def ensure_request_authorized(
    request: Request,
    job_secret: str,
    logger: logging.Logger,
    *,
    body_secret: Optional[str] = None,
) -> str:
    """Validate the shared run secret; returns where it was found."""
    endpoint = request.url.path
    if not job_secret:
        return "not_required"

    if is_proxy_authenticated_request(request):
        logger.debug("Auth bypass on %s via ingress", endpoint)
        return "ingress"

    provided, source = extract_secret(request, body_secret=body_secret)
    if provided != job_secret:
        logger.warning(
            "Unauthorized on %s (source=%s, client=%s)",
            endpoint,
            source,
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.debug("Auth OK on %s (source=%s)", endpoint, source)
    return source
