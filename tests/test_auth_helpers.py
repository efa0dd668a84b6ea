import logging
import unittest
from typing import Any

try:
    from fastapi import HTTPException
    from starlette.requests import Request

    from routers.auth import ensure_request_authorized, extract_secret

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    Request = Any  # type: ignore[assignment]
    DEPS_AVAILABLE = False


def make_request(
    *,
    path: str = "/run/procedure_batch",
    headers: dict[str, str] | None = None,
    query: str = "",
) -> Request:
    raw_headers = []
    for key, value in (headers or {}).items():
        raw_headers.append((key.lower().encode("latin-1"), value.encode("latin-1")))
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": path,
        "query_string": query.encode("latin-1"),
        "headers": raw_headers,
        "client": ("127.0.0.1", 12345),
        "server": ("testserver", 80),
    }
    return Request(scope)


@unittest.skipUnless(DEPS_AVAILABLE, "fastapi/starlette is not installed in this environment")
class AuthHelpersTests(unittest.TestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("tests.auth")

    def test_extract_secret_header_priority(self) -> None:
        req = make_request(
            headers={"x-job-secret": "from-header", "authorization": "Bearer from-bearer"},
            query="secret=from-query",
        )
        provided, source = extract_secret(req, body_secret="from-body")
        self.assertEqual(provided, "from-header")
        self.assertEqual(source, "header")

    def test_extract_secret_bearer_before_query(self) -> None:
        req = make_request(headers={"authorization": "Bearer from-bearer"}, query="secret=from-query")
        provided, source = extract_secret(req)
        self.assertEqual(provided, "from-bearer")
        self.assertEqual(source, "bearer")

    def test_extract_secret_ignores_non_bearer_authorization(self) -> None:
        req = make_request(headers={"authorization": "Basic dXNlcjpwYXNz"}, query="secret=from-query")
        provided, source = extract_secret(req)
        self.assertEqual(provided, "from-query")
        self.assertEqual(source, "query")

    def test_extract_secret_body_fallback(self) -> None:
        req = make_request()
        provided, source = extract_secret(req, body_secret="from-body")
        self.assertEqual(provided, "from-body")
        self.assertEqual(source, "body")

    def test_extract_secret_missing(self) -> None:
        provided, source = extract_secret(make_request(), body_secret="   ")
        self.assertEqual(provided, "")
        self.assertEqual(source, "missing")

    def test_ensure_request_authorized_accepts_bearer(self) -> None:
        req = make_request(headers={"authorization": "Bearer correct"})
        self.assertEqual(ensure_request_authorized(req, "correct", self.logger), "bearer")

    def test_ensure_request_authorized_rejects_invalid_secret(self) -> None:
        req = make_request(query="secret=wrong")
        with self.assertRaises(HTTPException) as ctx:
            ensure_request_authorized(req, "correct", self.logger)
        self.assertEqual(ctx.exception.status_code, 401)

    def test_ensure_request_authorized_without_configured_secret(self) -> None:
        source = ensure_request_authorized(make_request(), "", self.logger)
        self.assertEqual(source, "not_required")

    def test_ensure_request_authorized_proxy_bypass(self) -> None:
        req = make_request(headers={"x-ingress-path": "/ingress/test"})
        source = ensure_request_authorized(req, "correct", self.logger)
        self.assertEqual(source, "ingress")


if __name__ == "__main__":
    unittest.main()
