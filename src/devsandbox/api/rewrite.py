"""
Textual URL rewriting for proxied responses.

Apps served through ``/proxy/<session>/<port>/`` usually assume they live at
the site root, so root-relative references in their HTML, JavaScript and JSON
are prefixed with the proxy base path. This is pattern matching over text, not
a parse: references assembled at runtime are missed, and a string literal that
merely looks like an attribute can be rewritten.

Protocol-relative (``//host/x``) and absolute (``http://...``) URLs are never
touched, nor are references that already carry the base path.
"""

import re

REWRITE_CONTENT_TYPES = (
    "text/html",
    "application/xhtml+xml",
    "text/javascript",
    "application/javascript",
    "application/x-javascript",
    "application/json",
)

# Each pattern captures everything before the leading slash of a root-relative URL
_PREFIXES = [
    # HTML attributes: <script src="/x">, <link href="/x">, <form action="/x">
    r"""(\b(?:src|href|action|poster|formaction|data-src)\s*=\s*["'])""",
    # CSS url(/x), url("/x")
    r"""(\burl\(\s*["']?)""",
    # import x from "/x", export * from "/x"
    r"""(\bfrom\s*["'])""",
    # side-effect import "/x"
    r"""(\bimport\s*["'])""",
    # dynamic import("/x")
    r"""(\bimport\(\s*["'])""",
    # Vite client bootstrap: const base = "/", const hmrBase = "/" and the __BASE__ define
    r"""(\b(?:const|let|var)\s+(?:base|hmrBase)\s*=\s*["'])""",
    r"""(\b__BASE__\s*=\s*["'])""",
    # Webpack public path: __webpack_require__.p = "/"
    r"""(__webpack_require__\.p\s*=\s*["'])""",
    # JSON and JS object keys naming base paths: "base": "/", basePath: "/", publicPath: "/"
    r"""(["']?\b(?:base|basePath|publicPath|assetPrefix)["']?\s*:\s*["'])""",
]


def should_rewrite(content_type: str | None) -> bool:
    if not content_type:
        return False
    mime = content_type.split(";")[0].strip().lower()
    return mime in REWRITE_CONTENT_TYPES


def proxy_base(session_id: str, container_port: int | str) -> str:
    return f"/proxy/{session_id}/{container_port}"


def _pattern(base: str) -> re.Pattern:
    already = re.escape(base.lstrip("/"))
    return re.compile(f"(?:{'|'.join(_PREFIXES)})/(?!/)(?!{already}(?:/|$|[\"'?#)]))")


def rewrite_body(text: str, base: str) -> str:
    """Prefix every root-relative reference in ``text`` with ``base``."""
    base = base.rstrip("/")

    def replace(match: re.Match) -> str:
        prefix = next(group for group in match.groups() if group is not None)
        return f"{prefix}{base}/"

    return _pattern(base).sub(replace, text)


def rewrite_location(location: str, base: str) -> str:
    """Keep redirects to root-relative paths inside the proxy."""
    base = base.rstrip("/")
    if location.startswith("/") and not location.startswith("//") and not location.startswith(f"{base}/"):
        return f"{base}{location}"
    return location
