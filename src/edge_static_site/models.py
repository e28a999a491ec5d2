import collections
import enum

from .edge_hook import RewriteDecision  # noqa: F401
from .exceptions import MalformedRequest

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class Method(str, enum.Enum):
    GET = "GET"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    TRACE = "TRACE"
    CONNECT = "CONNECT"

    def __str__(self):
        return self.value


SAFE_METHODS = frozenset({Method.GET, Method.HEAD, Method.OPTIONS})


def parse_method(method):
    """Return the ``Method`` member for a known verb, else the raw token.

    Verbs are case-sensitive, so ``get`` stays a plain string and is later
    rejected like any other method outside the allowed set.
    """
    method = str(method)
    if not method:
        raise MalformedRequest("Request method must not be empty")
    try:
        return Method(method)
    except ValueError:
        return method


def normalize_methods(methods):
    return frozenset(parse_method(method) for method in methods)


class Request(
    collections.namedtuple(
        "Request",
        ["method", "path", "host", "query_string", "cookies"],
        defaults=("", ()),
    )
):
    """An inbound viewer request.

    ``query_string`` and ``cookies`` are kept so callers can see what the
    viewer sent, but nothing downstream of the cache layer reads them.
    """

    @classmethod
    def create(cls, method, path, host, query_string="", cookies=None):
        method = parse_method(method)
        if not path:
            raise MalformedRequest("Request path must not be empty")
        if not path.startswith("/"):
            raise MalformedRequest(f"Request path {path!r} must begin with '/'")
        return cls(
            method=method,
            path=path,
            host=host,
            query_string=query_string or "",
            cookies=tuple(sorted((cookies or {}).items())),
        )


CacheKey = collections.namedtuple("CacheKey", ["method", "path"])


class OriginObject(
    collections.namedtuple(
        "OriginObject",
        ["key", "body", "content_type", "max_age"],
        defaults=(DEFAULT_CONTENT_TYPE, None),
    )
):
    found = True


class OriginNotFound(collections.namedtuple("OriginNotFound", ["key", "status"])):
    found = False


class Response(collections.namedtuple("Response", ["status", "headers", "body"])):
    @classmethod
    def create(cls, status, body=b"", content_type=None, headers=None):
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        if content_type is not None:
            headers["content-type"] = content_type
        return cls(status=status, headers=headers, body=body)

    @property
    def content_type(self):
        return self.headers.get("content-type")


class CacheEntry(
    collections.namedtuple("CacheEntry", ["key", "response", "stored_at", "ttl"])
):
    def is_fresh(self, now) -> bool:
        return now - self.stored_at < self.ttl


class ErrorMapping(
    collections.namedtuple(
        "ErrorMapping",
        ["origin_status", "substitute_path", "response_status"],
        defaults=(403, "/404.html", 404),
    )
):
    @property
    def missing_statuses(self):
        # S3 answers 403 for absent keys when the reader lacks ListBucket
        return frozenset({self.origin_status, 404})
