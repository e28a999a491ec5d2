import logging
import time
import urllib.parse

from .cache import CacheBehavior, CacheStore
from .config import EdgeConfig
from .exceptions import MalformedRequest, MethodNotAllowed, OriginUnavailable
from .models import Method, Request, Response

logger = logging.getLogger(__name__)


class EdgePipeline:
    """Request handling as seen by a viewer of the distribution.

    Method check, cache lookup on the original path, rewrite and origin
    fetch on a miss, then fallback mapping. ``FallbackDocumentMissing`` is
    deliberately left to propagate: it means the deployment is broken.
    """

    def __init__(self, origin, config=EdgeConfig(), *, store=None, clock=time.monotonic):
        self.config = config.validate()
        self.origin = origin
        self.cache = CacheBehavior(
            policy=self.config.ttl,
            store=store if store is not None else CacheStore(self.config.cache_capacity),
            allowed_methods=self.config.allowed_methods,
            mapping=self.config.error_mapping,
            clock=clock,
        )

    def handle(self, request: Request) -> Response:
        try:
            response = self.cache.lookup_or_fetch(request, self.origin.get)
        except MethodNotAllowed as exc:
            logger.info("Rejected %s %s", exc.method, request.path)
            return Response.create(
                405,
                content_type="text/plain",
                headers={"allow": ", ".join(sorted(str(m) for m in exc.allowed))},
            )
        except OriginUnavailable:
            logger.exception("Origin failed while serving %s", request.path)
            return Response.create(502, content_type="text/plain")
        response = response._replace(
            headers={"content-length": str(len(response.body)), **response.headers}
        )
        if request.method == Method.HEAD:
            return response._replace(body=b"")
        return response

    def handle_raw(self, method, url, host=None, cookies=None) -> Response:
        parts = urllib.parse.urlsplit(url)
        try:
            request = Request.create(
                method,
                parts.path,
                host or parts.hostname or "",
                query_string=parts.query,
                cookies=cookies,
            )
        except MalformedRequest as exc:
            logger.info("Malformed request for %r: %s", url, exc)
            return Response.create(400, content_type="text/plain")
        return self.handle(request)
