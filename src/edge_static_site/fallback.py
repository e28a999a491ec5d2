import logging

from .exceptions import FallbackDocumentMissing, OriginUnavailable
from .models import ErrorMapping, Response

logger = logging.getLogger(__name__)


class FallbackMapper:
    """Turns origin results into viewer responses.

    A found object passes through as a 200. A missing object is replaced by
    the fallback document, served with the mapping's response status. The
    fallback document is read through the same ``fetch`` callable, and its
    own absence is raised as ``FallbackDocumentMissing`` instead of being
    mapped again.
    """

    def __init__(self, fetch, mapping=ErrorMapping()):
        self._fetch = fetch
        self.mapping = mapping

    def map(self, result) -> Response:
        if result.found:
            return Response.create(200, result.body, content_type=result.content_type)
        if result.status not in self.mapping.missing_statuses:
            raise OriginUnavailable(
                f"Origin returned unexpected status {result.status} for {result.key!r}"
            )
        logger.debug(
            "Origin reported %s for %r, serving %s",
            result.status,
            result.key,
            self.mapping.substitute_path,
        )
        document = self._fetch(self.mapping.substitute_path)
        if not document.found:
            raise FallbackDocumentMissing(self.mapping.substitute_path)
        return Response.create(
            self.mapping.response_status,
            document.body,
            content_type=document.content_type,
        )
