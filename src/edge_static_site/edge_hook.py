"""Origin-request hook mapping directory-style paths onto index documents.

This module is inlined verbatim into the Lambda@Edge function by the
template, so it must only import from the standard library.
"""
import collections

INDEX_DOCUMENT = "index.html"

RewriteDecision = collections.namedtuple("RewriteDecision", ["rewritten_path"])


def rewrite_path(path: str) -> str:
    if path.endswith("/"):
        return path + INDEX_DOCUMENT
    if "." not in path.rsplit("/", 1)[-1]:
        return path + "/" + INDEX_DOCUMENT
    return path


def rewrite(request) -> RewriteDecision:
    return RewriteDecision(rewritten_path=rewrite_path(request.path))


def handler(event, context=None):
    request = event["Records"][0]["cf"]["request"]
    request["uri"] = rewrite_path(request["uri"])
    # the object key is all the origin gets to see
    request["querystring"] = ""
    request.get("headers", {}).pop("cookie", None)
    return request
