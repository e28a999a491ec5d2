"""Checks against a deployed stack.

Set EDGE_TEST_DISTRIBUTION_URL and EDGE_TEST_BUCKET to the DistributionUrl and
ContentBucketName outputs to run these. The bucket contents are replaced.
"""
import contextlib
import os
import time
import urllib.parse

import boto3
import pytest

requests = pytest.importorskip("requests")

DISTRO = os.environ.get("EDGE_TEST_DISTRIBUTION_URL", "")
BUCKET = os.environ.get("EDGE_TEST_BUCKET", "")

pytestmark = pytest.mark.skipif(
    not (DISTRO and BUCKET), reason="no deployed distribution configured"
)


def request(path, method="GET"):
    return requests.request(
        method,
        urllib.parse.urljoin(DISTRO, path),
        allow_redirects=False,
    )


@contextlib.contextmanager
def bucket_setup(keys):
    bucket = boto3.resource("s3").Bucket(BUCKET)
    bucket.objects.delete()
    for key in keys:
        bucket.put_object(
            Key=key,
            Body=key.encode("utf-8"),
            ContentType="text/html",
            CacheControl="max-age=0",
        )
    time.sleep(5)
    yield


class TestCases:
    def test_root_serves_index_document(self):
        with bucket_setup(["index.html", "404.html"]):
            response = request("/")
            assert response.status_code == 200
            assert response.text == "index.html"

    def test_bare_directory_serves_index_document(self):
        with bucket_setup(["key/index.html", "404.html"]):
            response = request("/key")
            assert response.status_code == 200
            assert response.text == "key/index.html"

    def test_slashed_directory_serves_index_document(self):
        with bucket_setup(["key/index.html", "404.html"]):
            response = request("/key/")
            assert response.status_code == 200
            assert response.text == "key/index.html"

    def test_file_with_extension_is_served_as_is(self):
        with bucket_setup(["app.js", "404.html"]):
            response = request("/app.js")
            assert response.status_code == 200
            assert response.text == "app.js"

    def test_dotted_parent_directory(self):
        with bucket_setup(["a.b/c/index.html", "404.html"]):
            response = request("/a.b/c")
            assert response.status_code == 200
            assert response.text == "a.b/c/index.html"

    def test_missing_key_serves_fallback(self):
        with bucket_setup(["404.html"]):
            response = request("/missing")
            assert response.status_code == 404
            assert response.text == "404.html"

    def test_query_string_is_not_meaningful(self):
        with bucket_setup(["index.html", "404.html"]):
            response = request("/?acl")
            assert response.status_code == 200
            assert response.text == "index.html"

    @pytest.mark.parametrize("method", ["POST", "DELETE"])
    def test_unsafe_methods_are_rejected(self, method):
        with bucket_setup(["index.html", "404.html"]):
            # CloudFront answers disallowed methods itself, without the origin
            response = request("/", method=method)
            assert response.status_code in (403, 405)

    def test_bucket_is_not_publicly_readable(self):
        with bucket_setup(["index.html"]):
            response = requests.get(f"https://{BUCKET}.s3.amazonaws.com/index.html")
            assert response.status_code == 403
