import functools
import logging
import mimetypes
import re
import typing

import boto3
import botocore.exceptions
import jmespath

from .exceptions import AccessDenied, ConfigurationError, OriginUnavailable
from .models import DEFAULT_CONTENT_TYPE, OriginNotFound, OriginObject

logger = logging.getLogger(__name__)

MISSING_ERROR_CODES = frozenset({"NoSuchKey", "AccessDenied", "NotFound", "404", "403"})

MAX_AGE_PATTERN = re.compile(r"(?:^|,)\s*(?:s-maxage|max-age)\s*=\s*(\d+)", re.IGNORECASE)


@functools.lru_cache()
def create_s3_client(region_name=None):
    kwargs = {"region_name": region_name} if region_name else {}
    return boto3.client("s3", **kwargs)


def path_to_key(path: str) -> str:
    return path[1:] if path.startswith("/") else path


def parse_max_age(cache_control: typing.Optional[str]) -> typing.Optional[int]:
    if not cache_control:
        return None
    ages = [int(age) for age in MAX_AGE_PATTERN.findall(cache_control)]
    return min(ages) if ages else None


class AccessGate:
    """Allows object reads for exactly one principal, the edge layer."""

    __slots__ = ("_allowed_principal",)

    def __init__(self, allowed_principal: str):
        if not allowed_principal:
            raise ConfigurationError("An allowed principal is required")
        object.__setattr__(self, "_allowed_principal", allowed_principal)

    def __setattr__(self, name, value):
        raise AttributeError("AccessGate is immutable")

    @property
    def allowed_principal(self):
        return self._allowed_principal

    def check(self, identity):
        if identity != self._allowed_principal:
            logger.warning("Denied origin read for identity %r", identity)
            raise AccessDenied(identity)


class Origin:
    """Object store reached through an ``AccessGate``.

    ``get`` returns an ``OriginObject`` or an ``OriginNotFound``; failures of
    the store itself raise ``OriginUnavailable``.
    """

    def __init__(self, gate: AccessGate, identity: str):
        self.gate = gate
        self.identity = identity

    def get(self, path: str, identity=None):
        self.gate.check(self.identity if identity is None else identity)
        return self._get_object(path_to_key(path))

    def _get_object(self, key):
        raise NotImplementedError()


class InMemoryOrigin(Origin):
    def __init__(self, objects, gate: AccessGate, identity: str):
        super().__init__(gate, identity)
        self._objects = {}
        for key, value in objects.items():
            self.put(key, value)

    def put(self, key, value):
        if isinstance(value, OriginObject):
            self._objects[key] = value._replace(key=key)
            return
        if isinstance(value, str):
            value = value.encode("utf-8")
        content_type = mimetypes.guess_type(key)[0] or DEFAULT_CONTENT_TYPE
        self._objects[key] = OriginObject(key=key, body=value, content_type=content_type)

    def _get_object(self, key):
        try:
            return self._objects[key]
        except KeyError:
            # S3 without ListBucket reports absent keys as access denied
            return OriginNotFound(key=key, status=403)


class S3Origin(Origin):
    def __init__(self, bucket, gate: AccessGate, identity: str, *, client=None, region_name=None):
        super().__init__(gate, identity)
        self.bucket = bucket
        self.client = client if client is not None else create_s3_client(region_name)

    def _get_object(self, key):
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except botocore.exceptions.ClientError as exc:
            code = jmespath.search("Error.Code", exc.response)
            status = jmespath.search("ResponseMetadata.HTTPStatusCode", exc.response)
            if code in MISSING_ERROR_CODES or status in (403, 404):
                logger.debug("S3 reported %s (%s) for s3://%s/%s", code, status, self.bucket, key)
                if status is None:
                    status = 403 if code in ("AccessDenied", "403") else 404
                return OriginNotFound(key=key, status=int(status))
            raise OriginUnavailable(f"S3 error {code} reading s3://{self.bucket}/{key}") from exc
        except botocore.exceptions.BotoCoreError as exc:
            raise OriginUnavailable(f"Unable to reach S3 for s3://{self.bucket}/{key}") from exc
        return OriginObject(
            key=key,
            body=response["Body"].read(),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            max_age=parse_max_age(response.get("CacheControl")),
        )
