import collections
import enum
import os

from .cache import DEFAULT_CACHE_CAPACITY, DEFAULT_TTL_SECONDS, MAX_TTL_SECONDS, TtlPolicy
from .exceptions import ConfigurationError
from .models import SAFE_METHODS, ErrorMapping, Method, normalize_methods

CLOUDWATCH_LOGS_RETENTION_OPTIONS = [
    1,
    3,
    5,
    7,
    14,
    30,
    60,
    90,
    120,
    150,
    180,
    365,
    400,
    545,
    731,
    1827,
    3653,
]

DEFAULT_EDGE_PRINCIPAL = "edge"

ENV_DEFAULTS = {
    "EDGE_PRINCIPAL": DEFAULT_EDGE_PRINCIPAL,
    "EDGE_MIN_TTL": "0",
    "EDGE_DEFAULT_TTL": str(DEFAULT_TTL_SECONDS),
    "EDGE_MAX_TTL": str(MAX_TTL_SECONDS),
    "EDGE_ALLOWED_METHODS": ",".join(sorted(method.value for method in SAFE_METHODS)),
    "EDGE_FALLBACK_PATH": "/404.html",
    "EDGE_FALLBACK_ORIGIN_STATUS": "403",
    "EDGE_FALLBACK_RESPONSE_STATUS": "404",
    "EDGE_LOG_RETENTION_DAYS": "365",
    "EDGE_CACHE_CAPACITY": str(DEFAULT_CACHE_CAPACITY),
}


class EnvVars(enum.Enum):
    EDGE_DOMAIN_NAMES = enum.auto()
    EDGE_ACM_CERTIFICATE_ARN = enum.auto()
    EDGE_HOSTED_ZONE_ID = enum.auto()
    EDGE_BUCKET_NAME = enum.auto()
    EDGE_PRINCIPAL = enum.auto()
    EDGE_MIN_TTL = enum.auto()
    EDGE_DEFAULT_TTL = enum.auto()
    EDGE_MAX_TTL = enum.auto()
    EDGE_ALLOWED_METHODS = enum.auto()
    EDGE_FALLBACK_PATH = enum.auto()
    EDGE_FALLBACK_ORIGIN_STATUS = enum.auto()
    EDGE_FALLBACK_RESPONSE_STATUS = enum.auto()
    EDGE_LOG_RETENTION_DAYS = enum.auto()
    EDGE_CACHE_CAPACITY = enum.auto()

    @property
    def default(self):
        return ENV_DEFAULTS.get(self.name, "")

    def get(self, environ=None):
        environ = os.environ if environ is None else environ
        return environ.get(self.name, self.default)

    def get_int(self, environ=None):
        raw = self.get(environ)
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"{self.name} must be an integer, got {raw!r}")

    def get_list(self, environ=None):
        return [item.strip() for item in self.get(environ).split(",") if item.strip()]


class EdgeConfig(
    collections.namedtuple(
        "EdgeConfig",
        [
            "domain_names",
            "acm_certificate_arn",
            "hosted_zone_id",
            "bucket_name",
            "edge_principal",
            "ttl",
            "allowed_methods",
            "error_mapping",
            "log_retention_days",
            "cache_capacity",
        ],
        defaults=(
            (),
            "",
            "",
            "",
            DEFAULT_EDGE_PRINCIPAL,
            TtlPolicy(),
            SAFE_METHODS,
            ErrorMapping(),
            365,
            DEFAULT_CACHE_CAPACITY,
        ),
    )
):
    """Everything the edge layer is parameterized by."""

    @classmethod
    def from_environ(cls, environ=None):
        try:
            allowed_methods = frozenset(
                Method(name.upper()) for name in EnvVars.EDGE_ALLOWED_METHODS.get_list(environ)
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc))
        config = cls(
            domain_names=tuple(EnvVars.EDGE_DOMAIN_NAMES.get_list(environ)),
            acm_certificate_arn=EnvVars.EDGE_ACM_CERTIFICATE_ARN.get(environ),
            hosted_zone_id=EnvVars.EDGE_HOSTED_ZONE_ID.get(environ),
            bucket_name=EnvVars.EDGE_BUCKET_NAME.get(environ),
            edge_principal=EnvVars.EDGE_PRINCIPAL.get(environ),
            ttl=TtlPolicy(
                min_ttl=EnvVars.EDGE_MIN_TTL.get_int(environ),
                default_ttl=EnvVars.EDGE_DEFAULT_TTL.get_int(environ),
                max_ttl=EnvVars.EDGE_MAX_TTL.get_int(environ),
            ),
            allowed_methods=allowed_methods,
            error_mapping=ErrorMapping(
                origin_status=EnvVars.EDGE_FALLBACK_ORIGIN_STATUS.get_int(environ),
                substitute_path=EnvVars.EDGE_FALLBACK_PATH.get(environ),
                response_status=EnvVars.EDGE_FALLBACK_RESPONSE_STATUS.get_int(environ),
            ),
            log_retention_days=EnvVars.EDGE_LOG_RETENTION_DAYS.get_int(environ),
            cache_capacity=EnvVars.EDGE_CACHE_CAPACITY.get_int(environ),
        )
        return config.validate()

    def validate(self):
        """Check the settings and return a copy with ``Method`` members for known verbs."""
        self.ttl.validate()
        allowed_methods = normalize_methods(self.allowed_methods)
        if not allowed_methods:
            raise ConfigurationError("At least one HTTP method must be allowed")
        unsafe = allowed_methods - SAFE_METHODS
        if unsafe:
            raise ConfigurationError(
                "Only GET, HEAD and OPTIONS can be served from the cache, got "
                + ", ".join(sorted(unsafe))
            )
        if not self.error_mapping.substitute_path.startswith("/"):
            raise ConfigurationError("Fallback document path must begin with '/'")
        if self.log_retention_days not in [0] + CLOUDWATCH_LOGS_RETENTION_OPTIONS:
            raise ConfigurationError(
                f"Unsupported log retention of {self.log_retention_days} days"
            )
        if self.cache_capacity <= 0:
            raise ConfigurationError("Cache capacity must be positive")
        return self._replace(allowed_methods=allowed_methods)
