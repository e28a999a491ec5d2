import base64
import gzip
import hashlib
import inspect
import json

from awacs import logs, s3, sts
from awacs.aws import (
    Allow,
    Bool,
    Condition as StatementCondition,
    Deny,
    Everybody,
    PolicyDocument,
    Principal,
    SecureTransport,
    Statement,
)
from troposphere import (
    AccountId,
    Equals,
    FindInMap,
    GetAtt,
    If,
    Join,
    Not,
    NoValue,
    Output,
    Parameter,
    Partition,
    Ref,
    Region,
    Select,
    StackName,
    Template,
)
from troposphere.awslambda import Code, Function, Version
from troposphere.cloudformation import WaitConditionHandle
from troposphere.cloudfront import (
    CacheCookiesConfig,
    CacheHeadersConfig,
    CachePolicy,
    CachePolicyConfig,
    CacheQueryStringsConfig,
    CloudFrontOriginAccessIdentity,
    CloudFrontOriginAccessIdentityConfig,
    CustomErrorResponse,
    DefaultCacheBehavior,
    Distribution,
    DistributionConfig,
    LambdaFunctionAssociation,
    Origin,
    OriginRequestCookiesConfig,
    OriginRequestHeadersConfig,
    OriginRequestPolicy,
    OriginRequestPolicyConfig,
    OriginRequestQueryStringsConfig,
    ParametersInCacheKeyAndForwardedToOrigin,
    S3OriginConfig,
    ViewerCertificate,
)
from troposphere.iam import PolicyType, Role
from troposphere.logs import LogGroup
from troposphere.s3 import (
    AbortIncompleteMultipartUpload,
    Bucket,
    BucketEncryption,
    BucketPolicy,
    LifecycleConfiguration,
    LifecycleRule,
    OwnershipControls,
    OwnershipControlsRule,
    PublicAccessBlockConfiguration,
    ServerSideEncryptionByDefault,
    ServerSideEncryptionRule,
)

from . import edge_hook
from .config import CLOUDWATCH_LOGS_RETENTION_OPTIONS, EdgeConfig
from .exceptions import ConfigurationError
from .models import Method

PYTHON_RUNTIME = "python3.12"

# the only method sets a CloudFront cache behavior accepts without writes
CLOUDFRONT_METHOD_SETS = {
    frozenset({Method.GET, Method.HEAD}): ["GET", "HEAD"],
    frozenset({Method.GET, Method.HEAD, Method.OPTIONS}): ["GET", "HEAD", "OPTIONS"],
}


def add_condition(template, name, condition):
    template.add_condition(name, condition)
    return name


def add_mapping(template, name, mapping):
    template.add_mapping(name, mapping)
    return name


def pack_python_module(source: str) -> str:
    encoded = base64.b85encode(gzip.compress(source.encode("utf-8"))).decode("utf-8")
    return f"import base64,gzip;exec(gzip.decompress(base64.b85decode('{encoded}')))"


def cloudfront_methods(allowed_methods):
    try:
        return CLOUDFRONT_METHOD_SETS[frozenset(allowed_methods)]
    except KeyError:
        raise ConfigurationError(
            "CloudFront can only cache GET+HEAD or GET+HEAD+OPTIONS, got "
            + ", ".join(sorted(str(m) for m in allowed_methods))
        )


def generate_enforced_tls_statement(bucket_arn) -> Statement:
    return Statement(
        Effect=Deny,
        Principal=Principal(Everybody),
        Action=[s3.Action("*")],
        Resource=[
            bucket_arn,
            Join("/", [bucket_arn, "*"]),
        ],
        Condition=StatementCondition(
            Bool(SecureTransport, False),
        ),
    )


def add_content_bucket(template, bucket_name):
    """Private bucket plus the single identity allowed to read from it.

    There is no s3:ListBucket grant, so S3 answers 403 rather than 404 for
    missing keys. The distribution's custom error response relies on that.
    """
    bucket = template.add_resource(
        Bucket(
            "ContentBucket",
            BucketName=bucket_name or NoValue,
            LifecycleConfiguration=LifecycleConfiguration(
                Rules=[
                    LifecycleRule(
                        AbortIncompleteMultipartUpload=AbortIncompleteMultipartUpload(
                            DaysAfterInitiation=7
                        ),
                        Status="Enabled",
                    ),
                ]
            ),
            BucketEncryption=BucketEncryption(
                ServerSideEncryptionConfiguration=[
                    ServerSideEncryptionRule(
                        ServerSideEncryptionByDefault=ServerSideEncryptionByDefault(
                            # Origin Access Identities can't use KMS
                            SSEAlgorithm="AES256"
                        )
                    )
                ]
            ),
            OwnershipControls=OwnershipControls(
                Rules=[OwnershipControlsRule(ObjectOwnership="BucketOwnerEnforced")],
            ),
            PublicAccessBlockConfiguration=PublicAccessBlockConfiguration(
                BlockPublicAcls=True,
                BlockPublicPolicy=True,
                IgnorePublicAcls=True,
                RestrictPublicBuckets=True,
            ),
        )
    )

    identity = template.add_resource(
        CloudFrontOriginAccessIdentity(
            "CloudFrontIdentity",
            CloudFrontOriginAccessIdentityConfig=CloudFrontOriginAccessIdentityConfig(
                Comment=GetAtt(bucket, "Arn")
            ),
        )
    )

    bucket_policy = template.add_resource(
        BucketPolicy(
            "ContentBucketPolicy",
            Bucket=Ref(bucket),
            PolicyDocument=PolicyDocument(
                Version="2012-10-17",
                Statement=[
                    Statement(
                        Effect=Allow,
                        Principal=Principal(
                            "CanonicalUser", GetAtt(identity, "S3CanonicalUserId")
                        ),
                        Action=[s3.GetObject],
                        Resource=[Join("/", [GetAtt(bucket, "Arn"), "*"])],
                    ),
                    generate_enforced_tls_statement(GetAtt(bucket, "Arn")),
                ],
            ),
        )
    )
    return bucket, identity, bucket_policy


def add_cache_policies(template, min_ttl, default_ttl, max_ttl):
    # the key is method + path; nothing else is forwarded to the bucket either
    cache_policy = template.add_resource(
        CachePolicy(
            "CachePolicy",
            CachePolicyConfig=CachePolicyConfig(
                Name=Join("-", [StackName, "CachePolicy"]),
                MinTTL=min_ttl,
                DefaultTTL=default_ttl,
                MaxTTL=max_ttl,
                ParametersInCacheKeyAndForwardedToOrigin=ParametersInCacheKeyAndForwardedToOrigin(
                    EnableAcceptEncodingBrotli=True,
                    EnableAcceptEncodingGzip=True,
                    CookiesConfig=CacheCookiesConfig(CookieBehavior="none"),
                    HeadersConfig=CacheHeadersConfig(HeaderBehavior="none"),
                    QueryStringsConfig=CacheQueryStringsConfig(QueryStringBehavior="none"),
                ),
            ),
        )
    )
    origin_request_policy = template.add_resource(
        OriginRequestPolicy(
            "OriginRequestPolicy",
            OriginRequestPolicyConfig=OriginRequestPolicyConfig(
                Name=Join("-", [StackName, "OriginRequestPolicy"]),
                CookiesConfig=OriginRequestCookiesConfig(CookieBehavior="none"),
                HeadersConfig=OriginRequestHeadersConfig(HeaderBehavior="none"),
                QueryStringsConfig=OriginRequestQueryStringsConfig(
                    QueryStringBehavior="none"
                ),
            ),
        )
    )
    return cache_policy, origin_request_policy


def add_edge_hook(template, retention_days, retention_defined, precondition):
    """Lambda@Edge function carrying ``edge_hook``, and a Version named by its hash."""
    role = template.add_resource(
        Role(
            "EdgeHookRole",
            AssumeRolePolicyDocument=PolicyDocument(
                Version="2012-10-17",
                Statement=[
                    Statement(
                        Effect=Allow,
                        Principal=Principal(
                            "Service",
                            ["lambda.amazonaws.com", "edgelambda.amazonaws.com"],
                        ),
                        Action=[sts.AssumeRole],
                    )
                ],
            ),
        )
    )

    function = template.add_resource(
        Function(
            "EdgeHookFunction",
            Runtime=PYTHON_RUNTIME,
            Handler="index.{}".format(edge_hook.handler.__name__),
            Code=Code(ZipFile=pack_python_module(inspect.getsource(edge_hook))),
            MemorySize=128,
            Timeout=3,
            Role=GetAtt(role, "Arn"),
            DependsOn=[precondition],
        )
    )

    # replicas log to /aws/lambda/<region>.<name> in whichever region served the request
    log_group = template.add_resource(
        LogGroup(
            "EdgeHookLogGroup",
            LogGroupName=Join("", ["/aws/lambda/", Region, ".", Ref(function)]),
            RetentionInDays=If(retention_defined, retention_days, NoValue),
        )
    )

    replica_log_groups = Join(
        ":",
        [
            "arn",
            Partition,
            "logs",
            "*",
            AccountId,
            "log-group",
            Join("", ["/aws/lambda/*.", Ref(function)]),
            "*",
        ],
    )
    template.add_resource(
        PolicyType(
            "EdgeHookExecutionLogsPolicy",
            Roles=[Ref(role)],
            PolicyName="WriteExecutionLogs",
            PolicyDocument=PolicyDocument(
                Version="2012-10-17",
                Statement=[
                    Statement(
                        Effect=Allow,
                        Action=[logs.CreateLogGroup, logs.CreateLogStream, logs.PutLogEvents],
                        Resource=[replica_log_groups],
                    ),
                ],
            ),
        )
    )

    definition = json.dumps(function.to_dict(), sort_keys=True).encode("utf-8")
    version = template.add_resource(
        Version(
            "EdgeHookVersion" + hashlib.sha256(definition).hexdigest()[:10].upper(),
            FunctionName=GetAtt(function, "Arn"),
        )
    )
    return version, log_group


def create_template(config=None):
    """Desired state for the site.

    The certificate and the DNS zone are owned elsewhere: the stack takes an
    existing certificate ARN and publishes what alias records must point at.
    """
    config = (config or EdgeConfig()).validate()
    methods = cloudfront_methods(config.allowed_methods)
    mapping = config.error_mapping

    template = Template(
        Description=(
            "Static website served from S3 through CloudFront, "
            "with directory paths rewritten to index documents at the edge."
        )
    )

    partition_config = add_mapping(
        template,
        "PartitionConfig",
        {
            "aws": {
                # the region with the control plane for CloudFront and Lambda@Edge
                "PrimaryRegion": "us-east-1",
                "CloudFrontHostedZoneId": "Z2FDTNDATAQYW2",
            },
            "aws-cn": {
                "PrimaryRegion": "cn-north-1",
                "CloudFrontHostedZoneId": "Z3RFFRIM2A3IF5",
            },
        },
    )

    acm_certificate_arn = template.add_parameter(
        Parameter(
            "AcmCertificateArn",
            Description=(
                "Existing ACM certificate in the primary region covering DomainNames. "
                "Leave blank to serve on the default CloudFront domain only."
            ),
            Type="String",
            AllowedPattern="(arn:[^:]+:acm:[^:]+:[^:]+:certificate/.+|)",
            Default=config.acm_certificate_arn,
        )
    )

    hosted_zone_id = template.add_parameter(
        Parameter(
            "HostedZoneId",
            Description=(
                "Route 53 zone where the alias records for DomainNames are kept. "
                "Only echoed in the outputs; records are managed outside this stack."
            ),
            Type="String",
            AllowedPattern="(Z[A-Z0-9]+|)",
            Default=config.hosted_zone_id,
        )
    )

    dns_names = template.add_parameter(
        Parameter(
            "DomainNames",
            Description="Comma-separated list of domain names the distribution answers for.",
            Type="CommaDelimitedList",
            Default=",".join(config.domain_names),
        )
    )

    tls_protocol_version = template.add_parameter(
        Parameter(
            "TlsProtocolVersion",
            Description="CloudFront TLS security policy; see https://amzn.to/2DR91Xq for details.",
            Type="String",
            Default="TLSv1.2_2021",
        )
    )

    log_retention_days = template.add_parameter(
        Parameter(
            "LogRetentionDays",
            Description="Days to keep edge function logs. 0 means indefinite retention.",
            Type="Number",
            AllowedValues=[0] + CLOUDWATCH_LOGS_RETENTION_OPTIONS,
            Default=config.log_retention_days,
        )
    )

    ttl_parameters = [
        template.add_parameter(
            Parameter(name, Description=description, Type="Number", MinValue=0, Default=value)
        )
        for name, description, value in (
            (
                "MinTtlSeconds",
                "Lower bound on cache time-to-live, even when S3 object headers ask for less.",
                config.ttl.min_ttl,
            ),
            (
                "DefaultTtlSeconds",
                "Cache time-to-live when not set by S3 object headers.",
                config.ttl.default_ttl,
            ),
            (
                "MaxTtlSeconds",
                "Upper bound on cache time-to-live. "
                "Setting all three TTLs to 0 sends every request to S3.",
                config.ttl.max_ttl,
            ),
        )
    ]
    min_ttl, default_ttl, max_ttl = [Ref(parameter) for parameter in ttl_parameters]

    retention_defined = add_condition(
        template, "RetentionDefined", Not(Equals(Ref(log_retention_days), 0))
    )
    using_acm_certificate = add_condition(
        template, "UsingAcmCertificate", Not(Equals(Ref(acm_certificate_arn), ""))
    )
    using_hosted_zone = add_condition(
        template, "UsingHostedZone", Not(Equals(Ref(hosted_zone_id), ""))
    )
    using_dns_names = add_condition(
        template, "UsingDnsNames", Not(Equals(Select(0, Ref(dns_names)), ""))
    )
    is_primary_region = add_condition(
        template,
        "IsPrimaryRegion",
        Equals(Region, FindInMap(partition_config, Partition, "PrimaryRegion")),
    )

    # Lambda@Edge only deploys from the primary region
    precondition_region_is_primary = template.add_resource(
        WaitConditionHandle(
            "PreconditionIsPrimaryRegionForPartition",
            Condition=is_primary_region,
        )
    )

    bucket, origin_access_identity, bucket_policy = add_content_bucket(
        template, config.bucket_name
    )
    cache_policy, origin_request_policy = add_cache_policies(
        template, min_ttl, default_ttl, max_ttl
    )
    edge_hook_version, edge_hook_log_group = add_edge_hook(
        template,
        Ref(log_retention_days),
        retention_defined,
        precondition_region_is_primary,
    )

    distribution = template.add_resource(
        Distribution(
            "ContentDistribution",
            DistributionConfig=DistributionConfig(
                Enabled=True,
                Aliases=If(using_dns_names, Ref(dns_names), NoValue),
                DefaultRootObject=edge_hook.INDEX_DOCUMENT,
                Origins=[
                    Origin(
                        Id="default",
                        DomainName=GetAtt(bucket, "RegionalDomainName"),
                        S3OriginConfig=S3OriginConfig(
                            OriginAccessIdentity=Join(
                                "",
                                [
                                    "origin-access-identity/cloudfront/",
                                    Ref(origin_access_identity),
                                ],
                            )
                        ),
                    )
                ],
                DefaultCacheBehavior=DefaultCacheBehavior(
                    TargetOriginId="default",
                    AllowedMethods=methods,
                    CachedMethods=methods,
                    CachePolicyId=Ref(cache_policy),
                    OriginRequestPolicyId=Ref(origin_request_policy),
                    Compress=True,
                    ViewerProtocolPolicy="redirect-to-https",
                    # origin-request only fires on a cache miss, after the key is computed
                    LambdaFunctionAssociations=[
                        LambdaFunctionAssociation(
                            EventType="origin-request",
                            LambdaFunctionARN=Ref(edge_hook_version),
                        )
                    ],
                ),
                CustomErrorResponses=[
                    CustomErrorResponse(
                        ErrorCode=mapping.origin_status,
                        ResponseCode=mapping.response_status,
                        ResponsePagePath=mapping.substitute_path,
                        ErrorCachingMinTTL=min_ttl,
                    ),
                ],
                HttpVersion="http2",
                IPV6Enabled=True,
                ViewerCertificate=ViewerCertificate(
                    AcmCertificateArn=If(
                        using_acm_certificate, Ref(acm_certificate_arn), NoValue
                    ),
                    SslSupportMethod=If(using_acm_certificate, "sni-only", NoValue),
                    CloudFrontDefaultCertificate=If(using_acm_certificate, NoValue, True),
                    MinimumProtocolVersion=Ref(tls_protocol_version),
                ),
                PriceClass="PriceClass_All",
            ),
            DependsOn=[precondition_region_is_primary, bucket_policy, edge_hook_log_group],
        )
    )

    template.add_output(Output("DistributionId", Value=Ref(distribution)))

    template.add_output(
        Output("DistributionDomain", Value=GetAtt(distribution, "DomainName"))
    )

    template.add_output(
        Output(
            "DistributionUrl",
            Value=Join("", ["https://", GetAtt(distribution, "DomainName"), "/"]),
        )
    )

    # what plain A/AAAA alias records for DomainNames must point at
    template.add_output(
        Output(
            "AliasTargetDnsName",
            Description="Alias target for A and AAAA records; no health checks or weighting.",
            Value=GetAtt(distribution, "DomainName"),
        )
    )

    template.add_output(
        Output(
            "AliasTargetHostedZoneId",
            Value=FindInMap(partition_config, Partition, "CloudFrontHostedZoneId"),
        )
    )

    template.add_output(
        Output(
            "AliasRecordsHostedZoneId",
            Value=Ref(hosted_zone_id),
            Condition=using_hosted_zone,
        )
    )

    template.add_output(Output("EdgeHookVersionArn", Value=Ref(edge_hook_version)))

    template.add_output(Output("ContentBucketArn", Value=GetAtt(bucket, "Arn")))

    template.add_output(Output("ContentBucketName", Value=Ref(bucket)))

    return template
