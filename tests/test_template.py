import base64
import gzip
import inspect
import json
import re

import pytest

from edge_static_site import edge_hook, main
from edge_static_site.cache import TtlPolicy
from edge_static_site.config import EdgeConfig
from edge_static_site.exceptions import ConfigurationError
from edge_static_site.models import ErrorMapping, Method
from edge_static_site.template import create_template, pack_python_module


def render(config=None):
    return json.loads(create_template(config).to_json())


@pytest.fixture(scope="module")
def template():
    return render()


def find_resource(template, prefix):
    matches = [name for name in template["Resources"] if name.startswith(prefix)]
    assert len(matches) == 1, matches
    return template["Resources"][matches[0]]


def distribution_config(template):
    return template["Resources"]["ContentDistribution"]["Properties"]["DistributionConfig"]


def test_pack_python_module_round_trip():
    packed = pack_python_module("x = 1\n")
    encoded = re.search(r"b85decode\('(.+)'\)", packed).group(1)
    assert gzip.decompress(base64.b85decode(encoded)).decode("utf-8") == "x = 1\n"


def test_edge_hook_is_deployed_as_origin_request_trigger(template):
    behavior = distribution_config(template)["DefaultCacheBehavior"]
    (association,) = behavior["LambdaFunctionAssociations"]
    assert association["EventType"] == "origin-request"
    assert association["LambdaFunctionARN"]["Ref"].startswith("EdgeHookVersion")


def test_edge_hook_code_is_the_rewrite_module(template):
    function = template["Resources"]["EdgeHookFunction"]["Properties"]
    assert function["Handler"] == "index.handler"
    code = function["Code"]["ZipFile"]
    assert len(code) <= 4096
    encoded = re.search(r"b85decode\('(.+)'\)", code).group(1)
    assert gzip.decompress(base64.b85decode(encoded)).decode("utf-8") == inspect.getsource(
        edge_hook
    )


def test_cache_key_excludes_query_cookies_and_headers(template):
    config = template["Resources"]["CachePolicy"]["Properties"]["CachePolicyConfig"]
    params = config["ParametersInCacheKeyAndForwardedToOrigin"]
    assert params["QueryStringsConfig"] == {"QueryStringBehavior": "none"}
    assert params["CookiesConfig"] == {"CookieBehavior": "none"}
    assert params["HeadersConfig"] == {"HeaderBehavior": "none"}
    assert config["MinTTL"] == {"Ref": "MinTtlSeconds"}
    assert config["DefaultTTL"] == {"Ref": "DefaultTtlSeconds"}
    assert config["MaxTTL"] == {"Ref": "MaxTtlSeconds"}


def test_origin_requests_forward_nothing(template):
    config = template["Resources"]["OriginRequestPolicy"]["Properties"][
        "OriginRequestPolicyConfig"
    ]
    assert config["QueryStringsConfig"] == {"QueryStringBehavior": "none"}
    assert config["CookiesConfig"] == {"CookieBehavior": "none"}


def test_allowed_methods(template):
    behavior = distribution_config(template)["DefaultCacheBehavior"]
    assert behavior["AllowedMethods"] == ["GET", "HEAD", "OPTIONS"]
    assert behavior["CachedMethods"] == ["GET", "HEAD", "OPTIONS"]


def test_get_head_only():
    config = EdgeConfig(allowed_methods=frozenset({Method.GET, Method.HEAD}))
    behavior = distribution_config(render(config))["DefaultCacheBehavior"]
    assert behavior["AllowedMethods"] == ["GET", "HEAD"]


def test_unsupported_method_set():
    with pytest.raises(ConfigurationError, match="CloudFront can only cache"):
        create_template(EdgeConfig(allowed_methods=frozenset({Method.GET})))


def test_error_mapping(template):
    (error_response,) = distribution_config(template)["CustomErrorResponses"]
    assert error_response["ErrorCode"] == 403
    assert error_response["ResponseCode"] == 404
    assert error_response["ResponsePagePath"] == "/404.html"


def test_custom_error_mapping():
    config = EdgeConfig(error_mapping=ErrorMapping(substitute_path="/errors/missing.html"))
    (error_response,) = distribution_config(render(config))["CustomErrorResponses"]
    assert error_response["ResponsePagePath"] == "/errors/missing.html"


def test_bucket_readable_only_by_distribution_identity(template):
    bucket = template["Resources"]["ContentBucket"]["Properties"]
    assert bucket["PublicAccessBlockConfiguration"] == {
        "BlockPublicAcls": True,
        "BlockPublicPolicy": True,
        "IgnorePublicAcls": True,
        "RestrictPublicBuckets": True,
    }
    statements = template["Resources"]["ContentBucketPolicy"]["Properties"][
        "PolicyDocument"
    ]["Statement"]
    allows = [s for s in statements if s["Effect"] == "Allow"]
    assert len(allows) == 1
    assert allows[0]["Action"] == ["s3:GetObject"]
    assert allows[0]["Principal"] == {
        "CanonicalUser": {"Fn::GetAtt": ["CloudFrontIdentity", "S3CanonicalUserId"]}
    }
    assert all(s["Effect"] == "Deny" for s in statements if s is not allows[0])


def test_certificate_and_dns_records_are_not_provisioned(template):
    types = {resource["Type"] for resource in template["Resources"].values()}
    assert "AWS::CertificateManager::Certificate" not in types
    assert not any(t.startswith("AWS::Route53::") for t in types)
    assert "CreateDnsRecords" not in template["Parameters"]


def test_viewer_certificate_uses_existing_arn(template):
    viewer = distribution_config(template)["ViewerCertificate"]
    assert viewer["AcmCertificateArn"] == {
        "Fn::If": ["UsingAcmCertificate", {"Ref": "AcmCertificateArn"}, {"Ref": "AWS::NoValue"}]
    }
    assert viewer["CloudFrontDefaultCertificate"] == {
        "Fn::If": ["UsingAcmCertificate", {"Ref": "AWS::NoValue"}, True]
    }


def test_outputs_describe_alias_target(template):
    outputs = template["Outputs"]
    assert outputs["AliasTargetDnsName"]["Value"] == {
        "Fn::GetAtt": ["ContentDistribution", "DomainName"]
    }
    assert outputs["AliasTargetHostedZoneId"]["Value"] == {
        "Fn::FindInMap": ["PartitionConfig", {"Ref": "AWS::Partition"}, "CloudFrontHostedZoneId"]
    }
    assert outputs["AliasRecordsHostedZoneId"]["Condition"] == "UsingHostedZone"
    assert template["Mappings"]["PartitionConfig"]["aws"]["CloudFrontHostedZoneId"] == (
        "Z2FDTNDATAQYW2"
    )


def test_parameter_defaults_follow_config():
    config = EdgeConfig(
        domain_names=("example.com",),
        ttl=TtlPolicy(0, 0, 0),
        log_retention_days=30,
    )
    parameters = render(config)["Parameters"]
    assert parameters["DomainNames"]["Default"] == "example.com"
    assert parameters["MinTtlSeconds"]["Default"] == 0
    assert parameters["DefaultTtlSeconds"]["Default"] == 0
    assert parameters["MaxTtlSeconds"]["Default"] == 0
    assert parameters["LogRetentionDays"]["Default"] == 30


def test_version_name_tracks_function_definition(template):
    versions = [name for name in template["Resources"] if name.startswith("EdgeHookVersion")]
    assert len(versions) == 1
    assert versions == [
        name for name in render()["Resources"] if name.startswith("EdgeHookVersion")
    ]


def test_main_prints_template(capsys, monkeypatch):
    monkeypatch.delenv("EDGE_DOMAIN_NAMES", raising=False)
    main(["template", "--minify"])
    output = capsys.readouterr().out
    assert "\n" not in output.strip()
    assert "ContentDistribution" in json.loads(output)["Resources"]


def test_main_defaults_to_template(capsys):
    main([])
    assert "Resources" in json.loads(capsys.readouterr().out)


def test_main_rewrite(capsys):
    main(["rewrite", "/", "/docs", "/app.js"])
    assert capsys.readouterr().out.splitlines() == [
        "/ -> /index.html",
        "/docs -> /docs/index.html",
        "/app.js -> /app.js",
    ]
