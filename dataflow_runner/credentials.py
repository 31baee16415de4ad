"""
AWS credential resolution.

A record's credentials block selects exactly one provider:

- ``iam`` / ``iam``: the EC2 instance role
- ``env`` / ``env``: AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY
- anything else: a static access key and secret
"""

from enum import Enum

import boto3
import botocore.session
from botocore.credentials import (
    CredentialResolver,
    EnvProvider,
    InstanceMetadataFetcher,
    InstanceMetadataProvider,
)

from .errors import ConfigError

IAM = "iam"
ENV = "env"


class CredentialsKind(str, Enum):
    IAM = "iam"
    ENV = "env"
    STATIC = "static"


def credentials_kind(access_key_id: str, secret_access_key: str) -> CredentialsKind:
    """Decide which provider a pair of selector strings asks for."""
    if access_key_id == IAM and secret_access_key == IAM:
        return CredentialsKind.IAM
    if access_key_id == IAM or secret_access_key == IAM:
        raise ConfigError("access-key and secret-key must both be set to 'iam', or neither")
    if access_key_id == ENV and secret_access_key == ENV:
        return CredentialsKind.ENV
    if access_key_id == ENV or secret_access_key == ENV:
        raise ConfigError("access-key and secret-key must both be set to 'env', or neither")
    return CredentialsKind.STATIC


def _single_provider_session(provider, region: str) -> boto3.Session:
    core = botocore.session.get_session()
    core.register_component("credential_provider", CredentialResolver(providers=[provider]))
    return boto3.Session(botocore_session=core, region_name=region)


def get_aws_session(access_key_id: str, secret_access_key: str, region: str) -> boto3.Session:
    """Build a boto3 session backed by exactly one credential provider."""
    kind = credentials_kind(access_key_id, secret_access_key)

    if kind == CredentialsKind.IAM:
        fetcher = InstanceMetadataFetcher(timeout=1, num_attempts=2)
        return _single_provider_session(InstanceMetadataProvider(iam_role_fetcher=fetcher), region)
    if kind == CredentialsKind.ENV:
        return _single_provider_session(EnvProvider(), region)
    return boto3.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        region_name=region,
    )
