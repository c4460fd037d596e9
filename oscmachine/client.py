"""Compute API client construction and error classification."""

from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import MissingCredentialsError

NOT_FOUND_CODES = {
    "InvalidInstanceID.NotFound",
    "InvalidKeyPair.NotFound",
    "InvalidGroup.NotFound",
    "InvalidAssociationID.NotFound",
    "InvalidAllocationID.NotFound",
}

DUPLICATE_CODES = {
    "InvalidGroup.Duplicate",
    "InvalidPermission.Duplicate",
    "InvalidKeyPair.Duplicate",
}

# Errors a compute API call may raise; anything else is a programming error.
SDK_ERRORS = (ClientError, BotoCoreError)


class Ec2Client(Protocol):
    """The EC2-compatible operations the driver depends on.

    Matches the boto3 ``ec2`` client so a real client or a test fake can be
    passed wherever the driver needs one.
    """

    def describe_subnets(self, **kwargs: Any) -> dict: ...

    def describe_images(self, **kwargs: Any) -> dict: ...

    def describe_instances(self, **kwargs: Any) -> dict: ...

    def describe_security_groups(self, **kwargs: Any) -> dict: ...

    def create_security_group(self, **kwargs: Any) -> dict: ...

    def authorize_security_group_ingress(self, **kwargs: Any) -> dict: ...

    def create_tags(self, **kwargs: Any) -> dict: ...

    def run_instances(self, **kwargs: Any) -> dict: ...

    def terminate_instances(self, **kwargs: Any) -> dict: ...

    def start_instances(self, **kwargs: Any) -> dict: ...

    def stop_instances(self, **kwargs: Any) -> dict: ...

    def reboot_instances(self, **kwargs: Any) -> dict: ...

    def allocate_address(self, **kwargs: Any) -> dict: ...

    def associate_address(self, **kwargs: Any) -> dict: ...

    def disassociate_address(self, **kwargs: Any) -> dict: ...

    def release_address(self, **kwargs: Any) -> dict: ...

    def modify_instance_metadata_options(self, **kwargs: Any) -> dict: ...

    def import_key_pair(self, **kwargs: Any) -> dict: ...

    def delete_key_pair(self, **kwargs: Any) -> dict: ...

    def describe_account_attributes(self, **kwargs: Any) -> dict: ...


def normalize_endpoint(endpoint: str) -> str:
    """Accept a bare hostname or a fully qualified URL."""
    if "://" not in endpoint:
        return f"https://{endpoint}"
    return endpoint


def get_session(
    access_key: str | None,
    secret_key: str | None,
    session_token: str | None = None,
    region: str | None = None,
) -> boto3.Session:
    return boto3.Session(
        aws_access_key_id=access_key or None,
        aws_secret_access_key=secret_key or None,
        aws_session_token=session_token or None,
        region_name=region or None,
    )


def check_credentials(session: boto3.Session) -> None:
    """:raises MissingCredentialsError: If no usable credentials resolve"""
    credentials = session.get_credentials()
    if credentials is None or not credentials.access_key or not credentials.secret_key:
        raise MissingCredentialsError()


def build_client(
    *,
    access_key: str | None,
    secret_key: str | None,
    session_token: str | None = None,
    region: str,
    retry_count: int = 5,
    endpoint: str | None = None,
) -> Ec2Client:
    """Create an EC2 client with the configured credentials, retries and endpoint.

    :param retry_count: Retries for recoverable failures (negative disables them)
    :param endpoint: Optional endpoint (hostname only or fully qualified URL)
    """
    session = get_session(access_key, secret_key, session_token, region)
    config = Config(retries={"max_attempts": max(retry_count, 0), "mode": "legacy"})
    kwargs: dict[str, Any] = {"region_name": region, "config": config}
    if endpoint:
        kwargs["endpoint_url"] = normalize_endpoint(endpoint)
    return session.client("ec2", **kwargs)


def error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def error_message(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message", "") or str(exc)
    return str(exc)


def is_not_found(exc: Exception) -> bool:
    """True for "does not exist" answers, including free-text gateway replies."""
    if error_code(exc) in NOT_FOUND_CODES:
        return True
    message = error_message(exc)
    return message.startswith("unknown instance") or message.startswith(
        "InvalidInstanceID.NotFound"
    )


def is_duplicate(exc: Exception) -> bool:
    """True for "already exists" answers."""
    return error_code(exc) in DUPLICATE_CODES or "already exists" in error_message(exc)
