"""
Live, read-only credential checks — one per provider.

Each validator makes the cheapest authenticated call its provider offers and
reports whether it succeeded. Expected authentication failures come back as
``ValidationResult(valid=False, error=...)``; only a credential set missing
required fields raises.

Usage:
    from clusterplane.validators import validate

    result = await validate("aws", {"access_key_id": ..., "secret_access_key": ...})
    if not result.valid:
        print(result.error)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import asyncssh
import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from clusterplane.config import get_config
from clusterplane.models import ProviderKind
from clusterplane.providers.azure import (
    ARM_URL,
    RESOURCES_API_VERSION,
    AzureApiError,
    acquire_token,
    error_message,
)
from clusterplane.providers.gcp import SCOPES, load_service_account_info
from clusterplane.providers.ssh import run_command

logger = logging.getLogger(__name__)

PROBE_COMMAND = 'echo "Connection Successful"'
PROBE_OUTPUT = "Connection Successful"


@dataclass
class ValidationResult:
    valid: bool
    identity: str | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def aws_error_message(error: Exception) -> str:
    """Map an AWS error to an operator-facing message."""
    code = ""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
    if code in ("AccessDenied", "AccessDeniedException"):
        return f"AWS Authorization Failed: IAM user missing permissions. {error}"
    if code in ("AuthFailure", "InvalidClientTokenId", "UnrecognizedClientException"):
        return "AWS Authentication Failed: Invalid Access Key ID or Secret Access Key."
    if code == "SignatureDoesNotMatch":
        return "AWS Authentication Failed: Invalid Secret Access Key."
    if code in ("RequestExpired", "SignatureExpired"):
        return "AWS Authentication Failed: Request expired, check the system clock."
    return f"AWS Error: {error}"


async def validate_aws(
    access_key_id: str,
    secret_access_key: str,
    region: str = "us-east-1",
    session_token: str | None = None,
    *,
    timeout: float = 5.0,
) -> ValidationResult:
    logger.info("Validating AWS credentials (region %s)", region)

    def _caller_identity() -> dict[str, Any]:
        sts = boto3.client(
            "sts",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            aws_session_token=session_token,
            config=BotoConfig(connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 1}),
        )
        return sts.get_caller_identity()

    try:
        response = await asyncio.to_thread(_caller_identity)
    except (BotoCoreError, ClientError) as e:
        logger.warning("AWS validation failed: %s", e)
        return ValidationResult(valid=False, error=aws_error_message(e))

    logger.info("AWS validation succeeded for account %s", response.get("Account"))
    return ValidationResult(
        valid=True,
        identity=f"AWS Account: {response.get('Account')}",
        details={"arn": response.get("Arn"), "user_id": response.get("UserId")},
    )


async def validate_azure(
    tenant_id: str,
    client_id: str,
    client_secret: str,
    subscription_id: str,
    *,
    timeout: float = 5.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ValidationResult:
    logger.info("Validating Azure credentials (subscription %s)", subscription_id)
    try:
        async with httpx.AsyncClient(base_url=ARM_URL, timeout=timeout, transport=transport) as client:
            token = await acquire_token(client, tenant_id, client_id, client_secret)
            response = await client.get(
                f"/subscriptions/{subscription_id}/resourcegroups",
                params={"api-version": RESOURCES_API_VERSION, "$top": 1},
                headers={"Authorization": f"Bearer {token}"},
            )
            if response.is_error:
                raise AzureApiError(response.status_code, error_message(response))
    except (httpx.HTTPError, AzureApiError) as e:
        logger.warning("Azure validation failed: %s", e)
        return ValidationResult(valid=False, error=f"Azure Error: {e}")

    return ValidationResult(valid=True, identity=f"Azure Sub: {subscription_id}")


def _refresh_gcp_token(info: dict[str, Any]) -> str | None:
    credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
    credentials.refresh(GoogleAuthRequest())
    return credentials.token


async def validate_gcp(
    project_id: str, service_account_key: str | dict[str, Any], *, timeout: float = 5.0
) -> ValidationResult:
    logger.info("Validating GCP credentials (project %s)", project_id)
    try:
        info = load_service_account_info(service_account_key)
    except ValueError as e:
        return ValidationResult(valid=False, error=str(e))

    key_project = info.get("project_id")
    if key_project and key_project != project_id:
        return ValidationResult(
            valid=False,
            error=f"Key Project ID ({key_project}) does not match provided Project ID ({project_id})",
        )

    try:
        token = await asyncio.wait_for(asyncio.to_thread(_refresh_gcp_token, info), timeout)
    except (GoogleAuthError, ValueError, TimeoutError) as e:
        logger.warning("GCP validation failed: %s", e)
        return ValidationResult(valid=False, error=f"GCP Error: {e}")
    if not token:
        return ValidationResult(valid=False, error="GCP Error: Failed to retrieve access token")

    return ValidationResult(
        valid=True,
        identity=f"GCP Project: {project_id} ({info.get('client_email')})",
    )


async def validate_onprem(
    host: str, user: str, ssh_key: str, port: int = 22, *, timeout: float = 5.0
) -> ValidationResult:
    logger.info("Validating on-prem SSH access to %s@%s", user, host)
    try:
        result = await run_command(host, user, ssh_key, PROBE_COMMAND, port=port, timeout=timeout)
    except (asyncssh.Error, OSError, TimeoutError, ValueError) as e:
        logger.warning("On-prem validation failed for %s: %s", host, e)
        return ValidationResult(valid=False, error=f"SSH Connection Failed: {e}")

    if result.stdout.strip() != PROBE_OUTPUT:
        return ValidationResult(valid=False, error="SSH connected but command execution failed")
    return ValidationResult(valid=True, identity=f"{user}@{host}")


async def validate(
    provider: str | ProviderKind, raw: dict[str, Any], timeout: float | None = None
) -> ValidationResult:
    """Check *raw* against the provider's live API.

    Raises UnsupportedProvider or MissingCredentialFields before any network
    call; everything else is reported through the result.
    """
    kind = ProviderKind.parse(provider)
    kind.check_fields(raw)
    if timeout is None:
        timeout = get_config().timeouts.validation

    if kind is ProviderKind.AWS:
        return await validate_aws(
            raw["access_key_id"],
            raw["secret_access_key"],
            raw.get("region") or kind.default_region,
            raw.get("session_token"),
            timeout=timeout,
        )
    if kind is ProviderKind.AZURE:
        return await validate_azure(
            raw["tenant_id"],
            raw["client_id"],
            raw["client_secret"],
            raw["subscription_id"],
            timeout=timeout,
        )
    if kind is ProviderKind.GCP:
        return await validate_gcp(raw["project_id"], raw["service_account_key"], timeout=timeout)
    return await validate_onprem(
        raw["host"], raw["user"], raw["ssh_key"], int(raw.get("port") or 22), timeout=timeout
    )
