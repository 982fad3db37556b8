"""Secrets from AWS SSM Parameter Store.

The processor API key and the webhook signing secret are read from
SecureString parameters under ``/payrecon/{environment}/`` when the
environment does not provide them. Values are cached for the life of the
process.
"""

from functools import lru_cache

import boto3
from botocore.exceptions import ClientError

from payrecon.utils.logging import get_logger

logger = get_logger(__name__)

_FAILURE_HINTS = {
    "ParameterNotFound": "SSM parameter not found: {name}",
    "AccessDeniedException": (
        "Access denied to SSM parameter: {name}. Check IAM permissions for ssm:GetParameter."
    ),
}


class SSMServiceError(Exception):
    """Raised when a parameter cannot be read."""


class SSMService:
    """Reads and caches decrypted SSM parameters.

    Usage:
        secret = get_ssm_service().get_parameter("/payrecon/dev/stripe/webhook_secret")
    """

    def __init__(self) -> None:
        self._client = boto3.client("ssm")
        self._values: dict[str, str] = {}

    def get_parameter(self, name: str, *, use_cache: bool = True) -> str:
        """Return the decrypted value of a parameter.

        Args:
            name: Full parameter path
            use_cache: Serve a previously read value without calling SSM

        Raises:
            SSMServiceError: If the parameter is missing, not readable, or
                the call fails
        """
        if use_cache and name in self._values:
            return self._values[name]

        logger.info("Fetching SSM parameter: %s", name)
        try:
            parameter = self._client.get_parameter(Name=name, WithDecryption=True)["Parameter"]
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            hint = _FAILURE_HINTS.get(code, "Failed to retrieve SSM parameter {name}: {error}")
            raise SSMServiceError(hint.format(name=name, error=e)) from e

        self._values[name] = parameter["Value"]
        return self._values[name]

    def clear_cache(self) -> None:
        self._values.clear()


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    return SSMService()
