"""AWS session configuration."""

import configparser
import os

import boto3
from botocore.exceptions import ClientError
from dotenv import load_dotenv

from .errors import ConfigurationError, error_code
from .utils import log

DEFAULT_REGION = "us-east-1"


def _available_profiles() -> set[str]:
    profiles = set()
    for path in ["~/.aws/credentials", "~/.aws/config"]:
        path = os.path.expanduser(path)
        if os.path.exists(path):
            cfg = configparser.ConfigParser()
            cfg.read(path)
            for section in cfg.sections():
                if section.startswith("profile "):
                    profiles.add(section[8:])
                else:
                    profiles.add(section)
    return profiles


def get_aws_config(
    *,
    region: str | None = None,
    aws_profile: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
) -> dict:
    """Load AWS configuration for boto3 session initialization.

    Explicit keys win over a named profile; a named profile is only used when
    it exists in the local AWS config files. Does not validate credentials,
    call check_aws_auth() for that.

    :param region: Explicit region (overrides CLAWSTER_AWS_REGION / AWS_REGION)
    :param aws_profile: Explicit AWS profile name (overrides AWS_PROFILE)
    :return: Keyword arguments for boto3.Session()
    """
    load_dotenv()

    aws_config = {}
    if access_key_id and secret_access_key:
        aws_config["aws_access_key_id"] = access_key_id
        aws_config["aws_secret_access_key"] = secret_access_key
    elif access_key_id or secret_access_key:
        raise ConfigurationError("Both access_key_id and secret_access_key are required")
    else:
        profile_name = (
            aws_profile or os.getenv("CLAWSTER_AWS_PROFILE") or os.getenv("AWS_PROFILE")
        )
        if profile_name:
            if profile_name in _available_profiles():
                aws_config["profile_name"] = profile_name
            else:
                log(f"AWS profile '{profile_name}' not found, using default credential chain...")
                os.environ.pop("AWS_PROFILE", None)

    aws_config["region_name"] = (
        region or os.getenv("CLAWSTER_AWS_REGION") or os.getenv("AWS_REGION") or DEFAULT_REGION
    )
    return aws_config


def get_session(config: dict | None = None) -> boto3.Session:
    """Build a boto3 session from a target config dict."""
    config = config or {}
    aws_config = get_aws_config(
        region=config.get("region"),
        aws_profile=config.get("aws_profile"),
        access_key_id=config.get("access_key_id"),
        secret_access_key=config.get("secret_access_key"),
    )
    return boto3.Session(**aws_config)


def check_aws_auth(session: boto3.Session) -> str:
    """Validate AWS credentials, fail fast with a clear error if expired or invalid.

    :return: Caller identity ARN
    :raises ConfigurationError: If credentials are missing, expired, or invalid
    """
    try:
        identity = session.client("sts").get_caller_identity()
    except ClientError as e:
        code = error_code(e)
        if code in ("ExpiredToken", "ExpiredTokenException"):
            profile = session.profile_name
            login_cmd = f"aws sso login --profile {profile}" if profile else "aws sso login"
            raise ConfigurationError(f"AWS credentials expired. Run:\n  {login_cmd}") from e
        raise ConfigurationError(f"AWS authentication failed ({code}): {e}") from e
    return identity["Arn"]
