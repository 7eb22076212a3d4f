"""Credentials and endpoint configuration.

Credentials come from the process environment merged over the first
``ibm-credentials.env`` file found in the search order:

1. ``${IBM_CREDENTIALS_FILE}``
2. ``~/ibm-credentials.env``
3. ``./ibm-credentials.env``

The file uses dotenv format::

    IBMCLOUD_AUTH_TYPE=iam
    IBMCLOUD_APIKEY=xxxxxxxxxxxxx
    IBMCLOUD_AUTH_URL=https://iam.cloud.ibm.com

Endpoints come from ``~/.capibm/defaults.toml`` (global) and ``capibm.toml``
(project), project values winning.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Literal, TypeAlias

from dotenv import dotenv_values

from capibm.errors import ConfigurationError
from capibm.infra.http import Auth, BearerAuth, IAMAuth

RawConfig: TypeAlias = dict[str, Any]

CREDENTIALS_FILE_NAME = "ibm-credentials.env"
GLOBAL_CONFIG_PATH = Path.home() / ".capibm" / "defaults.toml"
PROJECT_CONFIG_NAME = "capibm.toml"
DEFAULT_AUTH_URL = "https://iam.cloud.ibm.com"

_ENV_PREFIX = "IBMCLOUD_"


# =============================================================================
# Credentials
# =============================================================================


@dataclass(frozen=True, slots=True)
class IAMCredentials:
    """API key exchanged for short-lived IAM bearer tokens."""

    api_key: str
    auth_url: str = DEFAULT_AUTH_URL
    kind: Literal["iam"] = "iam"

    def __repr__(self) -> str:
        return f"IAMCredentials(api_key=***, auth_url={self.auth_url!r})"


@dataclass(frozen=True, slots=True)
class BearerTokenCredentials:
    """A pre-issued bearer token, used as-is."""

    token: str
    kind: Literal["bearertoken"] = "bearertoken"

    def __repr__(self) -> str:
        return "BearerTokenCredentials(token=***)"


Credentials: TypeAlias = IAMCredentials | BearerTokenCredentials


def credential_search_path(env: Mapping[str, str]) -> list[Path]:
    paths: list[Path] = []
    if explicit := env.get("IBM_CREDENTIALS_FILE"):
        paths.append(Path(explicit))
    paths.append(Path.home() / CREDENTIALS_FILE_NAME)
    paths.append(Path.cwd() / CREDENTIALS_FILE_NAME)
    return paths


def _read_credentials_file(paths: list[Path]) -> dict[str, str]:
    for path in paths:
        if path.is_file():
            return {k: v for k, v in dotenv_values(path).items() if v is not None}
    return {}


def load_credentials(
    env: Mapping[str, str] | None = None,
    *,
    search_path: list[Path] | None = None,
) -> Credentials:
    """Load and validate credentials before any resource operation.

    Raises:
        ConfigurationError: Unsupported authentication type or missing secret.
    """
    environ = dict(os.environ if env is None else env)
    values = _read_credentials_file(search_path or credential_search_path(environ))
    values.update({k: v for k, v in environ.items() if k.startswith(_ENV_PREFIX)})

    auth_type = values.get("IBMCLOUD_AUTH_TYPE", "iam").strip().lower()
    match auth_type:
        case "iam":
            api_key = values.get("IBMCLOUD_APIKEY", "").strip()
            if not api_key:
                raise ConfigurationError("IBMCLOUD_APIKEY is required for IAM authentication")
            return IAMCredentials(
                api_key=api_key,
                auth_url=values.get("IBMCLOUD_AUTH_URL") or DEFAULT_AUTH_URL,
            )
        case "bearertoken" | "bearer_token":
            token = values.get("IBMCLOUD_BEARER_TOKEN", "").strip()
            if not token:
                raise ConfigurationError(
                    "IBMCLOUD_BEARER_TOKEN is required for bearer token authentication"
                )
            return BearerTokenCredentials(token=token)
        case _:
            raise ConfigurationError(
                f"unsupported authentication type {auth_type!r}; "
                "only 'iam' and 'bearertoken' are supported"
            )


def auth_for(credentials: Credentials, *, timeout: float = 30) -> Auth:
    match credentials:
        case IAMCredentials(api_key=api_key, auth_url=auth_url):
            return IAMAuth(api_key, auth_url, timeout=timeout)
        case BearerTokenCredentials(token=token):
            return BearerAuth(token)


# =============================================================================
# Endpoints
# =============================================================================


@dataclass(frozen=True, slots=True)
class CloudConfig:
    """Endpoint and request settings for one reconcile scope.

    Args:
        region: VPC region (``us-south``, ``eu-de``...).
        vpc_endpoint: VPC API base URL template.
        power_endpoint: PowerVS API base URL template.
        resource_controller_endpoint: Resource controller base URL.
        api_version: ``version`` query parameter sent to the VPC API.
        request_timeout: Total timeout for each remote call, in seconds.
        page_limit: Page size for VPC listings.
    """

    region: str = "us-south"
    vpc_endpoint: str = "https://{region}.iaas.cloud.ibm.com/v1"
    power_endpoint: str = "https://{region}.power-iaas.cloud.ibm.com"
    resource_controller_endpoint: str = "https://resource-controller.cloud.ibm.com"
    api_version: str = "2021-06-08"
    request_timeout: float = 30
    page_limit: int = 50

    def vpc_url(self) -> str:
        return self.vpc_endpoint.format(region=self.region)

    def power_url(self, region: str) -> str:
        return self.power_endpoint.format(region=region)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> CloudConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)
    raw = _deep_merge(global_cfg, project_cfg).get("cloud", {})

    known = {f.name for f in fields(CloudConfig)}
    if unknown := sorted(set(raw) - known):
        raise ConfigurationError(f"unknown [cloud] settings: {', '.join(unknown)}")
    return CloudConfig(**raw)
