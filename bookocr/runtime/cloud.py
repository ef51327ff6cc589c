from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import dotenv_values

from bookocr.core.config import REPO_ROOT, Settings
from bookocr.core.errors import ProvisioningError, SelfTerminationError


logger = logging.getLogger(__name__)

UNASSIGNED_IPS = {"", "0.0.0.0"}
HALTED_POWER_STATUSES = {"stopped"}
HALTED_STATUSES = {"suspended", "stopped"}


@dataclass
class InstanceInfo:
    id: str
    address: str | None
    status: str | None = None
    label: str | None = None
    power_status: str | None = None

    @property
    def halted(self) -> bool:
        return self.power_status in HALTED_POWER_STATUSES or self.status in HALTED_STATUSES


class CloudProvider(Protocol):
    async def create_instance(self, *, label: str, user_data: str) -> InstanceInfo: ...

    async def get_instance(self, instance_id: str) -> InstanceInfo | None: ...

    async def delete_instance(self, instance_id: str) -> None: ...

    async def list_instances(self, *, label: str) -> list[InstanceInfo]: ...

    async def close(self) -> None: ...


def lookup_secret_env(env_name: str | None) -> str | None:
    if not env_name:
        return None

    env_value = os.getenv(env_name)
    if env_value:
        return env_value

    try:
        env_map = dotenv_values(REPO_ROOT / ".env")
    except Exception:  # noqa: BLE001
        return None

    fallback = env_map.get(env_name)
    if isinstance(fallback, str) and fallback.strip():
        return fallback
    return None


def resolve_api_key(api_key: str | None, api_key_env: str | None) -> str:
    if api_key:
        return api_key
    env_value = lookup_secret_env(api_key_env)
    if env_value:
        return env_value
    raise ProvisioningError(
        f"Missing cloud API key. Set OCR_VULTR_API_KEY or environment variable: {api_key_env or '<unset>'}"
    )


def _instance_from_payload(payload: dict[str, Any]) -> InstanceInfo:
    address = str(payload.get("main_ip") or "")
    return InstanceInfo(
        id=str(payload["id"]),
        address=None if address in UNASSIGNED_IPS else address,
        status=payload.get("status"),
        label=payload.get("label"),
        power_status=payload.get("power_status"),
    )


class VultrProvider:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.vultr_api_url,
            headers={"Authorization": f"Bearer {resolve_api_key(settings.vultr_api_key, settings.vultr_api_key_env)}"},
            timeout=30.0,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"Vultr API {method} {path} failed: {exc}") from exc
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        detail = response.text.strip() or response.reason_phrase
        raise ProvisioningError(f"Vultr API rejected {action}: HTTP {response.status_code}: {detail}")

    async def create_instance(self, *, label: str, user_data: str) -> InstanceInfo:
        payload: dict[str, Any] = {
            "region": self.settings.instance_region,
            "plan": self.settings.instance_plan,
            "os_id": self.settings.instance_os_id,
            "label": label,
            "backups": "disabled",
            "user_data": base64.b64encode(user_data.encode("utf-8")).decode("ascii"),
        }
        if self.settings.instance_script_id:
            payload["script_id"] = self.settings.instance_script_id
        if self.settings.instance_sshkey_ids:
            payload["sshkey_id"] = list(self.settings.instance_sshkey_ids)

        response = await self._request("POST", "/instances", json=payload)
        self._raise_for_status(response, "instance creation")
        try:
            return _instance_from_payload(response.json()["instance"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProvisioningError(f"Unexpected Vultr create response: {response.text[:200]}") from exc

    async def get_instance(self, instance_id: str) -> InstanceInfo | None:
        response = await self._request("GET", f"/instances/{instance_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"instance lookup {instance_id}")
        return _instance_from_payload(response.json()["instance"])

    async def delete_instance(self, instance_id: str) -> None:
        response = await self._request("DELETE", f"/instances/{instance_id}")
        if response.status_code == 404:
            return
        self._raise_for_status(response, f"instance deletion {instance_id}")

    async def list_instances(self, *, label: str) -> list[InstanceInfo]:
        instances: list[InstanceInfo] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"label": label, "per_page": 100}
            if cursor:
                params["cursor"] = cursor
            response = await self._request("GET", "/instances", params=params)
            self._raise_for_status(response, "instance listing")
            body = response.json()
            instances.extend(
                _instance_from_payload(item)
                for item in body.get("instances", [])
                if item.get("label") == label
            )
            cursor = ((body.get("meta") or {}).get("links") or {}).get("next") or None
            if not cursor:
                return instances

    async def close(self) -> None:
        await self._client.aclose()


def build_cloud_provider(settings: Settings) -> CloudProvider:
    if settings.cloud_provider != "vultr":
        raise ProvisioningError(f"Instance provisioning is not supported for provider: {settings.cloud_provider}")
    return VultrProvider(settings)


class SelfTerminator(Protocol):
    def instance_id(self) -> str: ...

    def terminate(self, action: str = "terminate") -> str: ...


class VultrSelfTerminator:
    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self.settings = settings
        self._client = client or httpx.Client(timeout=30.0)

    def instance_id(self) -> str:
        url = f"{self.settings.metadata_url.rstrip('/')}/v1.json"
        try:
            response = self._client.get(url, timeout=5.0)
            response.raise_for_status()
            value = response.json().get("instance-v2-id")
        except (httpx.HTTPError, ValueError) as exc:
            raise SelfTerminationError(f"Could not read instance identity from {url}: {exc}") from exc
        if not value:
            raise SelfTerminationError(f"Instance metadata at {url} has no instance-v2-id")
        return str(value)

    def terminate(self, action: str = "terminate") -> str:
        instance_id = self.instance_id()
        logger.info("[Self-termination] requesting %s of instance %s", action, instance_id)
        api_key = resolve_api_key(self.settings.vultr_api_key, self.settings.vultr_api_key_env)
        base = self.settings.vultr_api_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            if action == "stop":
                response = self._client.post(f"{base}/instances/{instance_id}/halt", headers=headers)
            else:
                response = self._client.delete(f"{base}/instances/{instance_id}", headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SelfTerminationError(f"Vultr refused to {action} instance {instance_id}: {exc}") from exc
        return instance_id


class EC2SelfTerminator:
    def __init__(self, settings: Settings, client: httpx.Client | None = None, ec2: Any | None = None):
        self.settings = settings
        self._client = client or httpx.Client(timeout=5.0)
        self._ec2 = ec2

    def instance_id(self) -> str:
        base = f"{self.settings.metadata_url.rstrip('/')}/latest"
        try:
            token = self._client.put(
                f"{base}/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": "60"},
            )
            token.raise_for_status()
            response = self._client.get(
                f"{base}/meta-data/instance-id",
                headers={"X-aws-ec2-metadata-token": token.text},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SelfTerminationError(f"Could not read instance identity from {base}: {exc}") from exc
        value = response.text.strip()
        if not value:
            raise SelfTerminationError("EC2 metadata returned an empty instance-id")
        return value

    def terminate(self, action: str = "terminate") -> str:
        instance_id = self.instance_id()
        logger.info("[Self-termination] requesting %s of instance %s", action, instance_id)
        ec2 = self._ec2 or boto3.client("ec2", region_name=self.settings.aws_region)
        try:
            if action == "stop":
                ec2.stop_instances(InstanceIds=[instance_id])
            else:
                ec2.terminate_instances(InstanceIds=[instance_id])
        except (BotoCoreError, ClientError) as exc:
            raise SelfTerminationError(f"EC2 refused to {action} instance {instance_id}: {exc}") from exc
        return instance_id


def build_self_terminator(settings: Settings) -> SelfTerminator:
    if settings.cloud_provider == "aws":
        return EC2SelfTerminator(settings)
    return VultrSelfTerminator(settings)
